"""Event producers for the account domain and for email delivery reports.

Producers never raise: the account change that triggered an event has
already been committed, and a lost notification must not roll it back.
"""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Optional

import structlog

from chatforge.messaging.broker import MessageBroker
from chatforge.messaging.topology import AUTH_SERVICE
from chatforge.schemas.events import (
    OTP_GENERATED,
    PASSWORD_CHANGED,
    PASSWORD_RESET_REQUESTED,
    USER_CREATED,
    USER_DEACTIVATED,
    EmailResponseData,
    OtpGeneratedData,
    PasswordChangedData,
    PasswordResetRequestedData,
    UserCreatedData,
    UserDeactivatedData,
    WireModel,
    email_response_type,
)

logger = structlog.get_logger(__name__)

EMAIL_RESPONSE_ROUTING_KEY = "email.response.auth"

# OTPs expire quickly, so they jump the queue.
EVENT_PRIORITIES = {
    USER_CREATED: 5,
    OTP_GENERATED: 8,
    PASSWORD_RESET_REQUESTED: 7,
    PASSWORD_CHANGED: 6,
    USER_DEACTIVATED: 6,
}


class AccountEventProducer:
    """Publishes account lifecycle events on the auth exchange."""

    def __init__(self, broker: MessageBroker) -> None:
        self.broker = broker

    async def _publish(self, event_type: str, data: WireModel) -> Optional[str]:
        event_id = str(uuid.uuid4())
        published = await self.broker.publish(
            event_type,
            data,
            event_id=event_id,
            event_type=event_type,
            priority=EVENT_PRIORITIES[event_type],
            target_exchange=self.broker.topology.exchange_for(AUTH_SERVICE),
        )
        if not published:
            logger.error("Account event not published", event_type=event_type, event_id=event_id)
            return None
        return event_id

    async def user_created(self, data: UserCreatedData) -> Optional[str]:
        return await self._publish(USER_CREATED, data)

    async def otp_generated(self, data: OtpGeneratedData) -> Optional[str]:
        return await self._publish(OTP_GENERATED, data)

    async def password_reset_requested(self, data: PasswordResetRequestedData) -> Optional[str]:
        return await self._publish(PASSWORD_RESET_REQUESTED, data)

    async def password_changed(self, data: PasswordChangedData) -> Optional[str]:
        return await self._publish(PASSWORD_CHANGED, data)

    async def user_deactivated(self, data: UserDeactivatedData) -> Optional[str]:
        return await self._publish(USER_DEACTIVATED, data)


class EmailResponseProducer:
    """Reports email delivery results back to the auth service."""

    def __init__(self, broker: MessageBroker) -> None:
        self.broker = broker

    async def publish(self, response: EmailResponseData) -> bool:
        # the response reuses the triggering eventId so the auth side can correlate it
        published = await self.broker.publish(
            EMAIL_RESPONSE_ROUTING_KEY,
            response,
            event_id=response.event_id,
            event_type=email_response_type(response.email_type),
            target_exchange=self.broker.topology.exchange_for(AUTH_SERVICE),
        )
        if not published:
            logger.error(
                "Email response not published",
                event_id=response.event_id,
                email_type=response.email_type,
                status=response.status,
            )
        return published

    async def sent(self, event_id: str, user_id: str, email: str, email_type: str, provider: str) -> bool:
        return await self.publish(
            EmailResponseData(
                event_id=event_id,
                user_id=user_id,
                email=email,
                email_type=email_type,
                status="sent",
                sent_at=datetime.now(UTC),
                provider=provider,
            )
        )

    async def failed(self, event_id: str, user_id: str, email: str, email_type: str, error: str) -> bool:
        return await self.publish(
            EmailResponseData(
                event_id=event_id,
                user_id=user_id,
                email=email,
                email_type=email_type,
                status="failed",
                error=error,
            )
        )

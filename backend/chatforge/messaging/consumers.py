"""Queue handlers: account events to emails, and email reports back to auth."""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from chatforge.messaging.broker import MessageBroker, PermanentMessageError
from chatforge.messaging.producers import EmailResponseProducer
from chatforge.messaging.topology import AUTH_SERVICE, EMAIL_SERVICE
from chatforge.schemas.events import (
    AccountEvent,
    BrokerEvent,
    EmailResponseData,
    EmailResponseEvent,
    OtpGeneratedEvent,
    PasswordChangedEvent,
    PasswordResetRequestedEvent,
    UserCreatedEvent,
    UserDeactivatedEvent,
)

logger = structlog.get_logger(__name__)

RETRIABLE_ERROR_PATTERNS = (
    "ETIMEDOUT",
    "ECONNRESET",
    "ECONNREFUSED",
    "ENOTFOUND",
    "ENETUNREACH",
    "EAI_AGAIN",
    "SMTP_TIMEOUT",
    "SMTP_UNAVAILABLE",
    "RATE_LIMIT",
    "TEMPORARY_FAILURE",
    "SERVICE_UNAVAILABLE",
    "TIMEOUT",
)

EMAIL_SUBJECTS = {
    "welcome": "Welcome to Chatforge",
    "otp": "Your verification code",
    "password_reset": "Reset your password",
    "password_changed": "Your password was changed",
    "account_deactivated": "Your account has been deactivated",
}

PROCESSED_EVENT_CACHE_SIZE = 10_000


class EmailDeliveryError(Exception):
    """Failure reported by an email provider, optionally with a provider code."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


def is_retriable_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    code = getattr(exc, "code", None) or ""
    text = f"{code} {exc}".upper()
    # SMTP 4xx replies are transient
    if str(code).startswith("4"):
        return True
    return any(pattern in text for pattern in RETRIABLE_ERROR_PATTERNS)


class EmailDispatcher(Protocol):
    provider: str

    async def send(self, recipient: str, email_type: str, context: Dict[str, Any]) -> None:
        ...


class LoggingEmailDispatcher:
    """Dispatcher that records the email instead of delivering it."""

    provider = "log"

    async def send(self, recipient: str, email_type: str, context: Dict[str, Any]) -> None:
        logger.info(
            "Email dispatched",
            recipient=recipient,
            subject=EMAIL_SUBJECTS.get(email_type, email_type),
            email_type=email_type,
            user_id=context.get("userId"),
        )


def email_type_for(event: AccountEvent) -> str:
    if isinstance(event, UserCreatedEvent):
        return "welcome"
    if isinstance(event, OtpGeneratedEvent):
        return "password_reset" if event.data.type == "password_reset" else "otp"
    if isinstance(event, PasswordResetRequestedEvent):
        return "password_reset"
    if isinstance(event, PasswordChangedEvent):
        return "password_changed"
    if isinstance(event, UserDeactivatedEvent):
        return "account_deactivated"
    raise PermanentMessageError(f"No email is sent for event type '{event.event_type}'")


class AccountEmailConsumer:
    """Email service side: one email per account lifecycle event."""

    def __init__(
        self,
        broker: MessageBroker,
        dispatcher: Optional[EmailDispatcher] = None,
        responder: Optional[EmailResponseProducer] = None,
    ) -> None:
        self.broker = broker
        self.dispatcher = dispatcher or LoggingEmailDispatcher()
        self.responder = responder or EmailResponseProducer(broker)
        self._processed: "OrderedDict[str, None]" = OrderedDict()

    async def start(self) -> None:
        for spec in self.broker.topology.consumed_by(EMAIL_SERVICE):
            await self.broker.consume(spec.name, self.handle)
        logger.info("Account email consumers started")

    def _seen(self, event_id: str) -> bool:
        return event_id in self._processed

    def _remember(self, event_id: str) -> None:
        self._processed[event_id] = None
        while len(self._processed) > PROCESSED_EVENT_CACHE_SIZE:
            self._processed.popitem(last=False)

    async def handle(self, event: BrokerEvent, retry_count: int) -> None:
        if isinstance(event, EmailResponseEvent):
            raise PermanentMessageError("Email responses are not handled by the email service")
        if self._seen(event.event_id):
            logger.info("Duplicate event skipped", event_id=event.event_id, event_type=event.event_type)
            return

        email_type = email_type_for(event)
        data = event.data
        context = data.to_wire()
        try:
            await self.dispatcher.send(data.email, email_type, context)
        except Exception as exc:
            retriable = is_retriable_error(exc)
            logger.error(
                "Email delivery failed",
                event_id=event.event_id,
                email_type=email_type,
                retry_count=retry_count,
                retriable=retriable,
                error=str(exc),
            )
            # Report only the delivery outcome, not each redelivery attempt.
            if not retriable or retry_count >= self.broker.consumer_max_retries:
                await self.responder.failed(event.event_id, data.user_id, data.email, email_type, str(exc))
            if retriable:
                raise
            raise PermanentMessageError(str(exc)) from exc

        self._remember(event.event_id)
        await self.responder.sent(event.event_id, data.user_id, data.email, email_type, self.dispatcher.provider)
        logger.info("Email delivered", event_id=event.event_id, email_type=email_type)


ResponseHook = Callable[[EmailResponseData], Awaitable[None]]


class EmailResponseConsumer:
    """Auth service side: record delivery reports keyed by the original eventId."""

    def __init__(self, broker: MessageBroker, on_response: Optional[ResponseHook] = None) -> None:
        self.broker = broker
        self.on_response = on_response

    async def start(self) -> None:
        for spec in self.broker.topology.consumed_by(AUTH_SERVICE):
            await self.broker.consume(spec.name, self.handle)
        logger.info("Email response consumer started")

    async def handle(self, event: BrokerEvent, retry_count: int) -> None:
        if not isinstance(event, EmailResponseEvent):
            raise PermanentMessageError(f"Unexpected event type '{event.event_type}' on response queue")

        response = event.data
        if response.status == "sent":
            logger.info(
                "Email delivery confirmed",
                event_id=response.event_id,
                email_type=response.email_type,
                provider=response.provider,
            )
        else:
            logger.warning(
                "Email delivery unsuccessful",
                event_id=response.event_id,
                email_type=response.email_type,
                status=response.status,
                error=response.error,
            )
        if self.on_response is not None:
            await self.on_response(response)

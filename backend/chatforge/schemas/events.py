"""Typed broker envelopes for account lifecycle and email delivery events.

Every message on the wire is ``{eventId, eventType, timestamp, data}``; the
``eventType`` selects exactly one payload model so consumers can match on
the event class instead of poking at untyped dictionaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

USER_CREATED = "user.created"
OTP_GENERATED = "otp.generated"
PASSWORD_RESET_REQUESTED = "password.reset.requested"
PASSWORD_CHANGED = "password.changed"
USER_DEACTIVATED = "user.deactivated"
EMAIL_RESPONSE_PREFIX = "email.response"

EmailType = Literal[
    "welcome",
    "otp",
    "password_reset",
    "password_changed",
    "account_deactivated",
]


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserCreatedData(WireModel):
    user_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


class OtpGeneratedData(WireModel):
    user_id: str
    email: str
    otp_id: str
    type: Literal["email_verification", "password_reset", "2fa"]
    expires_at: datetime | None = None


class PasswordResetRequestedData(WireModel):
    user_id: str
    email: str
    otp_id: str | None = None
    expires_at: datetime | None = None


class PasswordChangedData(WireModel):
    user_id: str
    email: str
    changed_at: datetime


class UserDeactivatedData(WireModel):
    user_id: str
    email: str
    deactivated_at: datetime | None = None
    reason: str | None = None


class EmailResponseData(WireModel):
    """Delivery report sent back to the service that raised the event."""

    event_id: str
    user_id: str
    email: str
    email_type: EmailType
    status: Literal["sent", "failed", "bounced"]
    sent_at: datetime | None = None
    error: str | None = None
    provider: str | None = None


class _Envelope(WireModel):
    event_id: str = Field(min_length=1)
    timestamp: int


class UserCreatedEvent(_Envelope):
    event_type: Literal["user.created"]
    data: UserCreatedData


class OtpGeneratedEvent(_Envelope):
    event_type: Literal["otp.generated"]
    data: OtpGeneratedData


class PasswordResetRequestedEvent(_Envelope):
    event_type: Literal["password.reset.requested"]
    data: PasswordResetRequestedData


class PasswordChangedEvent(_Envelope):
    event_type: Literal["password.changed"]
    data: PasswordChangedData


class UserDeactivatedEvent(_Envelope):
    event_type: Literal["user.deactivated"]
    data: UserDeactivatedData


class EmailResponseEvent(_Envelope):
    event_type: Literal[
        "email.response.welcome",
        "email.response.otp",
        "email.response.password_reset",
        "email.response.password_changed",
        "email.response.account_deactivated",
    ]
    data: EmailResponseData


AccountEvent = Union[
    UserCreatedEvent,
    OtpGeneratedEvent,
    PasswordResetRequestedEvent,
    PasswordChangedEvent,
    UserDeactivatedEvent,
]

BrokerEvent = Annotated[
    Union[
        UserCreatedEvent,
        OtpGeneratedEvent,
        PasswordResetRequestedEvent,
        PasswordChangedEvent,
        UserDeactivatedEvent,
        EmailResponseEvent,
    ],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter[BrokerEvent] = TypeAdapter(BrokerEvent)


def parse_event(envelope: dict[str, Any]) -> BrokerEvent:
    """Validate a decoded envelope into its typed event; raises ``ValidationError``."""
    return _event_adapter.validate_python(envelope)


def email_response_type(email_type: str) -> str:
    return f"{EMAIL_RESPONSE_PREFIX}.{email_type}"

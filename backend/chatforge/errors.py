"""Caller-visible error codes.

Every failure that crosses a service boundary is mapped onto one of these
classes so that callers can tell "try later" apart from "this will never
work" without parsing messages.
"""
from __future__ import annotations

from fastapi import status


class ChatforgeError(Exception):
    """Base error carrying a stable code and an HTTP status hint."""

    code: str = "INTERNAL_ERROR"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)

    def to_payload(self) -> dict[str, object]:
        return {"success": False, "error": self.code, "detail": self.message}


class PolicyRejection(ChatforgeError):
    """Non-retriable until the underlying state changes."""

    status_code = status.HTTP_403_FORBIDDEN


class DailyLimitExceeded(PolicyRejection):
    code = "DAILY_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class SessionEnded(PolicyRejection):
    code = "SESSION_ENDED"


class SessionNotActive(PolicyRejection):
    code = "SESSION_NOT_ACTIVE"


class SessionHasLeads(PolicyRejection):
    code = "SESSION_HAS_LEADS"
    status_code = status.HTTP_409_CONFLICT


class SessionHasMessages(PolicyRejection):
    code = "SESSION_HAS_MESSAGES"
    status_code = status.HTTP_409_CONFLICT


class SessionAlreadyDeleted(PolicyRejection):
    code = "SESSION_ALREADY_DELETED"
    status_code = status.HTTP_409_CONFLICT


class BusinessNotAvailable(PolicyRejection):
    code = "BUSINESS_NOT_AVAILABLE"


class NotFoundError(ChatforgeError):
    status_code = status.HTTP_404_NOT_FOUND


class SessionNotFound(NotFoundError):
    code = "SESSION_NOT_FOUND"


class UpstreamUnavailable(ChatforgeError):
    """A collaborator is down; the same request may succeed later."""

    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class BusinessServiceUnavailable(UpstreamUnavailable):
    code = "BUSINESS_SERVICE_UNAVAILABLE"


class BrokerUnavailable(UpstreamUnavailable):
    code = "BROKER_UNAVAILABLE"


class DataIntegrityError(ChatforgeError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidLead(DataIntegrityError):
    code = "INVALID_LEAD"


class LeadConflict(DataIntegrityError):
    code = "LEAD_CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class InvalidMessage(DataIntegrityError):
    code = "INVALID_MESSAGE"

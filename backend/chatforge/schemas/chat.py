"""Request and response schemas for the chat and dashboard endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


class SessionCreateRequest(BaseModel):
    """Payload sent by the chat widget when a visitor opens the bot."""

    tenant_id: str = Field(..., min_length=1, max_length=64)
    visitor_id: str | None = Field(default=None, max_length=128)


class MessageCreateRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)


class ContactInfo(BaseModel):
    captured: bool
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    captured_at: datetime | None = None


class SessionResponse(BaseModel):
    """Serialized chat session."""

    session_id: str
    tenant_id: str
    visitor_id: str | None = None
    status: str
    started_at: datetime
    last_message_at: datetime
    ended_at: datetime | None = None
    message_count: int
    user_message_count: int
    bot_message_count: int
    contact: ContactInfo

    model_config = ConfigDict(from_attributes=True)


class SessionCreateResponse(BaseModel):
    session: SessionResponse
    business_name: str
    greeting: str | None = None
    sessions_today: int
    daily_limit: int


class MessageResponse(BaseModel):
    """Serialized chat message."""

    id: UUID
    session_id: str
    role: str
    content: str
    timestamp: datetime
    llm_model: str | None = None
    tokens: dict[str, int] | None = None
    latency_ms: int | None = None

    model_config = ConfigDict(from_attributes=True)


class ChatReplyResponse(BaseModel):
    session_id: str
    reply: MessageResponse
    contact_captured: bool
    is_new_lead: bool | None = None


class Pagination(BaseModel):
    total: int
    page: int
    size: int
    pages: int


class MessageList(BaseModel):
    session_id: str
    messages: list[MessageResponse]
    pagination: Pagination


class SessionList(BaseModel):
    sessions: list[SessionResponse]
    pagination: Pagination


class SessionDetailResponse(BaseModel):
    session: SessionResponse
    messages: list[MessageResponse]
    user_agent: str | None = None
    ip_address: str | None = None
    referrer: str | None = None


class LeadResponse(BaseModel):
    """Serialized contact lead."""

    id: UUID
    tenant_id: str
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    first_session_id: str
    last_session_id: str
    first_contact_date: datetime
    last_contact_date: datetime
    total_sessions: int
    total_messages: int
    status: str
    is_starred: bool

    model_config = ConfigDict(from_attributes=True)


class LeadList(BaseModel):
    leads: list[LeadResponse]
    pagination: Pagination


class DashboardSummary(BaseModel):
    tenant_id: str
    sessions: dict[str, int]
    total_sessions: int
    total_leads: int
    today: dict[str, Any]


class SweepResponse(BaseModel):
    abandoned: int
    ended: int


class DailyCleanupResponse(BaseModel):
    messages_purged: int
    sessions_deleted: int
    sessions_skipped_lead_reference: int

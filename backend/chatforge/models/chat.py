"""Chat session and message models.

Sessions are kept for analytics after their messages are purged; the two
tables have independent retention lifecycles.
"""
from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from chatforge.database.base import Base, utcnow


class SessionStatus(str, Enum):
    """Liveness axis of a chat session; soft-deletion is tracked separately."""

    ACTIVE = "active"
    ABANDONED = "abandoned"
    ENDED = "ended"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatSession(Base):
    """One conversation between a visitor and a tenant's bot."""

    __tablename__ = "chat_sessions"

    session_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(64), nullable=False, index=True)
    visitor_id = Column(String(128), nullable=True, index=True)

    status = Column(String(16), nullable=False, default=SessionStatus.ACTIVE.value, index=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    last_message_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    ended_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)

    message_count = Column(Integer, nullable=False, default=0)
    user_message_count = Column(Integer, nullable=False, default=0)
    bot_message_count = Column(Integer, nullable=False, default=0)

    contact_captured = Column(Boolean, nullable=False, default=False)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(32), nullable=True)
    contact_name = Column(String(255), nullable=True)
    contact_captured_at = Column(DateTime, nullable=True)

    has_unread_messages = Column(Boolean, nullable=False, default=False)
    user_agent = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    referrer = Column(String(512), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChatMessage.timestamp",
    )

    __table_args__ = (
        Index("ix_chat_sessions_tenant_started", "tenant_id", "started_at"),
        Index("ix_chat_sessions_tenant_status", "tenant_id", "status"),
        Index("ix_chat_sessions_visitor_tenant", "visitor_id", "tenant_id"),
    )

    @property
    def contact(self) -> dict[str, object]:
        return {
            "captured": bool(self.contact_captured),
            "email": self.contact_email,
            "phone": self.contact_phone,
            "name": self.contact_name,
            "captured_at": self.contact_captured_at,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ChatSession id={self.session_id} tenant={self.tenant_id} status={self.status}>"


class ChatMessage(Base):
    """A single turn within a chat session."""

    __tablename__ = "chat_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(
        String(36),
        ForeignKey("chat_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_id = Column(String(64), nullable=False, index=True)

    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    extracted_contact = Column(JSONB, nullable=True)
    llm_model = Column(String(100), nullable=True)
    tokens = Column(JSONB, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    vectors_used = Column(JSONB, nullable=True)

    deleted_at = Column(DateTime, nullable=True, index=True)

    session = relationship("ChatSession", back_populates="messages")

    __table_args__ = (
        Index("ix_chat_messages_session_timestamp", "session_id", "timestamp"),
        Index("ix_chat_messages_tenant_timestamp", "tenant_id", "timestamp"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ChatMessage id={self.id} session={self.session_id} role={self.role}>"

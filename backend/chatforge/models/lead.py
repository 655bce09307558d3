"""Deduplicated contact leads captured from chat sessions."""
from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from chatforge.database.base import Base, utcnow


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    SPAM = "spam"


class ContactLead(Base):
    """CRM record for one real-world contact of a tenant.

    ``dedup_key`` is ``email:<address>`` when the lead has an email and
    ``phone:<digits>`` for phone-only leads; the unique constraint on
    ``(tenant_id, dedup_key)`` is what makes concurrent captures converge on
    a single row.
    """

    __tablename__ = "contact_leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    dedup_key = Column(String(300), nullable=False)

    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    name = Column(String(255), nullable=True)

    first_session_id = Column(String(36), nullable=False, index=True)
    last_session_id = Column(String(36), nullable=False, index=True)
    first_contact_date = Column(DateTime, nullable=False, default=utcnow)
    last_contact_date = Column(DateTime, nullable=False, default=utcnow)
    total_sessions = Column(Integer, nullable=False, default=1)
    total_messages = Column(Integer, nullable=False, default=0)

    status = Column(String(16), nullable=False, default=LeadStatus.NEW.value, index=True)
    is_starred = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "dedup_key", name="uq_contact_leads_tenant_dedup"),
        Index("ix_contact_leads_tenant_email", "tenant_id", "email"),
        Index("ix_contact_leads_tenant_phone", "tenant_id", "phone"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ContactLead id={self.id} tenant={self.tenant_id} key={self.dedup_key!r}>"

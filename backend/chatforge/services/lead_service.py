"""Contact extraction and deduplicated lead capture."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatforge.database.base import utcnow
from chatforge.errors import InvalidLead, LeadConflict
from chatforge.models.chat import ChatSession
from chatforge.models.lead import ContactLead, LeadStatus

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_PATTERN = re.compile(r"(?<![\w+])(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
NAME_PATTERN = re.compile(r"(?:my name is|i'm|i am)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)", re.IGNORECASE)

HIGH_INTENT_KEYWORDS = (
    "price",
    "cost",
    "pricing",
    "buy",
    "purchase",
    "order",
    "book",
    "reserve",
    "schedule",
    "appointment",
    "available",
    "availability",
    "in stock",
    "deliver",
    "delivery",
    "shipping",
    "ship",
    "contact",
    "call me",
    "email me",
    "reach out",
)
_INTENT_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(keyword) for keyword in HIGH_INTENT_KEYWORDS) + r")\b",
    re.IGNORECASE,
)

MIN_PHONE_DIGITS = 7


@dataclass
class ExtractedContact:
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None

    @property
    def has_identity(self) -> bool:
        return bool(self.email or self.phone)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"email": self.email, "phone": self.phone, "name": self.name}


@dataclass
class CaptureResult:
    lead: ContactLead
    is_new_lead: bool


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Digits only, keeping a leading ``+``; ``None`` when too short to be a number."""
    if not value:
        return None
    stripped = value.strip()
    digits = re.sub(r"\D", "", stripped)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return f"+{digits}" if stripped.startswith("+") else digits


def build_dedup_key(email: Optional[str], phone: Optional[str]) -> str:
    """Email is authoritative; phone is the key only for phone-only leads."""
    if email:
        return f"email:{email}"
    if phone:
        return f"phone:{phone}"
    raise InvalidLead("Lead requires an email or a phone number")


def extract_contact(text: str) -> ExtractedContact:
    """Best-effort regex extraction of contact details from a visitor message."""
    if not text:
        return ExtractedContact()

    email_match = EMAIL_PATTERN.search(text)
    # drop the email before looking for phones so digits inside it are ignored
    phone_source = EMAIL_PATTERN.sub(" ", text)
    phone_match = PHONE_PATTERN.search(phone_source)
    name_match = NAME_PATTERN.search(text)

    name = None
    if name_match:
        name = " ".join(part.capitalize() for part in name_match.group(1).split())

    return ExtractedContact(
        email=normalize_email(email_match.group(0)) if email_match else None,
        phone=normalize_phone(phone_match.group(0)) if phone_match else None,
        name=name,
    )


def detect_intent(text: str) -> List[str]:
    """Buying-signal keywords found in ``text``, lowercased and de-duplicated."""
    if not text:
        return []
    found: List[str] = []
    for match in _INTENT_PATTERN.finditer(text):
        keyword = match.group(0).lower()
        if keyword not in found:
            found.append(keyword)
    return found


def is_high_intent(text: str) -> bool:
    return bool(detect_intent(text))


class LeadDeduplicationEngine:
    """Turn the first contact capture of each session into one lead per identity.

    Concurrency rests on two database guarantees rather than locks: the
    session-level claim is a conditional UPDATE on ``contact_captured`` and
    every lead write is protected by the ``(tenant_id, dedup_key)`` unique
    constraint. The claim and the lead write commit together. Each lead write
    runs in a savepoint, so losing a race rolls back only that write and the
    capture is replayed against the row that won.
    """

    max_write_attempts = 2

    def capture_contact(
        self,
        db: Session,
        session_id: str,
        tenant_id: str,
        contact: ExtractedContact,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[CaptureResult]:
        """Record ``contact`` against the session and its lead.

        Returns ``None`` when the session already captured a contact, since
        only the first capture per session counts. If the lead cannot be
        written the session claim is rolled back with it, leaving the session
        free to capture on a later message.
        """
        email = normalize_email(contact.email)
        phone = normalize_phone(contact.phone)
        name = (contact.name or "").strip() or None
        if not email and not phone:
            raise InvalidLead("Lead requires an email or a phone number")
        now = now or utcnow()

        claimed = (
            db.query(ChatSession)
            .filter(
                and_(
                    ChatSession.session_id == session_id,
                    ChatSession.tenant_id == tenant_id,
                    ChatSession.contact_captured.is_(False),
                )
            )
            .update(
                {
                    ChatSession.contact_captured: True,
                    ChatSession.contact_email: email,
                    ChatSession.contact_phone: phone,
                    ChatSession.contact_name: name,
                    ChatSession.contact_captured_at: now,
                },
                synchronize_session=False,
            )
        )
        if not claimed:
            db.rollback()
            logger.debug("Contact already captured for session", extra={"session_id": session_id})
            return None

        try:
            message_count = (
                db.query(ChatSession.message_count).filter(ChatSession.session_id == session_id).scalar() or 0
            )
            result = self._write_lead(db, session_id, tenant_id, email, phone, name, message_count, now)
            db.commit()
        except Exception:
            db.rollback()
            logger.error("Lead write failed; session claim released", extra={"session_id": session_id})
            raise

        db.refresh(result.lead)
        logger.info(
            "New lead created" if result.is_new_lead else "Existing lead updated",
            extra={"lead_id": str(result.lead.id), "tenant": tenant_id, "session_id": session_id},
        )
        return result

    def _write_lead(
        self,
        db: Session,
        session_id: str,
        tenant_id: str,
        email: Optional[str],
        phone: Optional[str],
        name: Optional[str],
        message_count: int,
        now: datetime,
    ) -> CaptureResult:
        for attempt in range(1, self.max_write_attempts + 1):
            existing = self._find_existing(db, tenant_id, email, phone)
            try:
                with db.begin_nested():
                    if existing is not None:
                        self._merge_into(db, existing, session_id, email, phone, name, message_count, now)
                        return CaptureResult(lead=existing, is_new_lead=False)

                    lead = ContactLead(
                        tenant_id=tenant_id,
                        dedup_key=build_dedup_key(email, phone),
                        email=email,
                        phone=phone,
                        name=name,
                        first_session_id=session_id,
                        last_session_id=session_id,
                        first_contact_date=now,
                        last_contact_date=now,
                        total_sessions=1,
                        total_messages=message_count,
                        status=LeadStatus.NEW.value,
                    )
                    db.add(lead)
                    db.flush()
                    return CaptureResult(lead=lead, is_new_lead=True)
            except IntegrityError:
                logger.warning(
                    "Lead write raced with another capture; replaying against the stored lead",
                    extra={"tenant": tenant_id, "session_id": session_id, "attempt": attempt},
                )

        raise LeadConflict("Lead could not be stored after concurrent captures")

    def _find_existing(
        self,
        db: Session,
        tenant_id: str,
        email: Optional[str],
        phone: Optional[str],
    ) -> Optional[ContactLead]:
        if email:
            lead = (
                db.query(ContactLead)
                .filter(
                    and_(
                        ContactLead.tenant_id == tenant_id,
                        ContactLead.dedup_key == build_dedup_key(email, None),
                    )
                )
                .first()
            )
            if lead is not None or not phone:
                return lead
            # a phone-only lead for the same number is the same person
            return (
                db.query(ContactLead)
                .filter(
                    and_(
                        ContactLead.tenant_id == tenant_id,
                        ContactLead.dedup_key == build_dedup_key(None, phone),
                    )
                )
                .first()
            )

        return (
            db.query(ContactLead)
            .filter(and_(ContactLead.tenant_id == tenant_id, ContactLead.phone == phone))
            .order_by(ContactLead.first_contact_date.asc())
            .first()
        )

    def _phone_only_duplicates(self, db: Session, lead: ContactLead, phone: Optional[str]) -> List[ContactLead]:
        if not phone:
            return []
        return (
            db.query(ContactLead)
            .filter(
                and_(
                    ContactLead.tenant_id == lead.tenant_id,
                    ContactLead.dedup_key == build_dedup_key(None, phone),
                    ContactLead.id != lead.id,
                )
            )
            .all()
        )

    def _merge_into(
        self,
        db: Session,
        lead: ContactLead,
        session_id: str,
        email: Optional[str],
        phone: Optional[str],
        name: Optional[str],
        message_count: int,
        now: datetime,
    ) -> None:
        """Add this capture to ``lead`` and fold in any phone-only lead for the same number."""
        absorbed = self._phone_only_duplicates(db, lead, phone)

        values = {
            ContactLead.total_sessions: ContactLead.total_sessions
            + 1
            + sum(duplicate.total_sessions or 0 for duplicate in absorbed),
            ContactLead.total_messages: ContactLead.total_messages
            + message_count
            + sum(duplicate.total_messages or 0 for duplicate in absorbed),
            ContactLead.last_session_id: session_id,
            ContactLead.last_contact_date: now,
            ContactLead.updated_at: now,
        }
        if phone:
            values[ContactLead.phone] = func.coalesce(ContactLead.phone, phone)
        known_name = name or next((duplicate.name for duplicate in absorbed if duplicate.name), None)
        if known_name:
            values[ContactLead.name] = func.coalesce(ContactLead.name, known_name)
        if email:
            values[ContactLead.email] = func.coalesce(ContactLead.email, email)
            # upgrading a phone-only lead moves it onto the authoritative key
            values[ContactLead.dedup_key] = case(
                (ContactLead.email.is_(None), build_dedup_key(email, None)),
                else_=ContactLead.dedup_key,
            )

        earliest = min(absorbed, key=lambda duplicate: duplicate.first_contact_date, default=None)
        if earliest is not None and earliest.first_contact_date < lead.first_contact_date:
            values[ContactLead.first_session_id] = earliest.first_session_id
            values[ContactLead.first_contact_date] = earliest.first_contact_date

        lead_id = lead.id
        for duplicate in absorbed:
            db.delete(duplicate)
        db.flush()
        db.query(ContactLead).filter(ContactLead.id == lead_id).update(values, synchronize_session=False)
        if absorbed:
            logger.info(
                "Phone-only leads folded into lead",
                extra={"lead_id": str(lead_id), "absorbed": [str(duplicate.id) for duplicate in absorbed]},
            )

    def is_session_referenced(self, db: Session, session_id: str) -> bool:
        """Whether any lead names ``session_id`` as its first or last session."""
        return (
            db.query(ContactLead.id)
            .filter(
                or_(
                    ContactLead.first_session_id == session_id,
                    ContactLead.last_session_id == session_id,
                )
            )
            .first()
            is not None
        )

    def list_leads(
        self,
        db: Session,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ContactLead], int]:
        query = db.query(ContactLead).filter(ContactLead.tenant_id == tenant_id)
        if status:
            query = query.filter(ContactLead.status == status)
        total = query.with_entities(func.count(ContactLead.id)).scalar() or 0
        size = max(limit, 1)
        leads = (
            query.order_by(ContactLead.last_contact_date.desc())
            .offset((max(page, 1) - 1) * size)
            .limit(size)
            .all()
        )
        return leads, total

    def count_leads(self, db: Session, tenant_id: str) -> int:
        return db.query(func.count(ContactLead.id)).filter(ContactLead.tenant_id == tenant_id).scalar() or 0

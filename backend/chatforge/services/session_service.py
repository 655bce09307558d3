"""Chat session lifecycle: status transitions, soft-delete and purge.

A session moves along two independent axes. The liveness axis is
``active -> abandoned -> ended`` (abandoned sessions reactivate when the
visitor writes again). The deletion axis is ``deleted_at`` (soft-delete on
explicit request) followed by a hard purge performed only by the cleanup
scheduler. Every write below is a single UPDATE/DELETE predicated on the
current state, so concurrent requests and repeated sweeps cannot apply a
transition twice.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from chatforge.config import Settings, settings
from chatforge.database.base import utcnow
from chatforge.errors import (
    InvalidMessage,
    SessionAlreadyDeleted,
    SessionEnded,
    SessionHasLeads,
    SessionHasMessages,
    SessionNotActive,
    SessionNotFound,
)
from chatforge.models.chat import ChatMessage, ChatSession, MessageRole, SessionStatus
from chatforge.services.lead_service import LeadDeduplicationEngine

logger = logging.getLogger(__name__)

LIVE_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.ABANDONED.value)


@dataclass(frozen=True)
class LifecycleWindows:
    """Inactivity and retention thresholds, all configurable."""

    abandon_after: timedelta
    end_after: timedelta
    purge_grace: timedelta
    message_retention: timedelta

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "LifecycleWindows":
        config = config or settings
        return cls(
            abandon_after=timedelta(minutes=config.session_abandon_after_minutes),
            end_after=timedelta(minutes=config.session_end_after_minutes),
            purge_grace=timedelta(days=config.session_purge_grace_days),
            message_retention=timedelta(days=config.message_retention_days),
        )


@dataclass
class SweepResult:
    abandoned: int = 0
    ended: int = 0


@dataclass
class PurgeResult:
    deleted: int = 0
    skipped_lead_reference: int = 0


class SessionStateMachine:
    """Pure transition rules; callers persist the outcome."""

    def __init__(self, windows: LifecycleWindows | None = None) -> None:
        self.windows = windows or LifecycleWindows.from_settings()

    @staticmethod
    def check_accepts_message(session: ChatSession) -> bool:
        """Raise if ``session`` cannot take a new visitor message.

        Returns ``True`` when accepting the message reactivates an abandoned
        session.
        """
        if session.deleted_at is not None:
            raise SessionNotActive("Session has been deleted")
        if session.status == SessionStatus.ENDED.value:
            raise SessionEnded("Session has ended")
        return session.status == SessionStatus.ABANDONED.value

    @staticmethod
    def check_soft_deletable(session: ChatSession) -> None:
        if session.deleted_at is not None:
            raise SessionAlreadyDeleted("Session already deleted")
        if session.contact_captured:
            raise SessionHasLeads("Session captured a lead and cannot be deleted")
        if session.message_count > 0:
            raise SessionHasMessages("Session has messages and cannot be deleted")


class SessionService:
    """Persistence for chat sessions and messages."""

    def __init__(
        self,
        windows: LifecycleWindows | None = None,
        lead_engine: Optional[LeadDeduplicationEngine] = None,
    ) -> None:
        self.windows = windows or LifecycleWindows.from_settings()
        self.state_machine = SessionStateMachine(self.windows)
        self.lead_engine = lead_engine or LeadDeduplicationEngine()

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------
    def create_session(
        self,
        db: Session,
        tenant_id: str,
        *,
        visitor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Optional[str]]] = None,
        now: Optional[datetime] = None,
    ) -> ChatSession:
        now = now or utcnow()
        metadata = metadata or {}
        session = ChatSession(
            session_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            visitor_id=visitor_id or f"visitor_{uuid.uuid4()}",
            status=SessionStatus.ACTIVE.value,
            started_at=now,
            last_message_at=now,
            message_count=0,
            user_message_count=0,
            bot_message_count=0,
            contact_captured=False,
            user_agent=metadata.get("user_agent"),
            ip_address=metadata.get("ip_address"),
            referrer=metadata.get("referrer"),
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        logger.info(
            "Chat session created",
            extra={"session_id": session.session_id, "tenant": tenant_id, "visitor": session.visitor_id},
        )
        return session

    def get_session(
        self,
        db: Session,
        session_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[ChatSession]:
        query = db.query(ChatSession).filter(ChatSession.session_id == session_id)
        if tenant_id is not None:
            query = query.filter(ChatSession.tenant_id == tenant_id)
        return query.first()

    def require_session(
        self,
        db: Session,
        session_id: str,
        tenant_id: Optional[str] = None,
    ) -> ChatSession:
        session = self.get_session(db, session_id, tenant_id)
        if session is None:
            raise SessionNotFound("Chat session not found")
        return session

    def end_session(
        self,
        db: Session,
        session_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> ChatSession:
        """Explicit end requested by the client; a second call is a no-op."""
        now = now or utcnow()
        session = self.require_session(db, session_id)
        updated = (
            db.query(ChatSession)
            .filter(
                and_(
                    ChatSession.session_id == session_id,
                    ChatSession.status.in_(LIVE_STATUSES),
                )
            )
            .update(
                {ChatSession.status: SessionStatus.ENDED.value, ChatSession.ended_at: now},
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(session)
        if updated:
            logger.info(
                "Chat session ended",
                extra={
                    "session_id": session_id,
                    "duration_seconds": int((now - session.started_at).total_seconds()),
                    "message_count": session.message_count,
                    "contact_captured": session.contact_captured,
                },
            )
        return session

    def soft_delete_session(
        self,
        db: Session,
        session_id: str,
        tenant_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> ChatSession:
        now = now or utcnow()
        session = self.require_session(db, session_id, tenant_id)
        self.state_machine.check_soft_deletable(session)

        updated = (
            db.query(ChatSession)
            .filter(
                and_(
                    ChatSession.session_id == session_id,
                    ChatSession.tenant_id == tenant_id,
                    ChatSession.deleted_at.is_(None),
                    ChatSession.contact_captured.is_(False),
                    ChatSession.message_count == 0,
                )
            )
            .update({ChatSession.deleted_at: now}, synchronize_session=False)
        )
        db.commit()
        db.refresh(session)
        if not updated:
            # state changed between the read and the write; report the new reason
            self.state_machine.check_soft_deletable(session)
        logger.info("Chat session soft deleted", extra={"session_id": session_id, "tenant": tenant_id})
        return session

    # ------------------------------------------------------------------
    # Message operations
    # ------------------------------------------------------------------
    def record_user_message(
        self,
        db: Session,
        session_id: str,
        content: str,
        *,
        extracted_contact: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[ChatSession, ChatMessage]:
        """Store a visitor turn, reactivating an abandoned session."""
        content = (content or "").strip()
        if not content:
            raise InvalidMessage("Message cannot be empty")
        if len(content) > settings.max_user_message_chars:
            raise InvalidMessage(f"Message exceeds {settings.max_user_message_chars} characters")

        now = now or utcnow()
        session = self.require_session(db, session_id)
        reactivating = self.state_machine.check_accepts_message(session)

        updated = (
            db.query(ChatSession)
            .filter(
                and_(
                    ChatSession.session_id == session_id,
                    ChatSession.deleted_at.is_(None),
                    ChatSession.status.in_(LIVE_STATUSES),
                )
            )
            .update(
                {
                    ChatSession.status: SessionStatus.ACTIVE.value,
                    ChatSession.message_count: ChatSession.message_count + 1,
                    ChatSession.user_message_count: ChatSession.user_message_count + 1,
                    ChatSession.last_message_at: now,
                    ChatSession.has_unread_messages: True,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            db.refresh(session)
            self.state_machine.check_accepts_message(session)
            raise SessionNotActive("Session is not accepting messages")

        message = ChatMessage(
            session_id=session_id,
            tenant_id=session.tenant_id,
            role=MessageRole.USER.value,
            content=content,
            timestamp=now,
            extracted_contact=extracted_contact,
        )
        db.add(message)
        db.commit()
        db.refresh(session)
        db.refresh(message)
        if reactivating:
            logger.info("Abandoned session reactivated", extra={"session_id": session_id})
        logger.debug(
            "User message stored",
            extra={"session_id": session_id, "message_count": session.message_count},
        )
        return session, message

    def record_assistant_message(
        self,
        db: Session,
        session_id: str,
        content: str,
        *,
        llm_model: Optional[str] = None,
        tokens: Optional[Dict[str, int]] = None,
        latency_ms: Optional[int] = None,
        vectors_used: Optional[List[Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> ChatMessage:
        now = now or utcnow()
        session = self.require_session(db, session_id)
        updated = (
            db.query(ChatSession)
            .filter(and_(ChatSession.session_id == session_id, ChatSession.deleted_at.is_(None)))
            .update(
                {
                    ChatSession.message_count: ChatSession.message_count + 1,
                    ChatSession.bot_message_count: ChatSession.bot_message_count + 1,
                    ChatSession.last_message_at: now,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            raise SessionNotActive("Session has been deleted")

        message = ChatMessage(
            session_id=session_id,
            tenant_id=session.tenant_id,
            role=MessageRole.ASSISTANT.value,
            content=content,
            timestamp=now,
            llm_model=llm_model,
            tokens=tokens,
            latency_ms=latency_ms,
            vectors_used=vectors_used or [],
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return message

    def list_messages(
        self,
        db: Session,
        session_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ChatMessage], int]:
        self.require_session(db, session_id)
        base = db.query(ChatMessage).filter(
            and_(ChatMessage.session_id == session_id, ChatMessage.deleted_at.is_(None))
        )
        total = base.with_entities(func.count(ChatMessage.id)).scalar() or 0
        size = max(limit, 1)
        messages = (
            base.order_by(ChatMessage.timestamp.asc())
            .offset((max(page, 1) - 1) * size)
            .limit(size)
            .all()
        )
        return messages, total

    def get_history(
        self,
        db: Session,
        session_id: str,
        *,
        limit: Optional[int] = None,
    ) -> List[Dict[str, str]]:
        """Last ``limit`` visitor/assistant turns in chronological order."""
        window = limit or settings.history_window
        messages = (
            db.query(ChatMessage)
            .filter(
                and_(
                    ChatMessage.session_id == session_id,
                    ChatMessage.deleted_at.is_(None),
                    ChatMessage.role.in_([MessageRole.USER.value, MessageRole.ASSISTANT.value]),
                )
            )
            .order_by(ChatMessage.timestamp.desc())
            .limit(max(window, 1))
            .all()
        )
        return [{"role": message.role, "content": message.content} for message in reversed(messages)]

    # ------------------------------------------------------------------
    # Dashboard reads
    # ------------------------------------------------------------------
    def list_sessions(
        self,
        db: Session,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        contact_captured: Optional[bool] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ChatSession], int]:
        query = db.query(ChatSession).filter(
            and_(ChatSession.tenant_id == tenant_id, ChatSession.deleted_at.is_(None))
        )
        if status:
            query = query.filter(ChatSession.status == status)
        if contact_captured is not None:
            query = query.filter(ChatSession.contact_captured.is_(contact_captured))
        if started_from is not None:
            query = query.filter(ChatSession.started_at >= started_from)
        if started_to is not None:
            query = query.filter(ChatSession.started_at <= started_to)

        total = query.with_entities(func.count(ChatSession.session_id)).scalar() or 0
        size = max(limit, 1)
        sessions = (
            query.order_by(ChatSession.started_at.desc())
            .offset((max(page, 1) - 1) * size)
            .limit(size)
            .all()
        )
        return sessions, total

    def get_session_details(
        self,
        db: Session,
        session_id: str,
        tenant_id: str,
    ) -> Tuple[ChatSession, List[ChatMessage]]:
        session = self.get_session(db, session_id, tenant_id)
        if session is None or session.deleted_at is not None:
            raise SessionNotFound("Chat session not found")

        messages = (
            db.query(ChatMessage)
            .filter(and_(ChatMessage.session_id == session_id, ChatMessage.deleted_at.is_(None)))
            .order_by(ChatMessage.timestamp.asc())
            .all()
        )
        if session.has_unread_messages:
            session.has_unread_messages = False
            db.commit()
            db.refresh(session)
        return session, messages

    def status_counts(self, db: Session, tenant_id: str) -> Dict[str, int]:
        rows = (
            db.query(ChatSession.status, func.count(ChatSession.session_id))
            .filter(and_(ChatSession.tenant_id == tenant_id, ChatSession.deleted_at.is_(None)))
            .group_by(ChatSession.status)
            .all()
        )
        counts = {status.value: 0 for status in SessionStatus}
        counts.update({status: count for status, count in rows})
        return counts

    # ------------------------------------------------------------------
    # Scheduled transitions
    # ------------------------------------------------------------------
    def sweep_inactive_sessions(self, db: Session, *, now: Optional[datetime] = None) -> SweepResult:
        """Abandon idle sessions and end stale ones, one bulk UPDATE each."""
        now = now or utcnow()
        abandon_cutoff = now - self.windows.abandon_after
        end_cutoff = now - self.windows.end_after

        abandoned = (
            db.query(ChatSession)
            .filter(
                and_(
                    ChatSession.status == SessionStatus.ACTIVE.value,
                    ChatSession.last_message_at <= abandon_cutoff,
                    ChatSession.last_message_at > end_cutoff,
                )
            )
            .update({ChatSession.status: SessionStatus.ABANDONED.value}, synchronize_session=False)
        )
        ended = (
            db.query(ChatSession)
            .filter(
                and_(
                    ChatSession.status.in_(LIVE_STATUSES),
                    ChatSession.last_message_at <= end_cutoff,
                )
            )
            .update(
                {ChatSession.status: SessionStatus.ENDED.value, ChatSession.ended_at: now},
                synchronize_session=False,
            )
        )
        db.commit()
        result = SweepResult(abandoned=abandoned or 0, ended=ended or 0)
        logger.info("Inactive sessions swept", extra={"abandoned": result.abandoned, "ended": result.ended})
        return result

    def purge_expired_messages(self, db: Session, *, now: Optional[datetime] = None) -> int:
        """Redact message content older than the retention window.

        The row stays (with ``deleted_at`` set and empty content) so token
        and latency analytics survive; the owning session is untouched.
        """
        now = now or utcnow()
        cutoff = now - self.windows.message_retention
        purged = (
            db.query(ChatMessage)
            .filter(and_(ChatMessage.timestamp < cutoff, ChatMessage.deleted_at.is_(None)))
            .update(
                {
                    ChatMessage.deleted_at: now,
                    ChatMessage.content: "",
                    ChatMessage.extracted_contact: None,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        logger.info("Expired messages purged", extra={"count": purged or 0, "older_than": cutoff.isoformat()})
        return purged or 0

    def purge_deleted_sessions(self, db: Session, *, now: Optional[datetime] = None) -> PurgeResult:
        """Hard-delete soft-deleted sessions past the grace period.

        A session still referenced by a lead as its first or last session is
        skipped, whatever its own counters say.
        """
        now = now or utcnow()
        cutoff = now - self.windows.purge_grace
        candidates = (
            db.query(ChatSession.session_id)
            .filter(
                and_(
                    ChatSession.deleted_at.isnot(None),
                    ChatSession.deleted_at <= cutoff,
                    ChatSession.message_count == 0,
                    ChatSession.contact_captured.is_(False),
                )
            )
            .all()
        )

        result = PurgeResult()
        for (session_id,) in candidates:
            if self.lead_engine.is_session_referenced(db, session_id):
                result.skipped_lead_reference += 1
                logger.info("Session purge skipped; referenced by lead", extra={"session_id": session_id})
                continue

            db.query(ChatMessage).filter(ChatMessage.session_id == session_id).delete(synchronize_session=False)
            removed = (
                db.query(ChatSession)
                .filter(
                    and_(
                        ChatSession.session_id == session_id,
                        ChatSession.deleted_at.isnot(None),
                        ChatSession.message_count == 0,
                        ChatSession.contact_captured.is_(False),
                    )
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            result.deleted += removed or 0

        logger.info(
            "Deleted sessions purged",
            extra={"deleted": result.deleted, "skipped": result.skipped_lead_reference},
        )
        return result

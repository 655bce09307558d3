"""Unit tests for the session lifecycle and retention jobs."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from chatforge.errors import (
    InvalidMessage,
    SessionAlreadyDeleted,
    SessionEnded,
    SessionHasLeads,
    SessionHasMessages,
    SessionNotActive,
    SessionNotFound,
)
from chatforge.models.chat import ChatMessage, ChatSession, SessionStatus
from chatforge.services.lead_service import ExtractedContact, LeadDeduplicationEngine
from chatforge.services.session_service import LifecycleWindows, SessionService

T0 = datetime(2024, 3, 10, 12, 0)

WINDOWS = LifecycleWindows(
    abandon_after=timedelta(hours=2),
    end_after=timedelta(hours=24),
    purge_grace=timedelta(days=7),
    message_retention=timedelta(days=7),
)


@pytest.fixture
def service() -> SessionService:
    return SessionService(windows=WINDOWS)


def _session(service: SessionService, db, tenant_id: str = "tenant-a", now: datetime = T0) -> ChatSession:
    return service.create_session(db, tenant_id, visitor_id="visitor-1", now=now)


def test_create_session_defaults(db_session, service):
    session = service.create_session(
        db_session,
        "tenant-a",
        metadata={"user_agent": "Mozilla/5.0", "ip_address": "10.0.0.1", "referrer": None},
        now=T0,
    )

    assert session.status == SessionStatus.ACTIVE.value
    assert session.visitor_id.startswith("visitor_")
    assert session.message_count == 0
    assert session.contact_captured is False
    assert session.user_agent == "Mozilla/5.0"
    assert session.started_at == T0 == session.last_message_at


def test_record_user_message_updates_counters(db_session, service):
    session = _session(service, db_session)

    updated, message = service.record_user_message(db_session, session.session_id, "  Hello there  ", now=T0)

    assert message.content == "Hello there"
    assert updated.message_count == 1
    assert updated.user_message_count == 1
    assert updated.bot_message_count == 0
    assert updated.has_unread_messages is True

    service.record_assistant_message(db_session, session.session_id, "Hi!", llm_model="stub", latency_ms=12)
    db_session.refresh(updated)
    assert updated.message_count == 2
    assert updated.bot_message_count == 1


@pytest.mark.parametrize("content", ["", "   ", "x" * 1001])
def test_record_user_message_rejects_invalid_content(db_session, service, content):
    session = _session(service, db_session)

    with pytest.raises(InvalidMessage):
        service.record_user_message(db_session, session.session_id, content)


def test_unknown_session_raises_not_found(db_session, service):
    with pytest.raises(SessionNotFound):
        service.record_user_message(db_session, "missing", "hello")


def test_hourly_sweep_abandons_then_ends(db_session, service):
    idle = _session(service, db_session, now=T0)
    fresh = _session(service, db_session, now=T0 + timedelta(hours=2, minutes=30))

    result = service.sweep_inactive_sessions(db_session, now=T0 + timedelta(hours=3))
    assert (result.abandoned, result.ended) == (1, 0)
    db_session.refresh(idle)
    db_session.refresh(fresh)
    assert idle.status == SessionStatus.ABANDONED.value
    assert fresh.status == SessionStatus.ACTIVE.value

    result = service.sweep_inactive_sessions(db_session, now=T0 + timedelta(hours=25))
    assert result.ended == 1
    db_session.refresh(idle)
    assert idle.status == SessionStatus.ENDED.value
    assert idle.ended_at == T0 + timedelta(hours=25)


def test_sweep_is_idempotent(db_session, service):
    _session(service, db_session, now=T0)
    now = T0 + timedelta(hours=3)

    first = service.sweep_inactive_sessions(db_session, now=now)
    second = service.sweep_inactive_sessions(db_session, now=now)

    assert first.abandoned == 1
    assert (second.abandoned, second.ended) == (0, 0)


def test_sweep_window_boundaries(db_session, service):
    recent = _session(service, db_session, now=T0 - timedelta(hours=1, minutes=59))
    idle = _session(service, db_session, now=T0 - timedelta(hours=2))
    stale = _session(service, db_session, now=T0 - timedelta(hours=24))

    result = service.sweep_inactive_sessions(db_session, now=T0)

    assert (result.abandoned, result.ended) == (1, 1)
    for session in (recent, idle, stale):
        db_session.refresh(session)
    assert recent.status == SessionStatus.ACTIVE.value
    assert idle.status == SessionStatus.ABANDONED.value
    assert stale.status == SessionStatus.ENDED.value


def test_long_idle_active_session_ends_directly(db_session, service):
    session = _session(service, db_session, now=T0)

    result = service.sweep_inactive_sessions(db_session, now=T0 + timedelta(days=2))

    assert (result.abandoned, result.ended) == (0, 1)
    db_session.refresh(session)
    assert session.status == SessionStatus.ENDED.value


def test_abandoned_session_reactivates_on_new_message(db_session, service):
    session = _session(service, db_session, now=T0)
    service.sweep_inactive_sessions(db_session, now=T0 + timedelta(hours=3))

    updated, _ = service.record_user_message(
        db_session, session.session_id, "Still there?", now=T0 + timedelta(hours=4)
    )

    assert updated.status == SessionStatus.ACTIVE.value
    assert updated.last_message_at == T0 + timedelta(hours=4)


def test_ended_session_rejects_messages(db_session, service):
    session = _session(service, db_session)
    service.end_session(db_session, session.session_id, now=T0 + timedelta(minutes=5))

    with pytest.raises(SessionEnded):
        service.record_user_message(db_session, session.session_id, "hello again")


def test_end_session_is_idempotent(db_session, service):
    session = _session(service, db_session)

    first = service.end_session(db_session, session.session_id, now=T0 + timedelta(minutes=5))
    second = service.end_session(db_session, session.session_id, now=T0 + timedelta(minutes=9))

    assert first.status == second.status == SessionStatus.ENDED.value
    assert second.ended_at == T0 + timedelta(minutes=5)


def test_soft_delete_guards(db_session, service):
    empty = _session(service, db_session)
    chatty = _session(service, db_session)
    service.record_user_message(db_session, chatty.session_id, "hi")

    with pytest.raises(SessionHasMessages) as has_messages:
        service.soft_delete_session(db_session, chatty.session_id, "tenant-a")
    assert has_messages.value.code == "SESSION_HAS_MESSAGES"

    deleted = service.soft_delete_session(db_session, empty.session_id, "tenant-a", now=T0)
    assert deleted.deleted_at == T0

    with pytest.raises(SessionAlreadyDeleted):
        service.soft_delete_session(db_session, empty.session_id, "tenant-a")
    with pytest.raises(SessionNotActive):
        service.record_user_message(db_session, empty.session_id, "hello")


def test_soft_delete_refuses_captured_session(db_session, service):
    session = _session(service, db_session)
    session.contact_captured = True
    db_session.commit()

    with pytest.raises(SessionHasLeads):
        service.soft_delete_session(db_session, session.session_id, "tenant-a")


def test_soft_delete_is_tenant_scoped(db_session, service):
    session = _session(service, db_session, tenant_id="tenant-a")

    with pytest.raises(SessionNotFound):
        service.soft_delete_session(db_session, session.session_id, "tenant-b")


def test_deleted_sessions_are_hidden_from_listings(db_session, service):
    kept = _session(service, db_session)
    removed = _session(service, db_session)
    service.soft_delete_session(db_session, removed.session_id, "tenant-a")

    sessions, total = service.list_sessions(db_session, "tenant-a")

    assert total == 1
    assert [s.session_id for s in sessions] == [kept.session_id]
    with pytest.raises(SessionNotFound):
        service.get_session_details(db_session, removed.session_id, "tenant-a")


def test_session_details_clear_unread_flag(db_session, service):
    session = _session(service, db_session)
    service.record_user_message(db_session, session.session_id, "hi")

    details, messages = service.get_session_details(db_session, session.session_id, "tenant-a")

    assert details.has_unread_messages is False
    assert [m.content for m in messages] == ["hi"]


def test_purge_deleted_sessions_respects_grace_period(db_session, service):
    session = _session(service, db_session)
    service.soft_delete_session(db_session, session.session_id, "tenant-a", now=T0)

    early = service.purge_deleted_sessions(db_session, now=T0 + timedelta(days=6))
    assert early.deleted == 0

    result = service.purge_deleted_sessions(db_session, now=T0 + timedelta(days=8))
    assert result.deleted == 1
    assert service.get_session(db_session, session.session_id) is None


def test_purge_skips_session_referenced_by_lead(db_session):
    engine = LeadDeduplicationEngine()
    service = SessionService(windows=WINDOWS, lead_engine=engine)
    first = _session(service, db_session)
    engine.capture_contact(db_session, first.session_id, "tenant-a", ExtractedContact(email="ann@example.com"))

    # an inconsistent row: soft-deleted, empty, uncaptured, yet named by a lead
    orphan = _session(service, db_session)
    service.soft_delete_session(db_session, orphan.session_id, "tenant-a", now=T0)
    lead = engine.list_leads(db_session, "tenant-a")[0][0]
    lead.last_session_id = orphan.session_id
    db_session.commit()

    result = service.purge_deleted_sessions(db_session, now=T0 + timedelta(days=8))

    assert result.deleted == 0
    assert result.skipped_lead_reference == 1
    assert service.get_session(db_session, orphan.session_id) is not None


def test_purge_expired_messages_keeps_session(db_session, service):
    session = _session(service, db_session, now=T0)
    service.record_user_message(db_session, session.session_id, "old message", now=T0)
    service.record_user_message(
        db_session, session.session_id, "recent message", now=T0 + timedelta(days=6)
    )

    purged = service.purge_expired_messages(db_session, now=T0 + timedelta(days=8))

    assert purged == 1
    messages, total = service.list_messages(db_session, session.session_id)
    assert total == 1
    assert messages[0].content == "recent message"
    redacted = db_session.query(ChatMessage).filter(ChatMessage.deleted_at.isnot(None)).one()
    assert redacted.content == ""
    db_session.refresh(session)
    assert session.message_count == 2


def test_history_window_returns_latest_turns_in_order(db_session, service):
    session = _session(service, db_session)
    for minute in range(4):
        service.record_user_message(
            db_session, session.session_id, f"question {minute}", now=T0 + timedelta(minutes=minute)
        )

    history = service.get_history(db_session, session.session_id, limit=2)

    assert history == [
        {"role": "user", "content": "question 2"},
        {"role": "user", "content": "question 3"},
    ]


def test_status_counts_cover_every_status(db_session, service):
    _session(service, db_session)
    ended = _session(service, db_session)
    service.end_session(db_session, ended.session_id)

    counts = service.status_counts(db_session, "tenant-a")

    assert counts == {"active": 1, "abandoned": 0, "ended": 1}

"""Periodic session sweeps and retention purges."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from chatforge.config import settings
from chatforge.database.session import SessionLocal
from chatforge.services.session_service import SessionService, SweepResult

logger = logging.getLogger(__name__)


@dataclass
class DailyCleanupResult:
    messages_purged: int = 0
    sessions_deleted: int = 0
    sessions_skipped_lead_reference: int = 0

    def to_payload(self) -> dict:
        return asdict(self)


class CleanupScheduler:
    """Runs the hourly abandon/end sweep and the daily retention purge.

    Each run opens its own database session and is predicated only on current
    state, so overlapping or repeated runs are harmless. A failed run is
    logged and reported as zero counts; the next scheduled run is unaffected.
    """

    def __init__(
        self,
        sessions: Optional[SessionService] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        timezone: Optional[str] = None,
    ) -> None:
        self.sessions = sessions or SessionService()
        self.session_factory = session_factory
        self.scheduler = AsyncIOScheduler(timezone=timezone or settings.rate_limit_timezone)

    def start(self) -> None:
        logger.info("Starting cleanup scheduler")
        self.scheduler.add_job(
            self.run_hourly_sweep,
            CronTrigger(minute=0),
            id="sweep_inactive_sessions",
            name="Abandon and end inactive chat sessions",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_daily_cleanup,
            CronTrigger(hour=settings.daily_cleanup_hour, minute=0),
            id="daily_retention_cleanup",
            name="Purge expired messages and deleted sessions",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Cleanup scheduler started", extra={"daily_hour": settings.daily_cleanup_hour})

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Cleanup scheduler stopped")

    async def run_hourly_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        # Store calls block, so jobs run on a worker thread.
        return await asyncio.to_thread(self.sweep, now)

    async def run_daily_cleanup(self, now: Optional[datetime] = None) -> DailyCleanupResult:
        return await asyncio.to_thread(self.daily_cleanup, now)

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        db = self.session_factory()
        try:
            return self.sessions.sweep_inactive_sessions(db, now=now)
        except Exception as exc:
            db.rollback()
            logger.error("Hourly session sweep failed", extra={"error": str(exc)})
            return SweepResult()
        finally:
            db.close()

    def daily_cleanup(self, now: Optional[datetime] = None) -> DailyCleanupResult:
        result = DailyCleanupResult()
        db = self.session_factory()
        try:
            try:
                result.messages_purged = self.sessions.purge_expired_messages(db, now=now)
            except Exception as exc:
                db.rollback()
                logger.error("Message retention purge failed", extra={"error": str(exc)})

            try:
                purge = self.sessions.purge_deleted_sessions(db, now=now)
                result.sessions_deleted = purge.deleted
                result.sessions_skipped_lead_reference = purge.skipped_lead_reference
            except Exception as exc:
                db.rollback()
                logger.error("Deleted session purge failed", extra={"error": str(exc)})
        finally:
            db.close()

        logger.info("Daily cleanup finished", extra=result.to_payload())
        return result

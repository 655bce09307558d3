"""Redis-backed daily session quota per tenant.

Key pattern: ``session_limit:{tenant_id}:{YYYY-MM-DD}`` where the date is the
calendar day in ``RATE_LIMIT_TIMEZONE``. The counter expires at the end of
that day, so nothing has to reset it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from redis.asyncio import Redis

from chatforge.config import settings

logger = logging.getLogger(__name__)


@dataclass
class LimitStatus:
    """Result of a read-only quota check."""

    limit_exceeded: bool
    current_count: int
    max_limit: int
    resets_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "limit_exceeded": self.limit_exceeded,
            "current_count": self.current_count,
            "max_limit": self.max_limit,
            "resets_at": self.resets_at.isoformat(),
        }


class RateLimitStore:
    """Atomic per-tenant day counters with fail-open reads."""

    def __init__(
        self,
        *,
        url: str | None = None,
        daily_limit: int | None = None,
        timezone: str | None = None,
        key_prefix: str | None = None,
        timeout: float | None = None,
        client: Redis | None = None,
    ) -> None:
        self.url = (url or settings.redis_url).strip()
        self.daily_limit = daily_limit if daily_limit is not None else settings.daily_session_limit
        self.tz = ZoneInfo(timezone or settings.rate_limit_timezone)
        self.key_prefix = (key_prefix or settings.rate_limit_key_prefix).strip() or "session_limit"
        self.timeout = timeout if timeout is not None else settings.redis_timeout_seconds
        self._client: Redis | None = client
        self._lock = asyncio.Lock()

    async def _get_client(self) -> Redis:
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is None:
                self._client = Redis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=self.timeout,
                    socket_connect_timeout=self.timeout,
                )
            return self._client

    # ------------------------------------------------------------------
    # Day arithmetic
    # ------------------------------------------------------------------
    def _local_now(self, now: datetime | None = None) -> datetime:
        if now is None:
            return datetime.now(self.tz)
        if now.tzinfo is None:
            # naive timestamps are UTC throughout the code base
            now = now.replace(tzinfo=ZoneInfo("UTC"))
        return now.astimezone(self.tz)

    def day_key(self, tenant_id: str, day: date | None = None, *, now: datetime | None = None) -> str:
        current_day = day or self._local_now(now).date()
        return f"{self.key_prefix}:{tenant_id}:{current_day.isoformat()}"

    def end_of_day(self, now: datetime | None = None) -> datetime:
        local_now = self._local_now(now)
        next_midnight = datetime.combine(local_now.date() + timedelta(days=1), time.min, tzinfo=self.tz)
        return next_midnight

    def seconds_until_end_of_day(self, now: datetime | None = None) -> int:
        local_now = self._local_now(now)
        remaining = (self.end_of_day(local_now) - local_now).total_seconds()
        return max(int(remaining), 1)

    # ------------------------------------------------------------------
    # Quota operations
    # ------------------------------------------------------------------
    async def check_limit(
        self,
        tenant_id: str,
        *,
        max_limit: int | None = None,
        now: datetime | None = None,
    ) -> LimitStatus:
        """Read today's counter without touching it; reports "not exceeded" if Redis is down."""
        limit = max_limit if max_limit is not None else self.daily_limit
        resets_at = self.end_of_day(now)
        key = self.day_key(tenant_id, now=now)
        try:
            client = await self._get_client()
            raw = await asyncio.wait_for(client.get(key), timeout=self.timeout)
            current = int(raw or 0)
        except Exception as exc:
            logger.error(
                "Rate limit check failed; allowing session",
                extra={"tenant": tenant_id, "key": key, "error": str(exc)},
            )
            return LimitStatus(limit_exceeded=False, current_count=0, max_limit=limit, resets_at=resets_at)

        return LimitStatus(
            limit_exceeded=current >= limit,
            current_count=current,
            max_limit=limit,
            resets_at=resets_at,
        )

    async def increment(self, tenant_id: str, *, now: datetime | None = None) -> int:
        """INCR today's counter; the first increment of a day arms the expiry.

        Returns the new count, or 0 when the store is unreachable.
        """
        key = self.day_key(tenant_id, now=now)
        try:
            client = await self._get_client()
            new_count = int(await asyncio.wait_for(client.incr(key), timeout=self.timeout))
            if new_count == 1:
                ttl = self.seconds_until_end_of_day(now)
                await asyncio.wait_for(client.expire(key, ttl), timeout=self.timeout)
                logger.info("Session counter created", extra={"tenant": tenant_id, "ttl": ttl})
            logger.info(
                "Session counter incremented",
                extra={"tenant": tenant_id, "count": new_count, "limit": self.daily_limit},
            )
            return new_count
        except Exception as exc:
            logger.error("Rate limit increment failed", extra={"tenant": tenant_id, "key": key, "error": str(exc)})
            return 0

    async def get_count(self, tenant_id: str, day: date | None = None) -> int:
        key = self.day_key(tenant_id, day)
        try:
            client = await self._get_client()
            raw = await asyncio.wait_for(client.get(key), timeout=self.timeout)
            return int(raw or 0)
        except Exception as exc:
            logger.error("Rate limit read failed", extra={"tenant": tenant_id, "key": key, "error": str(exc)})
            return 0

    async def reset(self, tenant_id: str) -> None:
        key = self.day_key(tenant_id)
        try:
            client = await self._get_client()
            await asyncio.wait_for(client.delete(key), timeout=self.timeout)
            logger.info("Session counter reset", extra={"tenant": tenant_id})
        except Exception as exc:
            logger.error("Rate limit reset failed", extra={"tenant": tenant_id, "error": str(exc)})

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            return bool(await asyncio.wait_for(client.ping(), timeout=self.timeout))
        except Exception as exc:
            logger.error("Redis health check failed", extra={"error": str(exc)})
            return False

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as exc:  # pragma: no cover - best effort
            logger.warning("Redis close failed", extra={"error": str(exc)})
        finally:
            self._client = None

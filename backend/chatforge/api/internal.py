"""Service-token protected triggers for the cleanup jobs."""
from __future__ import annotations

import structlog
from fastapi import APIRouter

from chatforge.dependencies import CleanupSchedulerDep, ServiceTokenDep
from chatforge.schemas.chat import DailyCleanupResponse, SweepResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/internal/cleanup", tags=["Internal"])


@router.post("/sweep", response_model=SweepResponse)
async def trigger_session_sweep(_: ServiceTokenDep, scheduler: CleanupSchedulerDep) -> SweepResponse:
    result = await scheduler.run_hourly_sweep()
    logger.info("Manual session sweep", abandoned=result.abandoned, ended=result.ended)
    return SweepResponse(abandoned=result.abandoned, ended=result.ended)


@router.post("/daily", response_model=DailyCleanupResponse)
async def trigger_daily_cleanup(_: ServiceTokenDep, scheduler: CleanupSchedulerDep) -> DailyCleanupResponse:
    result = await scheduler.run_daily_cleanup()
    logger.info("Manual daily cleanup", **result.to_payload())
    return DailyCleanupResponse(**result.to_payload())

"""Business-owner endpoints, reached through the gateway with the service token."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter

from chatforge.api.chat import build_pagination
from chatforge.dependencies import ChatServiceDep, DatabaseDep, OwnerTenantDep
from chatforge.schemas.chat import (
    DashboardSummary,
    LeadList,
    LeadResponse,
    MessageResponse,
    SessionDetailResponse,
    SessionList,
    SessionResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@router.get("/sessions", response_model=SessionList)
def list_sessions(
    tenant_id: OwnerTenantDep,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
    status: Optional[str] = None,
    contact_captured: Optional[bool] = None,
    started_from: Optional[datetime] = None,
    started_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> SessionList:
    sessions, total = chat_service.list_sessions(
        db,
        tenant_id,
        status=status,
        contact_captured=contact_captured,
        started_from=started_from,
        started_to=started_to,
        page=page,
        limit=limit,
    )
    logger.info("Dashboard sessions listed", tenant=tenant_id, total=total, page=page)
    return SessionList(
        sessions=[SessionResponse.model_validate(session) for session in sessions],
        pagination=build_pagination(total, page, limit),
    )


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
def get_session_details(
    session_id: str,
    tenant_id: OwnerTenantDep,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> SessionDetailResponse:
    session, messages = chat_service.get_session_details(db, session_id, tenant_id)
    return SessionDetailResponse(
        session=SessionResponse.model_validate(session),
        messages=[MessageResponse.model_validate(message) for message in messages],
        user_agent=session.user_agent,
        ip_address=session.ip_address,
        referrer=session.referrer,
    )


@router.delete("/sessions/{session_id}")
def delete_session(
    session_id: str,
    tenant_id: OwnerTenantDep,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> dict:
    session = chat_service.delete_session(db, session_id, tenant_id)
    logger.info("Dashboard session deleted", tenant=tenant_id, session_id=session_id)
    return {"success": True, "session_id": session.session_id, "deleted_at": session.deleted_at}


@router.get("/leads", response_model=LeadList)
def list_leads(
    tenant_id: OwnerTenantDep,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> LeadList:
    leads, total = chat_service.list_leads(db, tenant_id, status=status, page=page, limit=limit)
    return LeadList(
        leads=[LeadResponse.model_validate(lead) for lead in leads],
        pagination=build_pagination(total, page, limit),
    )


@router.get("/summary", response_model=DashboardSummary)
async def dashboard_summary(
    tenant_id: OwnerTenantDep,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> DashboardSummary:
    summary = await chat_service.dashboard_summary(db, tenant_id)
    return DashboardSummary(tenant_id=tenant_id, **summary)

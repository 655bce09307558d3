"""Public chat endpoints used by the embeddable widget."""
from __future__ import annotations

import json
from math import ceil
from typing import AsyncGenerator

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import StreamingResponse

from chatforge.dependencies import ChatServiceDep, DatabaseDep
from chatforge.schemas.chat import (
    ChatReplyResponse,
    MessageCreateRequest,
    MessageList,
    MessageResponse,
    Pagination,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat"])


def build_pagination(total: int, page: int, limit: int) -> Pagination:
    size = max(limit, 1)
    return Pagination(total=total, page=max(page, 1), size=size, pages=ceil(total / size) if total else 1)


@router.post("/session/create", response_model=SessionCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_chat_session(
    payload: SessionCreateRequest,
    request: Request,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> SessionCreateResponse:
    metadata = {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
        "referrer": request.headers.get("referer"),
    }
    created = await chat_service.create_session(
        db,
        payload.tenant_id,
        visitor_id=payload.visitor_id,
        metadata=metadata,
    )
    logger.info(
        "Chat session created",
        tenant=payload.tenant_id,
        session_id=created.session.session_id,
        sessions_today=created.quota.current_count + 1,
    )
    return SessionCreateResponse(
        session=SessionResponse.model_validate(created.session),
        business_name=created.business.business_name,
        greeting=created.business.chatbot_greeting,
        sessions_today=created.quota.current_count + 1,
        daily_limit=created.quota.max_limit,
    )


@router.get("/session/{session_id}", response_model=SessionResponse)
def get_chat_session(
    session_id: str,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> SessionResponse:
    session = chat_service.get_session(db, session_id)
    return SessionResponse.model_validate(session)


@router.post("/session/{session_id}/message", response_model=ChatReplyResponse)
async def send_chat_message(
    session_id: str,
    payload: MessageCreateRequest,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> ChatReplyResponse:
    reply = await chat_service.send_message(db, session_id, payload.message)
    logger.info(
        "Chat message answered",
        session_id=session_id,
        contact_captured=reply.contact_captured,
        new_lead=reply.capture.is_new_lead if reply.capture else None,
    )
    return ChatReplyResponse(
        session_id=session_id,
        reply=MessageResponse.model_validate(reply.assistant_message),
        contact_captured=reply.contact_captured,
        is_new_lead=reply.capture.is_new_lead if reply.capture else None,
    )


@router.post("/session/{session_id}/message/stream")
async def stream_chat_message(
    session_id: str,
    payload: MessageCreateRequest,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> StreamingResponse:
    stream = await chat_service.send_message_stream(db, session_id, payload.message)

    async def iterator() -> AsyncGenerator[str, None]:
        try:
            async for chunk in stream.chunks:
                yield f"data: {json.dumps({'content': chunk})}\n\n"
            summary = {"contact_captured": stream.contact_captured, "is_new_lead": stream.is_new_lead}
            yield f"data: {json.dumps(summary)}\n\n"
            yield "data: [DONE]\n\n"
        except Exception as exc:  # pragma: no cover - headers already sent
            logger.error("Chat reply stream failed", session_id=session_id, error=str(exc))
            yield "data: [ERROR]\n\n"

    return StreamingResponse(
        iterator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/session/{session_id}/messages", response_model=MessageList)
def list_chat_messages(
    session_id: str,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
    page: int = 1,
    limit: int = 20,
) -> MessageList:
    messages, total = chat_service.get_messages(db, session_id, page=page, limit=limit)
    return MessageList(
        session_id=session_id,
        messages=[MessageResponse.model_validate(message) for message in messages],
        pagination=build_pagination(total, page, limit),
    )


@router.post("/session/{session_id}/end", response_model=SessionResponse)
def end_chat_session(
    session_id: str,
    db: DatabaseDep,
    chat_service: ChatServiceDep,
) -> SessionResponse:
    session = chat_service.end_session(db, session_id)
    logger.info("Chat session end requested", session_id=session_id, status=session.status)
    return SessionResponse.model_validate(session)

"""Chat orchestration: quota, session lifecycle, lead capture and the bot reply."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from chatforge.errors import DailyLimitExceeded, DataIntegrityError
from chatforge.models.chat import ChatMessage, ChatSession
from chatforge.models.lead import ContactLead
from chatforge.services.business_service import BusinessChatConfig, BusinessService
from chatforge.services.embedding_service import EmbeddingService
from chatforge.services.lead_service import (
    CaptureResult,
    LeadDeduplicationEngine,
    detect_intent,
    extract_contact,
)
from chatforge.services.llm_service import LLMService
from chatforge.services.rate_limit_service import LimitStatus, RateLimitStore
from chatforge.services.session_service import SessionService
from chatforge.services.vector_service import QdrantVectorService, VectorSearchResults

logger = logging.getLogger(__name__)


@dataclass
class SessionCreated:
    session: ChatSession
    business: BusinessChatConfig
    quota: LimitStatus


@dataclass
class ChatReply:
    session: ChatSession
    user_message: ChatMessage
    assistant_message: ChatMessage
    capture: Optional[CaptureResult] = None

    @property
    def contact_captured(self) -> bool:
        return bool(self.session.contact_captured)


@dataclass
class ChatStream:
    """Reply text chunks for a turn whose visitor message is already stored."""

    session_id: str
    contact_captured: bool
    is_new_lead: Optional[bool]
    chunks: AsyncIterator[str]


@dataclass
class _PreparedTurn:
    session: ChatSession
    tenant_id: str
    user_message: ChatMessage
    user_text: str
    capture: Optional[CaptureResult]
    context: VectorSearchResults
    system_prompt: str
    history: List[Dict[str, str]]
    high_intent: bool


class ChatService:
    """Coordinates the collaborators behind the public chat endpoints."""

    def __init__(
        self,
        rate_limits: RateLimitStore,
        *,
        sessions: Optional[SessionService] = None,
        leads: Optional[LeadDeduplicationEngine] = None,
        business: Optional[BusinessService] = None,
        vectors: Optional[QdrantVectorService] = None,
        embeddings: Optional[EmbeddingService] = None,
        llm: Optional[LLMService] = None,
    ) -> None:
        self.rate_limits = rate_limits
        self.leads = leads or LeadDeduplicationEngine()
        self.sessions = sessions or SessionService(lead_engine=self.leads)
        self.business = business or BusinessService()
        self.vectors = vectors or QdrantVectorService()
        self.embeddings = embeddings or EmbeddingService()
        self.llm = llm or LLMService()

    # ------------------------------------------------------------------
    # Visitor operations
    # ------------------------------------------------------------------
    async def create_session(
        self,
        db: Session,
        tenant_id: str,
        *,
        visitor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Optional[str]]] = None,
    ) -> SessionCreated:
        config = await self.business.get_chat_config(tenant_id)

        quota = await self.rate_limits.check_limit(tenant_id)
        if quota.limit_exceeded:
            logger.warning(
                "Daily session limit reached",
                extra={"tenant": tenant_id, "count": quota.current_count, "limit": quota.max_limit},
            )
            raise DailyLimitExceeded(
                f"Daily limit of {quota.max_limit} sessions reached; resets at {quota.resets_at.isoformat()}"
            )

        session = self.sessions.create_session(db, tenant_id, visitor_id=visitor_id, metadata=metadata)
        await self.rate_limits.increment(tenant_id)
        return SessionCreated(session=session, business=config, quota=quota)

    async def _prepare_turn(self, db: Session, session_id: str, text: str) -> _PreparedTurn:
        """Store the visitor turn, capture contact details and build the prompt."""
        session = self.sessions.require_session(db, session_id)
        # reject ended or deleted sessions before spending a business-service call
        self.sessions.state_machine.check_accepts_message(session)
        config = await self.business.get_chat_config(session.tenant_id)

        contact = extract_contact(text)
        session, user_message = self.sessions.record_user_message(
            db,
            session_id,
            text,
            extracted_contact=contact.to_dict() if contact.has_identity else None,
        )

        capture: Optional[CaptureResult] = None
        if contact.has_identity and not session.contact_captured:
            try:
                capture = self.leads.capture_contact(db, session_id, session.tenant_id, contact)
            except DataIntegrityError as exc:
                logger.warning("Lead capture rejected", extra={"session_id": session_id, "error": exc.code})
            db.refresh(session)

        intents = [] if session.contact_captured else detect_intent(user_message.content)
        context = await self._business_context(config, user_message.content)
        system_prompt = self.llm.build_system_prompt(
            business_name=config.business_name,
            business_context=context.context or (config.business_description or ""),
            tone=config.chatbot_tone,
            greeting=config.chatbot_greeting,
            restrictions=config.chatbot_restrictions,
            detected_intent=intents,
        )
        return _PreparedTurn(
            session=session,
            tenant_id=session.tenant_id,
            user_message=user_message,
            user_text=user_message.content,
            capture=capture,
            context=context,
            system_prompt=system_prompt,
            history=self.sessions.get_history(db, session_id),
            high_intent=bool(intents),
        )

    async def send_message(self, db: Session, session_id: str, text: str) -> ChatReply:
        turn = await self._prepare_turn(db, session_id, text)
        response = await self.llm.generate_reply(
            system_prompt=turn.system_prompt,
            history=turn.history,
            user_message=turn.user_text,
        )

        assistant_message = self.sessions.record_assistant_message(
            db,
            session_id,
            response.content,
            llm_model=response.model,
            tokens=response.usage,
            latency_ms=response.latency_ms,
            vectors_used=turn.context.chunk_ids,
        )
        session = turn.session
        db.refresh(session)
        logger.info(
            "Chat turn completed",
            extra={
                "session_id": session_id,
                "tenant": turn.tenant_id,
                "provider": response.provider,
                "latency_ms": response.latency_ms,
                "high_intent": turn.high_intent,
            },
        )
        return ChatReply(
            session=session,
            user_message=turn.user_message,
            assistant_message=assistant_message,
            capture=turn.capture,
        )

    async def send_message_stream(self, db: Session, session_id: str, text: str) -> ChatStream:
        """Run every check and store the visitor turn now; stream the reply afterwards.

        Rejections (unknown, ended or deleted session, refused business) raise
        here, before any byte of the stream is sent. The assistant turn is
        stored once the stream is exhausted.
        """
        turn = await self._prepare_turn(db, session_id, text)
        return ChatStream(
            session_id=session_id,
            contact_captured=bool(turn.session.contact_captured),
            is_new_lead=turn.capture.is_new_lead if turn.capture else None,
            chunks=self._stream_reply(db, session_id, turn),
        )

    async def _stream_reply(self, db: Session, session_id: str, turn: _PreparedTurn) -> AsyncGenerator[str, None]:
        started = time.perf_counter()
        parts: List[str] = []
        async for chunk in self.llm.stream_reply(
            system_prompt=turn.system_prompt,
            history=turn.history,
            user_message=turn.user_text,
        ):
            parts.append(chunk)
            yield chunk

        content = "".join(parts)
        if not content:
            logger.warning("Streamed reply was empty; nothing stored", extra={"session_id": session_id})
            return
        latency_ms = int((time.perf_counter() - started) * 1000)
        self.sessions.record_assistant_message(
            db,
            session_id,
            content,
            llm_model=self.llm.model,
            latency_ms=latency_ms,
            vectors_used=turn.context.chunk_ids,
        )
        logger.info(
            "Streamed chat turn completed",
            extra={
                "session_id": session_id,
                "tenant": turn.tenant_id,
                "provider": self.llm.provider.name,
                "latency_ms": latency_ms,
                "high_intent": turn.high_intent,
            },
        )

    async def _business_context(self, config: BusinessChatConfig, text: str) -> VectorSearchResults:
        embedding = await self.embeddings.embed_query(text)
        if embedding is None:
            return VectorSearchResults()
        return await self.vectors.query(config.namespace, embedding)

    def get_session(self, db: Session, session_id: str) -> ChatSession:
        return self.sessions.require_session(db, session_id)

    def get_messages(
        self,
        db: Session,
        session_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ChatMessage], int]:
        return self.sessions.list_messages(db, session_id, page=page, limit=limit)

    def end_session(self, db: Session, session_id: str) -> ChatSession:
        return self.sessions.end_session(db, session_id)

    # ------------------------------------------------------------------
    # Tenant owner operations
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
        return self.sessions.list_sessions(
            db,
            tenant_id,
            status=status,
            contact_captured=contact_captured,
            started_from=started_from,
            started_to=started_to,
            page=page,
            limit=limit,
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
        return self.leads.list_leads(db, tenant_id, status=status, page=page, limit=limit)

    def get_session_details(
        self,
        db: Session,
        session_id: str,
        tenant_id: str,
    ) -> Tuple[ChatSession, List[ChatMessage]]:
        return self.sessions.get_session_details(db, session_id, tenant_id)

    def delete_session(self, db: Session, session_id: str, tenant_id: str) -> ChatSession:
        return self.sessions.soft_delete_session(db, session_id, tenant_id)

    async def dashboard_summary(self, db: Session, tenant_id: str) -> Dict[str, Any]:
        counts = self.sessions.status_counts(db, tenant_id)
        quota = await self.rate_limits.check_limit(tenant_id)
        return {
            "sessions": counts,
            "total_sessions": sum(counts.values()),
            "total_leads": self.leads.count_leads(db, tenant_id),
            "today": quota.to_payload(),
        }

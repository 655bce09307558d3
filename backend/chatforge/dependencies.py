"""FastAPI dependency helpers."""
import hmac
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from chatforge.config import settings
from chatforge.database import get_db
from chatforge.services.business_service import BusinessService
from chatforge.services.chat_service import ChatService
from chatforge.services.cleanup_scheduler import CleanupScheduler
from chatforge.services.embedding_service import EmbeddingService
from chatforge.services.lead_service import LeadDeduplicationEngine
from chatforge.services.llm_service import LLMService
from chatforge.services.rate_limit_service import RateLimitStore
from chatforge.services.session_service import SessionService
from chatforge.services.vector_service import QdrantVectorService


def get_rate_limit_store(request: Request) -> RateLimitStore:
    store = getattr(request.app.state, "rate_limit_store", None)
    if store is None:
        store = RateLimitStore()
        request.app.state.rate_limit_store = store
    return store


@lru_cache
def _cached_lead_engine() -> LeadDeduplicationEngine:
    return LeadDeduplicationEngine()


def get_lead_engine() -> LeadDeduplicationEngine:
    return _cached_lead_engine()


def get_session_service(
    lead_engine: LeadDeduplicationEngine = Depends(get_lead_engine),
) -> SessionService:
    return SessionService(lead_engine=lead_engine)


@lru_cache
def _cached_business_service() -> BusinessService:
    return BusinessService()


def get_business_service() -> BusinessService:
    return _cached_business_service()


@lru_cache
def _cached_vector_service() -> QdrantVectorService:
    return QdrantVectorService()


def get_vector_service() -> QdrantVectorService:
    return _cached_vector_service()


@lru_cache
def _cached_embedding_service() -> EmbeddingService:
    return EmbeddingService()


def get_embedding_service() -> EmbeddingService:
    return _cached_embedding_service()


@lru_cache
def _cached_llm_service() -> LLMService:
    return LLMService()


def get_llm_service() -> LLMService:
    return _cached_llm_service()


def get_chat_service(
    rate_limits: RateLimitStore = Depends(get_rate_limit_store),
    sessions: SessionService = Depends(get_session_service),
    leads: LeadDeduplicationEngine = Depends(get_lead_engine),
    business: BusinessService = Depends(get_business_service),
    vectors: QdrantVectorService = Depends(get_vector_service),
    embeddings: EmbeddingService = Depends(get_embedding_service),
    llm: LLMService = Depends(get_llm_service),
) -> ChatService:
    return ChatService(
        rate_limits,
        sessions=sessions,
        leads=leads,
        business=business,
        vectors=vectors,
        embeddings=embeddings,
        llm=llm,
    )


def get_cleanup_scheduler(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> CleanupScheduler:
    scheduler = getattr(request.app.state, "cleanup_scheduler", None)
    return scheduler or CleanupScheduler(sessions=sessions)


async def verify_service_token(x_service_token: str | None = Header(None)) -> None:
    """Internal callers (gateway, cron triggers) authenticate with the shared secret."""
    if not x_service_token or not hmac.compare_digest(x_service_token, settings.internal_service_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )


async def get_owner_tenant(
    _: None = Depends(verify_service_token),
    x_tenant_id: str | None = Header(None),
) -> str:
    """Tenant id the gateway resolved for the authenticated business owner."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header required",
        )
    return x_tenant_id.strip()


DatabaseDep = Annotated[Session, Depends(get_db)]
RateLimitStoreDep = Annotated[RateLimitStore, Depends(get_rate_limit_store)]
ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]
CleanupSchedulerDep = Annotated[CleanupScheduler, Depends(get_cleanup_scheduler)]
OwnerTenantDep = Annotated[str, Depends(get_owner_tenant)]
ServiceTokenDep = Annotated[None, Depends(verify_service_token)]

"""Engine and session factory for the chat store."""
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chatforge.config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    # In-memory sqlite must share one connection or each checkout sees an empty database.
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, echo=settings.debug, **_engine_options(settings.database_url))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; chat routes commit explicitly through the services."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

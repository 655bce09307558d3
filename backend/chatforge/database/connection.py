"""Startup and health helpers for the chat store."""
import logging

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from chatforge.database.base import Base
from chatforge.database.session import engine

logger = logging.getLogger(__name__)

CHAT_TABLES = ("chat_sessions", "chat_messages", "contact_leads")


def _register_models() -> None:
    from chatforge.models import chat, lead  # noqa: F401


async def init_db() -> None:
    """Fail startup early when the store is unreachable, then ensure the chat tables."""
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))
    create_tables()
    logger.info("Chat store ready", extra={"tables": list(CHAT_TABLES)})


def create_tables() -> None:
    _register_models()
    Base.metadata.create_all(bind=engine)


def drop_tables() -> None:
    """Drop sessions, messages and leads. Test and maintenance use only."""
    _register_models()
    Base.metadata.drop_all(bind=engine)
    logger.warning("Chat tables dropped")


def check_database() -> bool:
    """True when the store answers and every chat table exists."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            existing = set(inspect(connection).get_table_names())
    except SQLAlchemyError as exc:
        logger.error("Database health check failed", extra={"error": str(exc)})
        return False
    missing = [name for name in CHAT_TABLES if name not in existing]
    if missing:
        logger.error("Chat tables missing", extra={"missing": missing})
        return False
    return True

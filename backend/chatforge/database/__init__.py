"""Chat store: declarative base, engine, sessions and startup helpers."""
from .base import Base, utcnow
from .connection import check_database, create_tables, drop_tables, init_db
from .session import SessionLocal, engine, get_db

__all__ = [
    "Base",
    "check_database",
    "create_tables",
    "drop_tables",
    "engine",
    "get_db",
    "init_db",
    "SessionLocal",
    "utcnow",
]

"""Declarative base shared by all ORM models."""
from datetime import UTC, datetime

from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)

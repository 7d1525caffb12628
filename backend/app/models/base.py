"""SQLAlchemy declarative base and shared column helpers."""
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def utcnow() -> datetime:
    """Python-side timestamp default (microsecond precision keeps FIFO order stable)."""
    return datetime.now(timezone.utc)

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime

from ..db.base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column in this schema stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimeStampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


__all__ = ["Base", "TimeStampMixin", "utcnow"]

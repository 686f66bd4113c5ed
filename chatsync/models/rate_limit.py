"""SQLAlchemy ORM model for persisted rate limit counters."""
from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from chatsync.database import Base
from .base import new_id


class RateLimit(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (UniqueConstraint("action", "identifier", name="uq_rate_limits_action_identifier"),)

    id = Column(String(64), primary_key=True, default=new_id)
    action = Column(String(64), nullable=False)
    identifier = Column(String(255), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime(timezone=True), nullable=False)
    last_attempt = Column(DateTime(timezone=True), nullable=False)
    blocked_until = Column(DateTime(timezone=True), nullable=True)


__all__ = ["RateLimit"]

"""SQLAlchemy ORM model for notifications."""
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import expression, func

from chatsync.database import Base
from .base import new_id


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    sender_id = Column(String(64), nullable=True)
    type = Column(String(100), nullable=False)
    title = Column(String(200), nullable=False, default="")
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, server_default=expression.false(), default=False)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = ["Notification"]

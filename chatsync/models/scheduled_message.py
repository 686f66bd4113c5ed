"""SQLAlchemy ORM model for messages queued for later delivery."""
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import expression, func

from chatsync.database import Base
from .base import new_id


class ScheduledMessage(Base):
    __tablename__ = "scheduled_messages"

    id = Column(String(64), primary_key=True, default=new_id)
    chat_id = Column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    attachments = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    auto_delete_seconds = Column(Integer, nullable=True)
    sent = Column(Boolean, nullable=False, server_default=expression.false(), default=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    message_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = ["ScheduledMessage"]

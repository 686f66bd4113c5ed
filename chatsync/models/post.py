"""SQLAlchemy ORM model for feed posts."""
from __future__ import annotations

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from chatsync.database import Base
from .base import new_id


class Post(Base):
    __tablename__ = "posts"

    id = Column(String(64), primary_key=True, default=new_id)
    author_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    media_url = Column(String(1024), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = ["Post"]

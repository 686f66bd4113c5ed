"""SQLAlchemy ORM models for chats, their participants and per-user pins."""
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import expression, func

from chatsync.database import Base
from .base import TimestampMixin, new_id


class Chat(TimestampMixin, Base):
    __tablename__ = "chats"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(120), nullable=True)
    is_group = Column(Boolean, nullable=False, server_default=expression.false(), default=False)
    created_by = Column(String(64), nullable=False, index=True)
    # Captured into messages.expires_at at send time; never applied retroactively.
    auto_delete_seconds = Column(Integer, nullable=True)

    participants = relationship("ChatParticipant", back_populates="chat", cascade="all, delete-orphan")
    pins = relationship("PinnedChat", back_populates="chat", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan")


class ChatParticipant(Base):
    __tablename__ = "chat_participants"

    chat_id = Column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    role = Column(String(20), nullable=False, default="member")
    joined_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    chat = relationship("Chat", back_populates="participants")


class PinnedChat(Base):
    __tablename__ = "pinned_chats"

    chat_id = Column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    chat = relationship("Chat", back_populates="pins")


__all__ = ["Chat", "ChatParticipant", "PinnedChat"]

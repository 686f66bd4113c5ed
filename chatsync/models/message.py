"""SQLAlchemy ORM models for chat messages and their per-user state."""
from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chatsync.database import Base
from .base import new_id


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("sender_id", "client_id", name="uq_messages_sender_client_id"),)

    id = Column(String(64), primary_key=True, default=new_id)
    chat_id = Column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False, index=True)
    # Temporary id minted by the sending client; lets realtime confirmations
    # replace the optimistic copy instead of duplicating it.
    client_id = Column(String(64), nullable=True)
    content = Column(Text, nullable=False, default="")
    attachments = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    reply_to_id = Column(String(64), ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    forwarded_from_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    chat = relationship("Chat", back_populates="messages")
    deletions = relationship("MessageDeletion", back_populates="message", cascade="all, delete-orphan")
    stars = relationship("StarredMessage", back_populates="message", cascade="all, delete-orphan")
    receipts = relationship("MessageReceipt", back_populates="message", cascade="all, delete-orphan")


class MessageDeletion(Base):
    """Per-user tombstone: the message is hidden for ``user_id`` only."""

    __tablename__ = "message_deletions"

    message_id = Column(String(64), ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True)
    deleted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    message = relationship("Message", back_populates="deletions")


class StarredMessage(Base):
    __tablename__ = "starred_messages"

    message_id = Column(String(64), ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    message = relationship("Message", back_populates="stars")


class MessageReceipt(Base):
    """Delivery state of one message for one recipient."""

    __tablename__ = "message_receipts"

    message_id = Column(String(64), ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True)
    state = Column(String(16), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    message = relationship("Message", back_populates="receipts")


__all__ = ["Message", "MessageDeletion", "StarredMessage", "MessageReceipt"]

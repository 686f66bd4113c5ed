"""Device-local key/value rows backing the local persistence layer."""
from __future__ import annotations

from sqlalchemy import BigInteger, Column, String, Text

from chatsync.database import Base


class LocalEntry(Base):
    """One serialized value and its expiry, written together in one statement."""

    __tablename__ = "local_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    created_at_ms = Column(BigInteger, nullable=False)
    expires_at_ms = Column(BigInteger, nullable=True)


__all__ = ["LocalEntry"]

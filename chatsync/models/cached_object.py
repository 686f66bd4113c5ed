"""Device-local rows backing the structured object cache."""
from __future__ import annotations

from sqlalchemy import BigInteger, Column, Integer, String, Text

from chatsync.database import Base


class CachedObject(Base):
    __tablename__ = "object_cache_entries"

    collection = Column(String(32), primary_key=True)
    key = Column(String(255), primary_key=True)
    payload = Column(Text, nullable=False)
    stored_at_ms = Column(BigInteger, nullable=False, index=True)


class CacheCollection(Base):
    """One row per entity kind, carrying the schema version it was opened with."""

    __tablename__ = "object_cache_collections"

    name = Column(String(32), primary_key=True)
    version = Column(Integer, nullable=False)
    opened_at_ms = Column(BigInteger, nullable=False)


__all__ = ["CachedObject", "CacheCollection"]

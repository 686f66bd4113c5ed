"""Utility mixins shared across ORM models."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime
from sqlalchemy.sql import func


def new_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    """Reusable timestamp columns with timezone-aware defaults."""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["TimestampMixin", "new_id"]

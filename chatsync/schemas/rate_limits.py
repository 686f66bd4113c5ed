"""Schemas used by the client-side rate limiter."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class RateLimitConfig(BaseModel):
    max_attempts: int = Field(..., ge=1)
    window_ms: int = Field(..., gt=0)
    block_duration_ms: int = Field(..., gt=0)


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining_attempts: int | None = None
    blocked_until: datetime | None = None


__all__ = ["RateLimitConfig", "RateLimitDecision"]

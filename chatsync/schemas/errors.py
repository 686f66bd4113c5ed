"""Schemas for classified, user-facing errors."""
from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class ErrorKind(StrEnum):
    AUTH = "auth"
    VALIDATION = "validation"
    PERMISSION = "permission"
    CONFLICT = "conflict"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class ClassifiedError(BaseModel):
    kind: ErrorKind
    code: str
    user_message: str
    detail: str | None = None


__all__ = ["ErrorKind", "ClassifiedError"]

"""Utilities for comparing configured secrets without leaking values."""
from __future__ import annotations

import hmac
from typing import Final

__all__ = ["is_placeholder", "verify_bearer_token"]

_PLACEHOLDER_VALUES: Final[set[str]] = {
    "changeme",
    "change-me",
    "placeholder",
    "example",
    "sample",
    "your-key-here",
}


def is_placeholder(value: str | None) -> bool:
    if not value:
        return True
    normalized = value.strip().lower()
    return not normalized or normalized in _PLACEHOLDER_VALUES


def verify_bearer_token(authorization: str | None, secret: str | None) -> bool:
    """Return ``True`` when ``authorization`` is ``Bearer <secret>``.

    A missing or placeholder secret never authorizes anything.
    """

    if is_placeholder(secret) or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip().encode("utf-8"), secret.strip().encode("utf-8"))

"""Helpers for checking shared secrets and access tokens."""
from .secrets import is_placeholder, verify_bearer_token
from .tokens import bearer_token, create_access_token, decode_access_token

__all__ = [
    "is_placeholder",
    "verify_bearer_token",
    "bearer_token",
    "create_access_token",
    "decode_access_token",
]

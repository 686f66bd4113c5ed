"""Map raw backend, transport and storage errors onto the stable taxonomy.

Classification order matters: an offline client short-circuits to a network
error before any code or message lookup, so a generic fetch failure while
offline is never reported as something else.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Final, Mapping

import httpx
from sqlalchemy.exc import DBAPIError

from ..schemas.errors import ClassifiedError, ErrorKind
from .errors import ERROR_TYPES, SyncError


@dataclass(frozen=True, slots=True)
class _Entry:
    kind: ErrorKind
    code: str
    user_message: str


_OFFLINE: Final = _Entry(ErrorKind.NETWORK, "NET_001", "No internet connection. Please check your network and try again.")
_TIMEOUT: Final = _Entry(ErrorKind.NETWORK, "NET_002", "Request timed out. Please try again.")

# Exact match on structured codes (Postgres SQLSTATE, PostgREST, auth, storage, HTTP status).
_CODE_TABLE: Final[Mapping[str, _Entry]] = {
    "AUTH_001": _Entry(ErrorKind.AUTH, "AUTH_001", "Please log in to continue"),
    "AUTH_002": _Entry(ErrorKind.AUTH, "AUTH_002", "Your session has expired"),
    "AUTH_003": _Entry(ErrorKind.AUTH, "AUTH_003", "Email or password is incorrect"),
    "auth/invalid-credentials": _Entry(ErrorKind.AUTH, "AUTH_003", "Invalid email or password"),
    "auth/user-not-found": _Entry(ErrorKind.AUTH, "AUTH_004", "Account not found"),
    "auth/email-in-use": _Entry(ErrorKind.CONFLICT, "AUTH_005", "Email already registered"),
    "auth/weak-password": _Entry(ErrorKind.VALIDATION, "AUTH_006", "Password too weak"),
    "auth/network-error": _Entry(ErrorKind.NETWORK, "NET_001", "Connection failed"),
    "23505": _Entry(ErrorKind.CONFLICT, "DB_003", "This item already exists"),
    "23503": _Entry(ErrorKind.CONFLICT, "DB_002", "Referenced item not found"),
    "42501": _Entry(ErrorKind.PERMISSION, "DB_001", "You do not have permission to perform this action"),
    "PGRST116": _Entry(ErrorKind.NOT_FOUND, "DB_004", "Not found"),
    "PGRST301": _Entry(ErrorKind.NETWORK, "NET_001", "Connection lost"),
    "ECONNREFUSED": _Entry(ErrorKind.NETWORK, "NET_001", "Connection lost"),
    "storage/unauthorized": _Entry(ErrorKind.PERMISSION, "STOR_001", "Upload not allowed"),
    "storage/object-not-found": _Entry(ErrorKind.NOT_FOUND, "STOR_002", "File not found"),
    "storage/quota-exceeded": _Entry(ErrorKind.UNKNOWN, "STOR_003", "Storage limit reached"),
    "NET_001": _OFFLINE,
    "NET_002": _TIMEOUT,
    "RATE_001": _Entry(ErrorKind.RATE_LIMITED, "RATE_001", "Too many requests. Please wait and try again."),
    "401": _Entry(ErrorKind.AUTH, "AUTH_001", "Please log in to continue"),
    "403": _Entry(ErrorKind.PERMISSION, "DB_001", "You do not have permission to perform this action"),
    "404": _Entry(ErrorKind.NOT_FOUND, "DB_004", "Not found"),
    "408": _TIMEOUT,
    "409": _Entry(ErrorKind.CONFLICT, "DB_003", "This item already exists"),
    "422": _Entry(ErrorKind.VALIDATION, "VALIDATION_001", "Please check your input"),
    "429": _Entry(ErrorKind.RATE_LIMITED, "RATE_001", "Too many requests. Please wait and try again."),
    "504": _TIMEOUT,
}

# Substring match on the lowercased message, first hit wins.
_PATTERNS: Final[tuple[tuple[str, _Entry], ...]] = (
    ("timed out", _TIMEOUT),
    ("timeout", _TIMEOUT),
    ("failed to fetch", _OFFLINE),
    ("networkerror", _OFFLINE),
    ("network", _OFFLINE),
    ("connection", _OFFLINE),
    ("abort", _OFFLINE),
    ("duplicate key", _CODE_TABLE["23505"]),
    ("unique constraint", _CODE_TABLE["23505"]),
    ("foreign key", _CODE_TABLE["23503"]),
    ("row-level security", _CODE_TABLE["42501"]),
    ("permission", _CODE_TABLE["42501"]),
    ("policy", _CODE_TABLE["42501"]),
    ("forbidden", _CODE_TABLE["42501"]),
    ("jwt expired", _CODE_TABLE["AUTH_002"]),
    ("session expired", _CODE_TABLE["AUTH_002"]),
    ("not authenticated", _CODE_TABLE["AUTH_001"]),
    ("invalid credentials", _CODE_TABLE["AUTH_003"]),
    ("not found", _CODE_TABLE["PGRST116"]),
    ("rate limit", _CODE_TABLE["RATE_001"]),
    ("too many", _CODE_TABLE["RATE_001"]),
)

_UNKNOWN_CODE: Final = "ERR000"
_UNKNOWN_MESSAGE: Final = "Something went wrong"
_MAX_RAW_MESSAGE = 60
_ERROR_PREFIX_RE = re.compile(r"error:", re.IGNORECASE)
_FAILED_TO_RE = re.compile(r"failed to", re.IGNORECASE)
_TRY_AGAIN_RE = re.compile(r"please try again", re.IGNORECASE)


def _structured_code(error: Any) -> str | None:
    if isinstance(error, httpx.HTTPStatusError):
        return str(error.response.status_code) if error.response is not None else None
    if isinstance(error, DBAPIError):
        orig = getattr(error, "orig", None)
        pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        return str(pgcode) if pgcode else None
    if isinstance(error, Mapping):
        raw = error.get("code") or error.get("status")
        return str(raw) if raw not in (None, "") else None
    raw = getattr(error, "code", None) or getattr(error, "status", None)
    if raw in (None, "") or isinstance(raw, bool):
        return None
    return str(raw)


def _message_of(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        return str(error.get("message") or error.get("error_description") or "")
    if isinstance(error, DBAPIError) and getattr(error, "orig", None) is not None:
        return str(error.orig)
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) if error is not None else ""


def _clean_message(message: str) -> str:
    cleaned = _ERROR_PREFIX_RE.sub("", message)
    cleaned = _FAILED_TO_RE.sub("Cannot", cleaned)
    cleaned = _TRY_AGAIN_RE.sub("", cleaned).strip()
    return cleaned[:_MAX_RAW_MESSAGE] or _UNKNOWN_MESSAGE


def _build(entry: _Entry, detail: str | None) -> ClassifiedError:
    return ClassifiedError(kind=entry.kind, code=entry.code, user_message=entry.user_message, detail=detail or None)


def classify(error: Any, *, online: bool = True) -> ClassifiedError:
    """Return the stable ``{kind, code, user_message}`` for ``error``."""

    raw_message = _message_of(error)

    if not online:
        return _build(_OFFLINE, raw_message)

    if isinstance(error, SyncError):
        entry = _CODE_TABLE.get(error.code)
        return ClassifiedError(
            kind=error.kind,
            code=entry.code if entry is not None else error.code,
            user_message=error.user_message,
            detail=raw_message or None,
        )
    if isinstance(error, httpx.TimeoutException):
        return _build(_TIMEOUT, raw_message)
    if isinstance(error, httpx.TransportError):
        return _build(_OFFLINE, raw_message)
    if isinstance(error, TimeoutError):
        return _build(_TIMEOUT, raw_message)
    if isinstance(error, ConnectionError):
        return _build(_OFFLINE, raw_message)

    code = _structured_code(error)
    if code is not None and code in _CODE_TABLE:
        return _build(_CODE_TABLE[code], raw_message)

    lowered = raw_message.lower()
    for pattern, entry in _PATTERNS:
        if pattern in lowered:
            return _build(entry, raw_message)

    return ClassifiedError(
        kind=ErrorKind.UNKNOWN,
        code=_UNKNOWN_CODE,
        user_message=_clean_message(raw_message),
        detail=raw_message or None,
    )


def to_exception(classified: ClassifiedError) -> SyncError:
    """Build the taxonomy exception matching ``classified``."""

    error_type = ERROR_TYPES.get(classified.kind, ERROR_TYPES[ErrorKind.UNKNOWN])
    error = error_type(classified.detail or classified.user_message, code=classified.code, user_message=classified.user_message)
    error.classified = classified
    return error


__all__ = ["classify", "to_exception"]

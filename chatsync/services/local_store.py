"""Durable, prefixed key/value storage for the device with optional expiry.

Each key maps to one ``local_entries`` row holding the JSON value together with
its creation and expiry instants. Reads never raise: storage failures, values
that no longer decode and lapsed entries all come back as a miss.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping

from pydantic_core import to_jsonable_python
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..clock import Clock, to_millis, utcnow
from ..config import Settings, get_settings
from ..database import Database
from ..models import LocalEntry
from ..schemas.cache import CachedEntry

logger = logging.getLogger(__name__)


class LocalStore:
    def __init__(self, database: Database, *, prefix: str | None = None, clock: Clock = utcnow) -> None:
        self._database = database
        self._prefix = get_settings().storage_prefix if prefix is None else prefix
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, clock: Clock = utcnow) -> "LocalStore":
        """Open the device store at ``LOCAL_STORE_URL`` under ``STORAGE_PREFIX``."""

        settings = settings or get_settings()
        store = cls(Database(settings.local_store_url), prefix=settings.storage_prefix, clock=clock)
        store.init()
        return store

    @property
    def prefix(self) -> str:
        return self._prefix

    def init(self) -> None:
        self._database.init(tables=[LocalEntry.__table__])

    def dispose(self) -> None:
        self._database.dispose()

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    def get_entry(self, key: str, *, ttl_required: bool = False) -> CachedEntry[Any] | None:
        """Return the stored entry for ``key`` or ``None`` on a miss.

        A lapsed entry is evicted as it is read. With ``ttl_required`` an entry
        that carries no expiry is also treated as lapsed.
        """

        full_key = self._key(key)
        try:
            with self._database.session() as session:
                row = session.get(LocalEntry, full_key)
                if row is None:
                    return None
                now_ms = self._now_ms()
                lapsed = (row.expires_at_ms is None and ttl_required) or (
                    row.expires_at_ms is not None and now_ms >= row.expires_at_ms
                )
                if lapsed:
                    session.delete(row)
                    session.commit()
                    return None
                raw_value, created_at_ms, expires_at_ms = row.value, row.created_at_ms, row.expires_at_ms
        except SQLAlchemyError:
            logger.exception("Local store read failed for %s", full_key)
            return None

        try:
            data = json.loads(raw_value)
        except ValueError:
            logger.warning("Discarding undecodable local value for %s", full_key)
            return None
        return CachedEntry[Any](data=data, created_at_ms=created_at_ms, expires_at_ms=expires_at_ms)

    def get(self, key: str, default: Any = None, *, ttl_required: bool = False) -> Any:
        entry = self.get_entry(key, ttl_required=ttl_required)
        return default if entry is None else entry.data

    def multi_get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {key: self.get(key) for key in keys}

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Store ``value`` under ``key``; ``ttl`` is in seconds. Returns ``False`` on failure."""

        return self.multi_set({key: value}, ttl=ttl)

    def multi_set(self, pairs: Mapping[str, Any], ttl: float | None = None) -> bool:
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be a positive number of seconds")

        now_ms = self._now_ms()
        expires_at_ms = now_ms + int(ttl * 1000) if ttl is not None else None
        rows: list[LocalEntry] = []
        for key, value in pairs.items():
            try:
                serialized = json.dumps(to_jsonable_python(value))
            except (TypeError, ValueError):
                logger.warning("Value for %s is not serializable; skipping", self._key(key))
                return False
            rows.append(
                LocalEntry(key=self._key(key), value=serialized, created_at_ms=now_ms, expires_at_ms=expires_at_ms)
            )

        try:
            with self._database.session() as session:
                for row in rows:
                    session.merge(row)
                session.commit()
        except SQLAlchemyError:
            logger.exception("Local store write failed for %d key(s)", len(rows))
            return False
        return True

    def remove(self, key: str) -> None:
        full_key = self._key(key)
        try:
            with self._database.session() as session:
                session.execute(delete(LocalEntry).where(LocalEntry.key == full_key))
                session.commit()
        except SQLAlchemyError:
            logger.exception("Local store delete failed for %s", full_key)

    def keys(self) -> list[str]:
        """Return the unprefixed keys currently stored under this prefix."""

        try:
            with self._database.session() as session:
                stored = session.scalars(
                    select(LocalEntry.key).where(LocalEntry.key.startswith(self._prefix, autoescape=True))
                ).all()
        except SQLAlchemyError:
            logger.exception("Local store key listing failed")
            return []
        return [key[len(self._prefix):] for key in stored]

    def clear(self) -> None:
        """Remove every key under this store's prefix, leaving foreign keys alone."""

        try:
            with self._database.session() as session:
                session.execute(
                    delete(LocalEntry).where(LocalEntry.key.startswith(self._prefix, autoescape=True))
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception("Local store clear failed")


class SessionCache:
    """Per-concern TTL caches layered on a :class:`LocalStore`."""

    PROFILE_KEY = "user_profile"
    FEED_KEY = "feed_posts"
    CHAT_LIST_KEY = "chats_list"

    def __init__(self, store: LocalStore, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._store = store
        self._feed_ttl = settings.feed_cache_ttl_seconds
        self._chat_list_ttl = settings.chat_list_cache_ttl_seconds
        self._message_ttl = settings.message_cache_ttl_seconds
        self._offline_ttl = settings.offline_cache_ttl_seconds

    @staticmethod
    def _messages_key(chat_id: str) -> str:
        return f"messages_{chat_id}"

    @staticmethod
    def _offline_key(key: str) -> str:
        return f"offline_{key}"

    # Profile: no expiry, invalidated explicitly.
    def cache_profile(self, profile: dict[str, Any]) -> bool:
        return self._store.set(self.PROFILE_KEY, profile)

    def get_profile(self) -> dict[str, Any] | None:
        return self._store.get(self.PROFILE_KEY)

    def invalidate_profile(self) -> None:
        self._store.remove(self.PROFILE_KEY)

    def cache_feed(self, posts: list[dict[str, Any]]) -> bool:
        return self._store.set(self.FEED_KEY, posts, ttl=self._feed_ttl)

    def get_feed(self) -> list[dict[str, Any]] | None:
        return self._store.get(self.FEED_KEY, ttl_required=True)

    def invalidate_feed(self) -> None:
        self._store.remove(self.FEED_KEY)

    def cache_chat_list(self, chats: list[dict[str, Any]]) -> bool:
        return self._store.set(self.CHAT_LIST_KEY, chats, ttl=self._chat_list_ttl)

    def get_chat_list(self) -> list[dict[str, Any]] | None:
        return self._store.get(self.CHAT_LIST_KEY, ttl_required=True)

    def invalidate_chat_list(self) -> None:
        self._store.remove(self.CHAT_LIST_KEY)

    def cache_messages(self, chat_id: str, messages: list[dict[str, Any]]) -> bool:
        return self._store.set(self._messages_key(chat_id), messages, ttl=self._message_ttl)

    def get_messages(self, chat_id: str) -> list[dict[str, Any]] | None:
        return self._store.get(self._messages_key(chat_id), ttl_required=True)

    def invalidate_messages(self, chat_id: str) -> None:
        self._store.remove(self._messages_key(chat_id))

    def save_offline(self, key: str, data: Any) -> bool:
        return self._store.set(self._offline_key(key), data, ttl=self._offline_ttl)

    def load_offline(self, key: str) -> Any:
        return self._store.get(self._offline_key(key), ttl_required=True)

    def clear_all(self) -> None:
        self._store.clear()


__all__ = ["LocalStore", "SessionCache"]

"""Local persistence tests: prefixes, expiry, eviction and the session caches."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from sqlalchemy import select

from chatsync.clock import to_millis
from chatsync.config import Settings
from chatsync.database import Database
from chatsync.models import LocalEntry
from chatsync.services.local_store import LocalStore, SessionCache


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(f"sqlite+pysqlite:///{tmp_path / 'device.db'}")
    yield db
    db.dispose()


@pytest.fixture
def store(database: Database, clock: FakeClock) -> LocalStore:
    store = LocalStore(database, prefix="postup_", clock=clock)
    store.init()
    return store


def _raw_keys(database: Database) -> list[str]:
    with database.session() as session:
        return sorted(session.scalars(select(LocalEntry.key)).all())


def test_round_trip_preserves_json_shapes(store: LocalStore):
    value = {"name": "Ada", "tags": ["a", "b"], "nested": {"count": 3, "ok": True}, "missing": None}

    assert store.set("profile", value) is True
    assert store.get("profile") == value
    assert store.get("absent", default="fallback") == "fallback"


def test_values_are_stored_as_json_or_rejected(store: LocalStore, caplog):
    stamp = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

    assert store.set("draft", {"saved_at": stamp, "tags": ("a", "b")}) is True
    assert store.get("draft") == {"saved_at": "2026-03-02T09:30:00Z", "tags": ["a", "b"]}

    with caplog.at_level(logging.WARNING, logger="chatsync.services.local_store"):
        assert store.set("handle", {"socket": object()}) is False
    assert store.get("handle") is None
    assert any("not serializable" in record.getMessage() for record in caplog.records)


def test_entry_lapses_exactly_at_ttl(store: LocalStore, clock: FakeClock, database: Database):
    store.set("token", "abc", ttl=60)
    entry = store.get_entry("token")
    assert entry.created_at_ms == to_millis(clock())
    assert entry.expires_at_ms == entry.created_at_ms + 60_000

    clock.advance(seconds=59, milliseconds=999)
    assert store.get("token") == "abc"

    clock.advance(milliseconds=1)
    assert store.get("token") is None
    assert _raw_keys(database) == []

    # Once lapsed, a value never comes back, even if the clock steps backwards.
    clock.advance(seconds=-30)
    assert store.get("token") is None


def test_non_positive_ttl_is_rejected(store: LocalStore):
    with pytest.raises(ValueError):
        store.set("token", "abc", ttl=0)


def test_multi_get_and_multi_set(store: LocalStore):
    assert store.multi_set({"a": 1, "b": [2]}) is True

    assert store.multi_get(["a", "b", "c"]) == {"a": 1, "b": [2], "c": None}


def test_clear_only_touches_own_prefix(database: Database, store: LocalStore, clock: FakeClock):
    other = LocalStore(database, prefix="other_", clock=clock)
    store.set("feed_posts", [1, 2])
    store.set("chats_list", [])
    other.set("feed_posts", [3])

    store.clear()

    assert store.keys() == []
    assert other.get("feed_posts") == [3]
    assert _raw_keys(database) == ["other_feed_posts"]


def test_prefix_with_wildcards_is_escaped(database: Database, clock: FakeClock):
    underscored = LocalStore(database, prefix="a_", clock=clock)
    lookalike = LocalStore(database, prefix="ab", clock=clock)
    underscored.init()
    underscored.set("x", 1)
    lookalike.set("x", 2)

    underscored.clear()

    assert lookalike.get("x") == 2


def test_undecodable_value_reads_as_miss(store: LocalStore, database: Database, clock: FakeClock, caplog):
    with database.session() as session:
        session.add(LocalEntry(key="postup_broken", value="{not json", created_at_ms=to_millis(clock())))
        session.commit()

    with caplog.at_level(logging.WARNING, logger="chatsync.services.local_store"):
        assert store.get("broken") is None

    assert any("undecodable" in record.getMessage() for record in caplog.records)


def test_storage_failure_reads_as_miss(tmp_path, clock: FakeClock, caplog):
    missing_table = Database(f"sqlite+pysqlite:///{tmp_path / 'empty.db'}")
    store = LocalStore(missing_table, prefix="postup_", clock=clock)

    with caplog.at_level(logging.ERROR, logger="chatsync.services.local_store"):
        assert store.get("anything") is None
        assert store.set("anything", 1) is False
    missing_table.dispose()

    assert caplog.records


def test_ttl_required_treats_untimed_entries_as_lapsed(store: LocalStore, database: Database):
    store.set("feed_posts", [{"id": "p1"}])

    assert store.get("feed_posts", ttl_required=True) is None
    assert _raw_keys(database) == []


@pytest.fixture
def session_cache(store: LocalStore) -> SessionCache:
    settings = Settings(
        FEED_CACHE_TTL_SECONDS=300,
        CHAT_LIST_CACHE_TTL_SECONDS=120,
        MESSAGE_CACHE_TTL_SECONDS=60,
        OFFLINE_CACHE_TTL_SECONDS=7 * 24 * 60 * 60,
    )
    return SessionCache(store, settings)


def test_session_cache_ttls(session_cache: SessionCache, clock: FakeClock):
    session_cache.cache_profile({"id": "u1", "username": "ada"})
    session_cache.cache_feed([{"id": "p1"}])
    session_cache.cache_chat_list([{"id": "c1"}])
    session_cache.cache_messages("c1", [{"id": "m1"}])
    session_cache.save_offline("drafts", {"c1": "half written"})

    clock.advance(seconds=61)
    assert session_cache.get_messages("c1") is None
    assert session_cache.get_chat_list() == [{"id": "c1"}]

    clock.advance(seconds=60)
    assert session_cache.get_chat_list() is None
    assert session_cache.get_feed() == [{"id": "p1"}]

    clock.advance(seconds=180)
    assert session_cache.get_feed() is None

    clock.advance(days=6)
    assert session_cache.load_offline("drafts") == {"c1": "half written"}
    assert session_cache.get_profile() == {"id": "u1", "username": "ada"}

    clock.advance(days=1)
    assert session_cache.load_offline("drafts") is None
    assert session_cache.get_profile() == {"id": "u1", "username": "ada"}


def test_session_cache_invalidation(session_cache: SessionCache, store: LocalStore):
    session_cache.cache_profile({"id": "u1", "username": "ada"})
    session_cache.cache_messages("c1", [{"id": "m1"}])
    session_cache.cache_messages("c2", [{"id": "m2"}])

    session_cache.invalidate_messages("c1")
    session_cache.invalidate_profile()

    assert session_cache.get_messages("c1") is None
    assert session_cache.get_messages("c2") == [{"id": "m2"}]
    assert session_cache.get_profile() is None

    session_cache.clear_all()
    assert store.keys() == []


def test_store_opens_from_settings(tmp_path, clock: FakeClock):
    settings = Settings(
        LOCAL_STORE_URL=f"sqlite+pysqlite:///{tmp_path / 'configured.db'}",
        STORAGE_PREFIX="configured_",
    )
    store = LocalStore.from_settings(settings, clock=clock)

    assert store.prefix == "configured_"
    assert store.set("theme", "dark") is True
    assert store.get("theme") == "dark"
    assert (tmp_path / "configured.db").exists()
    store.dispose()

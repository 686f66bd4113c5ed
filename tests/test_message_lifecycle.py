"""Message lifecycle tests: optimistic sends, realtime merges, deletes, receipts and forwards."""
from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterator

import httpx
import pytest

from chatsync.database import Database
from chatsync.schemas.errors import ErrorKind
from chatsync.schemas.messages import DeleteScope, DeliveryState, ScheduledMessageView
from chatsync.schemas.rate_limits import RateLimitConfig
from chatsync.schemas.realtime import ChangeEvent
from chatsync.services.backend import SqlChatBackend
from chatsync.services.errors import (
    NetworkError,
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
)
from chatsync.services.local_store import LocalStore, SessionCache
from chatsync.services.message_lifecycle import MessageLifecycleManager
from chatsync.services.network_monitor import NetworkMonitor
from chatsync.services.rate_limiter import RateLimiter
from chatsync.services.realtime import ChangeFeed, RealtimeBridge, chat_channel


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FlakyBackend:
    """Delegates to the real backend but can be told to fail or stall inserts and fail loads."""

    def __init__(self, inner: SqlChatBackend) -> None:
        self._inner = inner
        self.fail_inserts = False
        self.insert_calls = 0
        self.gate: asyncio.Event | None = None
        self.fail_loads = False
        self.load_calls = 0

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    async def list_messages(self, *args, **kwargs):
        self.load_calls += 1
        if self.fail_loads:
            raise httpx.ConnectError("connection refused")
        return await self._inner.list_messages(*args, **kwargs)

    async def insert_message(self, *args, **kwargs):
        self.insert_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_inserts:
            raise httpx.ConnectError("connection refused")
        return await self._inner.insert_message(*args, **kwargs)


class StallingLoads:
    """The first timeline load returns an empty snapshot, and only after being released."""

    def __init__(self, inner: SqlChatBackend) -> None:
        self._inner = inner
        self.calls = 0
        self.waiting = asyncio.Event()
        self.release = asyncio.Event()

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    async def list_messages(self, user_id, chat_id, limit=None):
        self.calls += 1
        if self.calls == 1:
            self.waiting.set()
            await self.release.wait()
            return []
        return await self._inner.list_messages(user_id, chat_id, limit)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(f"sqlite+pysqlite:///{tmp_path / 'backend.db'}")
    db.init()
    yield db
    db.dispose()


@pytest.fixture
def feed(clock: FakeClock) -> ChangeFeed:
    return ChangeFeed(clock=clock)


@pytest.fixture
def backend(database: Database, feed: ChangeFeed, clock: FakeClock) -> SqlChatBackend:
    return SqlChatBackend(database, feed, clock=clock)


def _manager(user_id: str, backend, feed: ChangeFeed, clock: FakeClock, **kwargs) -> MessageLifecycleManager:
    return MessageLifecycleManager(user_id, backend, RealtimeBridge(feed), clock=clock, **kwargs)


def test_send_replaces_optimistic_copy_with_server_row(backend, feed, clock):
    flaky = FlakyBackend(backend)

    async def scenario():
        flaky.gate = asyncio.Event()
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock)
        await alice.open_chat(chat.id)

        task = asyncio.create_task(alice.send(chat.id, "hello bob"))
        await asyncio.sleep(0)
        pending = alice.messages(chat.id)
        flaky.gate.set()
        sent = await task
        return pending, sent, alice.messages(chat.id)

    pending, sent, timeline = asyncio.run(scenario())

    assert len(pending) == 1
    assert pending[0].delivery_state == DeliveryState.SENDING
    assert pending[0].id == pending[0].client_id
    assert sent.delivery_state == DeliveryState.SENT
    assert sent.client_id == pending[0].client_id
    assert sent.id != sent.client_id
    assert [message.id for message in timeline] == [sent.id]


def test_replayed_events_leave_timeline_unchanged(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        events: list[ChangeEvent] = []

        async def record(event: ChangeEvent) -> None:
            events.append(event)

        feed.attach(chat_channel(chat.id), record)
        alice = _manager("alice", backend, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        await alice.open_chat(chat.id)
        await bob.open_chat(chat.id)

        first = await alice.send(chat.id, "one")
        clock.advance(seconds=1)
        await alice.send(chat.id, "two")
        await bob.mark_read(first.id)
        await alice.star(first.id)

        before = [message.model_dump() for message in alice.messages(chat.id)]
        for event in list(events):
            await feed.deliver(event)
        after = [message.model_dump() for message in alice.messages(chat.id)]
        return before, after, len(events)

    before, after, delivered = asyncio.run(scenario())

    assert delivered >= 4
    assert before == after


def test_failed_send_is_marked_and_can_be_retried(backend, feed, clock):
    flaky = FlakyBackend(backend)
    flaky.fail_inserts = True

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock)
        await alice.open_chat(chat.id)

        failed = await alice.send(chat.id, "are you there?")
        timeline_after_failure = alice.messages(chat.id)

        flaky.fail_inserts = False
        resent = await alice.retry(failed.client_id)
        return failed, timeline_after_failure, resent, alice.messages(chat.id)

    failed, after_failure, resent, timeline = asyncio.run(scenario())

    assert failed.delivery_state == DeliveryState.FAILED
    assert failed.last_error is not None
    assert failed.last_error.kind == ErrorKind.NETWORK
    assert failed.last_error.code == "NET_001"
    assert [message.delivery_state for message in after_failure] == [DeliveryState.FAILED]
    assert resent.delivery_state == DeliveryState.SENT
    assert resent.client_id != failed.client_id
    assert [message.id for message in timeline] == [resent.id]


def test_discard_removes_failed_message(backend, feed, clock):
    flaky = FlakyBackend(backend)
    flaky.fail_inserts = True

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock)
        await alice.open_chat(chat.id)
        failed = await alice.send(chat.id, "lost")
        alice.discard(failed.client_id)
        with pytest.raises(ValidationError):
            alice.discard(failed.client_id)
        return alice.messages(chat.id)

    assert asyncio.run(scenario()) == []


def test_offline_send_fails_without_calling_backend(backend, feed, clock):
    flaky = FlakyBackend(backend)
    network = NetworkMonitor(online=False)

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock, network=network)
        return await alice.send(chat.id, "offline hello")

    failed = asyncio.run(scenario())

    assert flaky.insert_calls == 0
    assert failed.delivery_state == DeliveryState.FAILED
    assert failed.last_error.code == "NET_001"


def test_send_rejects_empty_draft_before_network(backend, feed, clock):
    flaky = FlakyBackend(backend)

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock)
        with pytest.raises(ValidationError):
            await alice.send(chat.id, "   ")
        with pytest.raises(ValidationError):
            await alice.send(chat.id, "x" * 4001)
        return alice.messages(chat.id)

    assert asyncio.run(scenario()) == []
    assert flaky.insert_calls == 0


def test_send_is_rate_limited(tmp_path, backend, feed, clock, monkeypatch):
    monkeypatch.setattr(
        "chatsync.services.message_lifecycle.SEND_MESSAGE",
        RateLimitConfig(max_attempts=2, window_ms=60_000, block_duration_ms=60_000),
    )
    limits = Database(f"sqlite+pysqlite:///{tmp_path / 'limits.db'}")
    limiter = RateLimiter(limits, clock=clock)
    limiter.init()

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock, rate_limiter=limiter)
        await alice.send(chat.id, "one")
        await alice.send(chat.id, "two")
        with pytest.raises(RateLimitedError) as excinfo:
            await alice.send(chat.id, "three")
        return excinfo.value

    error = asyncio.run(scenario())
    limits.dispose()

    assert error.retry_after_ms == 60_000


def test_send_rate_check_runs_off_the_event_loop(tmp_path, backend, feed, clock, monkeypatch):
    limits = Database(f"sqlite+pysqlite:///{tmp_path / 'limits.db'}")
    limiter = RateLimiter(limits, clock=clock)
    limiter.init()
    threads: list[int] = []
    original_enforce = limiter.enforce

    def recording_enforce(*args, **kwargs):
        threads.append(threading.get_ident())
        return original_enforce(*args, **kwargs)

    monkeypatch.setattr(limiter, "enforce", recording_enforce)

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock, rate_limiter=limiter)
        await alice.send(chat.id, "hello")
        await alice.send(chat.id, "later", scheduled_for=clock() + timedelta(hours=1))
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())
    limits.dispose()

    assert len(threads) == 2
    assert loop_thread not in threads


def test_delete_for_me_only_hides_for_caller(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        await alice.open_chat(chat.id)
        await bob.open_chat(chat.id)

        message = await bob.send(chat.id, "for both of us")
        await alice.delete(message.id, DeleteScope.FOR_ME)

        alice.close_chat(chat.id)
        reloaded = await alice.open_chat(chat.id)
        return message, reloaded, bob.messages(chat.id)

    message, alice_view, bob_view = asyncio.run(scenario())

    assert alice_view == []
    assert [item.id for item in bob_view] == [message.id]


def test_delete_for_me_during_send_survives_confirmation(backend, feed, clock):
    flaky = FlakyBackend(backend)

    async def scenario():
        flaky.gate = asyncio.Event()
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        await alice.open_chat(chat.id)
        await bob.open_chat(chat.id)

        task = asyncio.create_task(alice.send(chat.id, "oops"))
        await asyncio.sleep(0)
        pending = alice.messages(chat.id)[0]
        await alice.delete(pending.id, DeleteScope.FOR_ME)
        after_delete = alice.messages(chat.id)

        flaky.gate.set()
        sent = await task
        after_confirm = alice.messages(chat.id)
        reloaded = await alice.open_chat(chat.id)
        return sent, after_delete, after_confirm, reloaded, bob.messages(chat.id)

    sent, after_delete, after_confirm, reloaded, bob_view = asyncio.run(scenario())

    assert after_delete == []
    assert after_confirm == []
    assert reloaded == []
    assert "alice" in sent.deleted_for
    assert [message.content for message in bob_view] == ["oops"]


def test_delete_for_everyone_requires_authorship(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        await alice.open_chat(chat.id)
        await bob.open_chat(chat.id)

        message = await bob.send(chat.id, "mine")
        with pytest.raises(PermissionDeniedError):
            await alice.delete(message.id, DeleteScope.FOR_EVERYONE)
        still_there = [item.id for item in alice.messages(chat.id)]

        await bob.delete(message.id, DeleteScope.FOR_EVERYONE)
        return message, still_there, alice.messages(chat.id), bob.messages(chat.id)

    message, still_there, alice_view, bob_view = asyncio.run(scenario())

    assert still_there == [message.id]
    assert alice_view == []
    assert bob_view == []


def test_edit_of_foreign_message_is_forbidden(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        await alice.open_chat(chat.id)
        await bob.open_chat(chat.id)

        message = await bob.send(chat.id, "original")
        with pytest.raises(PermissionDeniedError) as excinfo:
            await alice.edit(message.id, "tampered")
        clock.advance(seconds=5)
        edited = await bob.edit(message.id, "fixed typo")
        return excinfo.value, edited, alice.messages(chat.id)

    error, edited, alice_view = asyncio.run(scenario())

    assert error.user_message == "Forbidden"
    assert edited.content == "fixed typo"
    assert edited.edited_at is not None
    assert [(item.content, item.edited_at) for item in alice_view] == [("fixed typo", edited.edited_at)]


def test_edit_rejected_by_backend_when_not_loaded_locally(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        bob = _manager("bob", backend, feed, clock)
        message = await bob.send(chat.id, "not yours")
        alice = _manager("alice", backend, feed, clock)
        with pytest.raises(PermissionDeniedError):
            await alice.edit(message.id, "tampered")

    asyncio.run(scenario())


def test_sender_state_tracks_least_advanced_recipient(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob", "carol"], is_group=True, name="Trio")
        alice = _manager("alice", backend, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        carol = _manager("carol", backend, feed, clock)
        for manager in (alice, bob, carol):
            await manager.open_chat(chat.id)

        message = await alice.send(chat.id, "group hello")
        states = [alice.messages(chat.id)[0].delivery_state]

        await bob.mark_read(message.id)
        states.append(alice.messages(chat.id)[0].delivery_state)

        await carol.mark_delivered(message.id)
        states.append(alice.messages(chat.id)[0].delivery_state)

        await carol.mark_read(message.id)
        states.append(alice.messages(chat.id)[0].delivery_state)

        # A late "delivered" never moves anything backwards.
        await bob.mark_delivered(message.id)
        states.append(alice.messages(chat.id)[0].delivery_state)
        return states

    states = asyncio.run(scenario())

    assert states == [
        DeliveryState.SENT,
        DeliveryState.SENT,
        DeliveryState.DELIVERED,
        DeliveryState.READ,
        DeliveryState.READ,
    ]


def test_unread_counts_drop_as_messages_are_read(backend, feed, clock):
    async def scenario():
        with_bob = await backend.create_chat("alice", ["bob"])
        with_carol = await backend.create_chat("carol", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        bob = _manager("bob", backend, feed, clock)
        carol = _manager("carol", backend, feed, clock)

        first = await alice.send(with_bob.id, "one")
        await alice.send(with_bob.id, "two")
        await carol.send(with_carol.id, "hey")
        await bob.send(with_bob.id, "my own reply")

        before = (await bob.unread_counts(), await bob.unread_count(), await bob.unread_count(with_bob.id))
        await bob.mark_delivered(first.id)
        delivered_only = await bob.unread_count(with_bob.id)
        await bob.mark_read(first.id)
        after = (await bob.unread_counts(), await bob.unread_count())
        return with_bob, with_carol, before, delivered_only, after, await alice.unread_count()

    with_bob, with_carol, before, delivered_only, after, alice_total = asyncio.run(scenario())

    assert before == ({with_bob.id: 2, with_carol.id: 1}, 3, 2)
    assert delivered_only == 2
    assert after == ({with_bob.id: 1, with_carol.id: 1}, 2)
    assert alice_total == 1


def test_forward_reports_each_target(backend, feed, clock):
    async def scenario():
        source = await backend.create_chat("alice", ["bob"])
        with_carol = await backend.create_chat("alice", ["carol"])
        outsider = await backend.create_chat("bob", ["carol"])
        alice = _manager("alice", backend, feed, clock)
        await alice.open_chat(source.id)
        await alice.open_chat(with_carol.id)

        message = await alice.send(source.id, "pass it on")
        report = await alice.forward([message.id, message.id], [with_carol.id, outsider.id])
        return message, report, with_carol, outsider, alice.messages(with_carol.id)

    message, report, with_carol, outsider, forwarded = asyncio.run(scenario())

    assert report.as_status_map() == {with_carol.id: "success", outsider.id: "failure"}
    assert report.outcomes[outsider.id].error.kind == ErrorKind.PERMISSION
    assert len(report.outcomes[with_carol.id].message_ids) == 1
    assert [item.forwarded_from_id for item in forwarded] == [message.id]
    assert forwarded[0].content == "pass it on"


def test_forward_requires_messages_and_targets(backend, feed, clock):
    alice = _manager("alice", backend, feed, clock)

    async def scenario():
        with pytest.raises(ValidationError):
            await alice.forward([], ["chat"])
        with pytest.raises(ValidationError):
            await alice.forward(["message"], [])

    asyncio.run(scenario())


def test_superseded_load_is_discarded(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        bob = _manager("bob", backend, feed, clock)
        message = await bob.send(chat.id, "already here")

        stalling = StallingLoads(backend)
        alice = _manager("alice", stalling, feed, clock)
        first = asyncio.create_task(alice.open_chat(chat.id))
        await stalling.waiting.wait()
        second = await alice.open_chat(chat.id)
        stalling.release.set()
        await first
        return message, second, alice.messages(chat.id)

    message, second, timeline = asyncio.run(scenario())

    assert [item.id for item in second] == [message.id]
    assert [item.id for item in timeline] == [message.id]


def test_expired_messages_are_hidden(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"], auto_delete_seconds=30)
        alice = _manager("alice", backend, feed, clock)
        await alice.open_chat(chat.id)
        sent = await alice.send(chat.id, "self destructs")
        visible = alice.messages(chat.id)
        clock.advance(seconds=31)
        hidden = alice.messages(chat.id)
        reloaded = await alice.open_chat(chat.id)
        return sent, visible, hidden, reloaded

    sent, visible, hidden, reloaded = asyncio.run(scenario())

    assert sent.expires_at == sent.created_at + timedelta(seconds=30)
    assert [item.id for item in visible] == [sent.id]
    assert hidden == []
    assert reloaded == []


def test_per_message_auto_delete_overrides_chat_timer(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        return await alice.send(chat.id, "brief", auto_delete=10)

    sent = asyncio.run(scenario())

    assert sent.expires_at == sent.created_at + timedelta(seconds=10)


def test_star_and_unstar(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        await alice.open_chat(chat.id)
        message = await alice.send(chat.id, "keep this")
        starred = await alice.star(message.id)
        listing = await alice.starred()
        unstarred = await alice.unstar(message.id)
        return starred, listing, unstarred, await alice.starred()

    starred, listing, unstarred, empty = asyncio.run(scenario())

    assert starred.starred_by == {"alice"}
    assert [item.content for item in listing] == ["keep this"]
    assert unstarred.starred_by == set()
    assert empty == []


def test_chats_list_pinned_first_and_cached(tmp_path, backend, feed, clock):
    store_db = Database(f"sqlite+pysqlite:///{tmp_path / 'device.db'}")
    store = LocalStore(store_db, prefix="test_", clock=clock)
    store.init()
    cache = SessionCache(store)

    async def scenario():
        older = await backend.create_chat("alice", ["bob"])
        clock.advance(minutes=1)
        newer = await backend.create_chat("alice", ["carol"])
        alice = _manager("alice", backend, feed, clock, session_cache=cache)

        default_order = [chat.id for chat in await alice.list_chats()]
        await alice.pin_chat(older.id)
        invalidated = alice.cached_chats()
        pinned_order = [chat.id for chat in await alice.list_chats()]
        cached_order = [chat.id for chat in alice.cached_chats()]
        return older, newer, default_order, invalidated, pinned_order, cached_order

    older, newer, default_order, invalidated, pinned_order, cached_order = asyncio.run(scenario())
    store_db.dispose()

    assert default_order == [newer.id, older.id]
    assert invalidated is None
    assert pinned_order == [older.id, newer.id]
    assert cached_order == pinned_order


def test_open_chat_writes_message_cache(tmp_path, backend, feed, clock):
    store_db = Database(f"sqlite+pysqlite:///{tmp_path / 'device.db'}")
    store = LocalStore(store_db, prefix="test_", clock=clock)
    store.init()
    cache = SessionCache(store)

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock, session_cache=cache)
        await alice.open_chat(chat.id)
        sent = await alice.send(chat.id, "cached")
        return chat, sent

    chat, sent = asyncio.run(scenario())
    cached = cache.get_messages(chat.id)
    store_db.dispose()

    assert [record["id"] for record in cached] == [sent.id]


def test_open_chat_falls_back_to_cache_when_unreachable(tmp_path, backend, feed, clock):
    store_db = Database(f"sqlite+pysqlite:///{tmp_path / 'device.db'}")
    store = LocalStore(store_db, prefix="test_", clock=clock)
    store.init()
    cache = SessionCache(store)
    flaky = FlakyBackend(backend)
    network = NetworkMonitor()

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock, session_cache=cache, network=network)
        await alice.open_chat(chat.id)
        sent = await alice.send(chat.id, "kept offline")
        alice.close_chat(chat.id)

        flaky.fail_loads = True
        after_failure = await alice.open_chat(chat.id)
        alice.close_chat(chat.id)

        network.set_online(False)
        calls_before = flaky.load_calls
        while_offline = await alice.open_chat(chat.id)
        return sent, after_failure, while_offline, flaky.load_calls - calls_before

    sent, after_failure, while_offline, offline_calls = asyncio.run(scenario())
    store_db.dispose()

    assert [message.id for message in after_failure] == [sent.id]
    assert [message.id for message in while_offline] == [sent.id]
    assert offline_calls == 0


def test_open_chat_raises_when_unreachable_and_nothing_cached(backend, feed, clock):
    flaky = FlakyBackend(backend)
    flaky.fail_loads = True

    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", flaky, feed, clock)
        with pytest.raises(NetworkError):
            await alice.open_chat(chat.id)

    asyncio.run(scenario())


def test_schedule_and_cancel(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        alice = _manager("alice", backend, feed, clock)
        with pytest.raises(ValidationError):
            await alice.send(chat.id, "too late", scheduled_for=clock() - timedelta(minutes=1))

        scheduled = await alice.send(chat.id, "good morning", scheduled_for=clock() + timedelta(hours=8))
        pending = await alice.list_scheduled(chat.id)
        await alice.cancel_scheduled(scheduled.id)
        return scheduled, pending, await alice.list_scheduled()

    scheduled, pending, remaining = asyncio.run(scenario())

    assert isinstance(scheduled, ScheduledMessageView)
    assert scheduled.sent is False
    assert [item.id for item in pending] == [scheduled.id]
    assert remaining == []


def test_close_chat_releases_subscription(backend, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        bridge = RealtimeBridge(feed)
        alice = MessageLifecycleManager("alice", backend, bridge, clock=clock)
        await alice.open_chat(chat.id)
        await alice.open_chat(chat.id)
        opened = bridge.active_count, feed.listener_count(chat_channel(chat.id))
        alice.close_chat(chat.id)
        closed = bridge.active_count, feed.listener_count(chat_channel(chat.id))
        return opened, closed

    opened, closed = asyncio.run(scenario())

    assert opened == (1, 1)
    assert closed == (0, 0)

"""Expired-message sweep and scheduled-message publisher tests."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from sqlalchemy import func, select

from chatsync.database import Database
from chatsync.models import Message, MessageReceipt, ScheduledMessage
from chatsync.schemas.messages import MessageDraft
from chatsync.schemas.realtime import ChangeEvent, ChangeType
from chatsync.services.backend import SqlChatBackend
from chatsync.services.backend_jobs import (
    BackendJobError,
    publish_and_broadcast,
    run_publish,
    run_sweep,
    sweep_and_broadcast,
)
from chatsync.services.realtime import ChangeFeed, chat_channel


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


def _count(database: Database, model) -> int:
    with database.session() as session:
        return session.scalar(select(func.count()).select_from(model))


def test_sweep_deletes_only_expired_messages(backend, database, clock, caplog):
    async def seed():
        chat = await backend.create_chat("alice", ["bob"], auto_delete_seconds=30)
        await backend.insert_message("alice", MessageDraft(chat_id=chat.id, content="short lived"), "c-1")
        await backend.insert_message("alice", MessageDraft(chat_id=chat.id, content="longer"), "c-2", 600)
        return chat

    asyncio.run(seed())
    clock.advance(seconds=30)

    with caplog.at_level(logging.INFO, logger="chatsync.services.backend_jobs"):
        summary = run_sweep(database.create_session, now=clock())

    assert summary.total == 1
    assert _count(database, Message) == 1
    assert _count(database, MessageReceipt) == 1
    assert any("deleted=1" in record.getMessage() for record in caplog.records)


def test_sweep_with_nothing_due_is_a_no_op(backend, database, clock):
    async def seed():
        chat = await backend.create_chat("alice", ["bob"])
        await backend.insert_message("alice", MessageDraft(chat_id=chat.id, content="forever"), "c-1")

    asyncio.run(seed())
    clock.advance(days=365)

    assert run_sweep(database.create_session, now=clock()).total == 0
    assert _count(database, Message) == 1


def test_sweep_broadcasts_deletions(backend, database, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"], auto_delete_seconds=5)
        sent = await backend.insert_message("alice", MessageDraft(chat_id=chat.id, content="poof"), "c-1")
        events: list[ChangeEvent] = []

        async def record(event: ChangeEvent) -> None:
            events.append(event)

        feed.attach(chat_channel(chat.id), record)
        clock.advance(seconds=5)
        await sweep_and_broadcast(database.create_session, feed, clock=clock)
        return sent, events

    sent, events = asyncio.run(scenario())

    assert [(event.type, event.row_id) for event in events] == [(ChangeType.DELETE, sent.id)]


def test_sweep_failure_raises_job_error(tmp_path, clock):
    empty = Database(f"sqlite+pysqlite:///{tmp_path / 'empty.db'}")

    with pytest.raises(BackendJobError):
        run_sweep(empty.create_session, now=clock())
    empty.dispose()


def test_publish_materializes_due_messages(backend, database, feed, clock):
    async def scenario():
        chat = await backend.create_chat("alice", ["bob"])
        scheduled = await backend.schedule_message(
            "alice", MessageDraft(chat_id=chat.id, content="good morning"), clock() + timedelta(minutes=10)
        )
        early = await publish_and_broadcast(database.create_session, feed, clock=clock)

        events: list[ChangeEvent] = []

        async def record(event: ChangeEvent) -> None:
            events.append(event)

        feed.attach(chat_channel(chat.id), record)
        clock.advance(minutes=10)
        due = await publish_and_broadcast(database.create_session, feed, clock=clock)
        again = await publish_and_broadcast(database.create_session, feed, clock=clock)
        return chat, scheduled, early, due, again, events

    chat, scheduled, early, due, again, events = asyncio.run(scenario())

    assert early.total == 0
    assert due.total == 1
    assert again.total == 0
    assert [(event.type, event.record["content"]) for event in events] == [(ChangeType.INSERT, "good morning")]

    with database.session() as session:
        row = session.get(ScheduledMessage, scheduled.id)
        message = session.scalar(select(Message).where(Message.chat_id == chat.id))
    assert row.sent is True
    assert row.message_id == message.id
    assert message.client_id == f"scheduled:{scheduled.id}"
    assert message.sender_id == "alice"


def test_scheduled_auto_delete_applies_on_publish(backend, database, clock):
    async def seed():
        chat = await backend.create_chat("alice", ["bob"])
        await backend.schedule_message(
            "alice", MessageDraft(chat_id=chat.id, content="fleeting"), clock() + timedelta(minutes=1), 60
        )

    asyncio.run(seed())
    clock.advance(minutes=1)
    run_publish(database.create_session, now=clock())

    clock.advance(minutes=1)
    assert run_sweep(database.create_session, now=clock()).total == 1

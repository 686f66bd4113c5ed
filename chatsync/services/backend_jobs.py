"""Scheduled server jobs: the expired-message sweep and the scheduled-message publisher."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..models import Message, ScheduledMessage
from ..schemas.realtime import ChangeType
from . import message_service
from .errors import SyncError
from .realtime import ChangeFeed, chat_channel

logger = logging.getLogger(__name__)


class BackendJobError(RuntimeError):
    """Raised when a scheduled job cannot complete."""


@dataclass(frozen=True, slots=True)
class SweepSummary:
    """Messages hard-deleted because their ``expires_at`` passed."""

    deleted: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.deleted)


@dataclass(frozen=True, slots=True)
class PublishSummary:
    """Scheduled messages materialized into their chats, plus the ones that failed."""

    published: list[dict] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.published)


def sweep_expired_messages(session: Session, *, now: datetime | None = None) -> SweepSummary:
    """Delete every message whose ``expires_at`` is at or before ``now``.

    Raises
    ------
    BackendJobError
        If the delete fails; the transaction is rolled back first.
    """

    now = now or utcnow()
    stmt = select(Message).where(Message.expires_at.is_not(None), Message.expires_at <= now)
    try:
        expired = list(session.scalars(stmt))
        deleted = [(message.id, message.chat_id) for message in expired]
        for message in expired:
            session.delete(message)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Expired message sweep failed; transaction rolled back")
        raise BackendJobError("expired message sweep failed") from exc

    summary = SweepSummary(deleted=deleted)
    logger.info("Expired message sweep finished (deleted=%d)", summary.total)
    return summary


def publish_due_messages(session: Session, *, now: datetime | None = None) -> PublishSummary:
    """Send every unsent scheduled message whose time has come.

    Each scheduled message is published in its own transaction, so one bad row
    does not hold back the others.
    """

    now = now or utcnow()
    stmt = (
        select(ScheduledMessage)
        .where(ScheduledMessage.sent.is_(False), ScheduledMessage.scheduled_for <= now)
        .order_by(ScheduledMessage.scheduled_for.asc())
    )
    try:
        due = list(session.scalars(stmt))
    except SQLAlchemyError as exc:
        logger.exception("Could not load due scheduled messages")
        raise BackendJobError("scheduled message lookup failed") from exc

    published: list[dict] = []
    failed: list[str] = []
    for scheduled in due:
        try:
            message = message_service.publish_scheduled(session, scheduled, now=now)
        except SyncError:
            logger.exception("Failed to publish scheduled message %s", scheduled.id)
            failed.append(scheduled.id)
            continue
        published.append(message_service.message_record(message))

    summary = PublishSummary(published=published, failed=failed)
    logger.info("Scheduled message publish finished (published=%d, failed=%d)", summary.total, len(failed))
    return summary


def run_sweep(session_factory: Callable[[], Session], *, now: datetime | None = None) -> SweepSummary:
    session = session_factory()
    try:
        return sweep_expired_messages(session, now=now)
    finally:
        session.close()


def run_publish(session_factory: Callable[[], Session], *, now: datetime | None = None) -> PublishSummary:
    session = session_factory()
    try:
        return publish_due_messages(session, now=now)
    finally:
        session.close()


async def sweep_and_broadcast(
    session_factory: Callable[[], Session], feed: ChangeFeed | None = None, *, clock: Clock = utcnow
) -> SweepSummary:
    """Run the sweep off the event loop, then announce each deletion on its chat channel."""

    summary = await asyncio.to_thread(run_sweep, session_factory, now=clock())
    if feed is not None:
        for message_id, chat_id in summary.deleted:
            await feed.publish(
                chat_channel(chat_id), "messages", ChangeType.DELETE, old_record={"id": message_id, "chat_id": chat_id}
            )
    return summary


async def publish_and_broadcast(
    session_factory: Callable[[], Session], feed: ChangeFeed | None = None, *, clock: Clock = utcnow
) -> PublishSummary:
    summary = await asyncio.to_thread(run_publish, session_factory, now=clock())
    if feed is not None:
        for record in summary.published:
            await feed.publish(chat_channel(record["chat_id"]), "messages", ChangeType.INSERT, record)
    return summary


__all__ = [
    "BackendJobError",
    "SweepSummary",
    "PublishSummary",
    "sweep_expired_messages",
    "publish_due_messages",
    "run_sweep",
    "run_publish",
    "sweep_and_broadcast",
    "publish_and_broadcast",
]

"""Realtime change channels: the server-side hub and the client-side bridge."""
from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import WebSocket

from ..clock import Clock, utcnow
from ..schemas.realtime import ChangeEvent, ChangeType, EventFilter

logger = logging.getLogger(__name__)

FeedListener = Callable[[ChangeEvent], Awaitable[None]]
EventCallback = Callable[[ChangeEvent], Any]


def chat_channel(chat_id: str) -> str:
    return f"chat:{chat_id}"


def posts_channel() -> str:
    return "posts"


def notifications_channel(user_id: str) -> str:
    return f"notifications:{user_id}"


class ChangeFeed:
    """Named channels fanning committed row changes out to listeners and WebSockets.

    Publishing on a channel is serialized, so every listener sees that channel's
    events in publish order. Listeners must not publish to the channel they are
    attached to.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._listeners: dict[str, list[FeedListener]] = {}
        self._channel_locks: dict[str, asyncio.Lock] = {}
        self._sequences: dict[str, itertools.count] = {}
        self._in_flight: dict[str, int] = {}
        self._sockets: dict[str, set[WebSocket]] = {}
        self._connections: dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()

    def attach(self, channel: str, listener: FeedListener) -> Callable[[], None]:
        """Attach ``listener`` to ``channel`` and return a callable that detaches it."""

        self._listeners.setdefault(channel, []).append(listener)

        def _detach() -> None:
            listeners = self._listeners.get(channel)
            if not listeners or listener not in listeners:
                return
            listeners.remove(listener)
            if not listeners:
                self._listeners.pop(channel, None)
                self._prune(channel)

        return _detach

    @property
    def channels(self) -> set[str]:
        """Channels the feed currently keeps any state for."""

        return set(self._channel_locks) | set(self._listeners) | set(self._sockets)

    def _prune(self, channel: str) -> None:
        # Sequences restart once nobody is listening and nothing is being published.
        if self._in_flight.get(channel) or self._listeners.get(channel) or self._sockets.get(channel):
            return
        self._in_flight.pop(channel, None)
        self._channel_locks.pop(channel, None)
        self._sequences.pop(channel, None)

    def listener_count(self, channel: str | None = None) -> int:
        if channel is not None:
            return len(self._listeners.get(channel, ()))
        return sum(len(listeners) for listeners in self._listeners.values())

    async def publish(
        self,
        channel: str,
        table: str,
        change_type: ChangeType,
        record: dict[str, Any] | None = None,
        old_record: dict[str, Any] | None = None,
    ) -> ChangeEvent:
        lock = self._channel_locks.setdefault(channel, asyncio.Lock())
        self._in_flight[channel] = self._in_flight.get(channel, 0) + 1
        try:
            async with lock:
                sequence = next(self._sequences.setdefault(channel, itertools.count(1)))
                event = ChangeEvent(
                    channel=channel,
                    table=table,
                    type=change_type,
                    record=record or {},
                    old_record=old_record,
                    committed_at=self._clock(),
                    sequence=sequence,
                )
                await self.deliver(event)
        finally:
            self._in_flight[channel] -= 1
            self._prune(channel)
        return event

    async def deliver(self, event: ChangeEvent) -> None:
        """Hand an already-built event to the channel's listeners and sockets.

        Also used to replay an event, which is how at-least-once redelivery
        shows up to subscribers.
        """

        for listener in list(self._listeners.get(event.channel, ())):
            await listener(event)
        await self.broadcast(event.channel, event.model_dump(mode="json"))

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets.setdefault(channel, set()).add(websocket)
            self._connections[websocket] = channel

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            channel = self._connections.pop(websocket, None)
            if not channel:
                return
            group = self._sockets.get(channel)
            if group is None:
                return
            group.discard(websocket)
            if not group:
                self._sockets.pop(channel, None)
                self._prune(channel)

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, default=str)
        async with self._lock:
            targets = list(self._sockets.get(channel, ()))
        for connection in targets:
            try:
                await connection.send_text(serialized)
            except Exception:
                await self.disconnect(connection)


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`RealtimeBridge.subscribe`."""

    id: int
    channel: str
    event_filter: EventFilter
    callback: EventCallback
    active: bool = True
    _detach: Callable[[], None] | None = field(default=None, repr=False)


class RealtimeBridge:
    """Client-side view of the change feed with explicit subscription ownership."""

    def __init__(self, feed: ChangeFeed) -> None:
        self._feed = feed
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, channel: str, event_filter: EventFilter | None, on_event: EventCallback) -> Subscription:
        subscription = Subscription(
            id=next(self._ids),
            channel=channel,
            event_filter=event_filter or EventFilter(),
            callback=on_event,
        )

        async def _listener(event: ChangeEvent) -> None:
            await self._dispatch(subscription, event)

        subscription._detach = self._feed.attach(channel, _listener)
        self._subscriptions[subscription.id] = subscription
        logger.debug("Subscribed #%d to %s", subscription.id, channel)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Release ``subscription``. Releasing twice is a no-op."""

        if not subscription.active:
            return
        subscription.active = False
        if subscription._detach is not None:
            subscription._detach()
            subscription._detach = None
        self._subscriptions.pop(subscription.id, None)
        logger.debug("Unsubscribed #%d from %s", subscription.id, subscription.channel)

    async def _dispatch(self, subscription: Subscription, event: ChangeEvent) -> None:
        if not subscription.active or not subscription.event_filter.matches(event):
            return
        try:
            result = subscription.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Realtime callback for subscription #%d failed on %s %s", subscription.id, event.table, event.type
            )

    @asynccontextmanager
    async def subscription(
        self, channel: str, event_filter: EventFilter | None, on_event: EventCallback
    ) -> AsyncIterator[Subscription]:
        handle = self.subscribe(channel, event_filter, on_event)
        try:
            yield handle
        finally:
            self.unsubscribe(handle)

    def scope(self) -> "RealtimeScope":
        return RealtimeScope(self)

    def dispose(self) -> None:
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)


class RealtimeScope:
    """Owns a group of subscriptions and releases them all on close."""

    def __init__(self, bridge: RealtimeBridge) -> None:
        self._bridge = bridge
        self._handles: list[Subscription] = []

    def subscribe(self, channel: str, event_filter: EventFilter | None, on_event: EventCallback) -> Subscription:
        handle = self._bridge.subscribe(channel, event_filter, on_event)
        self._handles.append(handle)
        return handle

    @property
    def handles(self) -> list[Subscription]:
        return [handle for handle in self._handles if handle.active]

    def close(self) -> None:
        while self._handles:
            self._bridge.unsubscribe(self._handles.pop())

    def __enter__(self) -> "RealtimeScope":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> "RealtimeScope":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "ChangeFeed",
    "RealtimeBridge",
    "RealtimeScope",
    "Subscription",
    "chat_channel",
    "posts_channel",
    "notifications_channel",
]

"""Keeps cached feed posts fresh and surfaces the user's new notifications."""
from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, List

from ..schemas.cache import CacheCollectionName
from ..schemas.realtime import ChangeEvent, ChangeType, EventFilter
from .errors import ValidationError
from .local_store import SessionCache
from .object_cache import ObjectCache
from .realtime import RealtimeBridge, RealtimeScope, notifications_channel, posts_channel

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[dict[str, Any]], Any]


class FeedSync:
    def __init__(
        self,
        user_id: str,
        bridge: RealtimeBridge,
        object_cache: ObjectCache,
        *,
        session_cache: SessionCache | None = None,
        on_notification: NotificationHandler | None = None,
    ) -> None:
        self.user_id = user_id
        self._bridge = bridge
        self._objects = object_cache
        self._session_cache = session_cache
        self._on_notification = on_notification
        self._scope: RealtimeScope | None = None
        self._notifications: list[dict[str, Any]] = []

    @property
    def running(self) -> bool:
        return self._scope is not None

    @property
    def notifications(self) -> List[dict[str, Any]]:
        return list(self._notifications)

    def start(self) -> None:
        if self._scope is not None:
            return
        scope = self._bridge.scope()
        scope.subscribe(
            posts_channel(),
            EventFilter(table="posts", types=frozenset({ChangeType.INSERT, ChangeType.UPDATE})),
            self._on_post,
        )
        scope.subscribe(
            notifications_channel(self.user_id),
            EventFilter(table="notifications", types=frozenset({ChangeType.INSERT}), match={"user_id": self.user_id}),
            self._on_notification_event,
        )
        self._scope = scope

    def stop(self) -> None:
        if self._scope is not None:
            self._scope.close()
            self._scope = None

    def _on_post(self, event: ChangeEvent) -> None:
        post_id = event.row_id
        if post_id is None:
            return
        try:
            self._objects.set(CacheCollectionName.POSTS, str(post_id), event.record)
        except ValidationError:
            logger.warning("Skipping malformed post %s from realtime", post_id)
            return
        if self._session_cache is not None and event.type == ChangeType.INSERT:
            self._session_cache.invalidate_feed()

    async def _on_notification_event(self, event: ChangeEvent) -> None:
        notification_id = event.row_id
        if any(item.get("id") == notification_id for item in self._notifications):
            return
        self._notifications.append(dict(event.record))
        if self._on_notification is not None:
            result = self._on_notification(dict(event.record))
            if inspect.isawaitable(result):
                await result


__all__ = ["FeedSync"]

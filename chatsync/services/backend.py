"""Async gateway to the hosted chat tables.

``SqlChatBackend`` runs each unit of work in a worker thread and, once the
transaction has committed, publishes the matching change events on the
realtime hub.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Protocol, Sequence, TypeVar

from sqlalchemy.orm import Session

from ..clock import Clock, ensure_utc, utcnow
from ..database import Database
from ..models import Notification, Post
from ..schemas.messages import (
    ChatMessage,
    ChatSummary,
    DeliveryState,
    MessageDraft,
    ScheduledMessageView,
    message_from_record,
)
from ..schemas.realtime import ChangeType
from . import message_service
from .errors import NotFoundError
from .realtime import ChangeFeed, chat_channel, notifications_channel, posts_channel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatBackend(Protocol):
    """Query and mutation surface the lifecycle manager depends on."""

    async def list_chats(self, user_id: str) -> List[ChatSummary]: ...

    async def set_pinned(self, user_id: str, chat_id: str, pinned: bool) -> ChatSummary: ...

    async def set_auto_delete(self, user_id: str, chat_id: str, seconds: int | None) -> ChatSummary: ...

    async def list_messages(self, user_id: str, chat_id: str, limit: int | None = None) -> List[ChatMessage]: ...

    async def insert_message(
        self, user_id: str, draft: MessageDraft, client_id: str, auto_delete_seconds: int | None = None
    ) -> ChatMessage: ...

    async def edit_message(self, user_id: str, message_id: str, content: str) -> ChatMessage: ...

    async def hide_message(self, user_id: str, message_id: str) -> ChatMessage: ...

    async def delete_message(self, user_id: str, message_id: str) -> None: ...

    async def set_star(self, user_id: str, message_id: str, starred: bool) -> ChatMessage: ...

    async def list_starred(self, user_id: str) -> List[ChatMessage]: ...

    async def unread_counts(self, user_id: str, chat_id: str | None = None) -> Dict[str, int]: ...

    async def record_receipt(self, user_id: str, message_id: str, state: DeliveryState) -> None: ...

    async def forward_messages(
        self, user_id: str, message_ids: Sequence[str], target_chat_id: str
    ) -> List[ChatMessage]: ...

    async def schedule_message(
        self, user_id: str, draft: MessageDraft, scheduled_for: datetime, auto_delete_seconds: int | None = None
    ) -> ScheduledMessageView: ...

    async def list_scheduled(self, user_id: str, chat_id: str | None = None) -> List[ScheduledMessageView]: ...

    async def cancel_scheduled(self, user_id: str, scheduled_id: str) -> None: ...


class SqlChatBackend:
    def __init__(self, database: Database, feed: ChangeFeed | None = None, *, clock: Clock = utcnow) -> None:
        self._database = database
        self._feed = feed
        self._clock = clock

    @property
    def database(self) -> Database:
        return self._database

    async def _in_session(self, work: Callable[[Session, datetime], T]) -> T:
        now = self._clock()

        def _run() -> T:
            with self._database.session() as session:
                return work(session, now)

        return await asyncio.to_thread(_run)

    async def _publish(
        self,
        channel: str,
        table: str,
        change_type: ChangeType,
        record: dict[str, Any] | None = None,
        old_record: dict[str, Any] | None = None,
    ) -> None:
        if self._feed is None:
            return
        await self._feed.publish(channel, table, change_type, record, old_record)

    # Chats -----------------------------------------------------------------

    async def create_chat(
        self,
        creator_id: str,
        participant_ids: Sequence[str],
        *,
        name: str | None = None,
        is_group: bool = False,
        auto_delete_seconds: int | None = None,
    ) -> ChatSummary:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            chat = message_service.create_chat(
                session,
                creator_id=creator_id,
                participant_ids=participant_ids,
                now=now,
                name=name,
                is_group=is_group,
                auto_delete_seconds=auto_delete_seconds,
            )
            return message_service.chat_record(chat)

        record = await self._in_session(work)
        return ChatSummary.model_validate(record)

    async def list_chats(self, user_id: str) -> List[ChatSummary]:
        def work(session: Session, now: datetime) -> list[dict[str, Any]]:
            return [message_service.chat_record(chat) for chat in message_service.list_chats(session, user_id=user_id)]

        return [ChatSummary.model_validate(record) for record in await self._in_session(work)]

    async def set_pinned(self, user_id: str, chat_id: str, pinned: bool) -> ChatSummary:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            chat = message_service.set_pinned(session, chat_id=chat_id, user_id=user_id, pinned=pinned)
            return message_service.chat_record(chat)

        return ChatSummary.model_validate(await self._in_session(work))

    async def set_auto_delete(self, user_id: str, chat_id: str, seconds: int | None) -> ChatSummary:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            chat = message_service.set_auto_delete(session, chat_id=chat_id, user_id=user_id, seconds=seconds)
            return message_service.chat_record(chat)

        record = await self._in_session(work)
        await self._publish(chat_channel(chat_id), "chats", ChangeType.UPDATE, record)
        return ChatSummary.model_validate(record)

    # Messages --------------------------------------------------------------

    async def list_messages(self, user_id: str, chat_id: str, limit: int | None = None) -> List[ChatMessage]:
        def work(session: Session, now: datetime) -> list[dict[str, Any]]:
            messages = message_service.list_messages(session, chat_id=chat_id, user_id=user_id, now=now, limit=limit)
            return [message_service.message_record(message) for message in messages]

        return [message_from_record(record) for record in await self._in_session(work)]

    async def insert_message(
        self, user_id: str, draft: MessageDraft, client_id: str, auto_delete_seconds: int | None = None
    ) -> ChatMessage:
        def work(session: Session, now: datetime) -> tuple[dict[str, Any], bool]:
            message, created = message_service.insert_message(
                session,
                sender_id=user_id,
                chat_id=draft.chat_id,
                content=draft.content,
                attachments=draft.attachments,
                client_id=client_id,
                reply_to_id=draft.reply_to_id,
                auto_delete_seconds=auto_delete_seconds,
                now=now,
            )
            return message_service.message_record(message), created

        record, created = await self._in_session(work)
        if created:
            await self._publish(chat_channel(record["chat_id"]), "messages", ChangeType.INSERT, record)
        return message_from_record(record)

    async def get_message(self, user_id: str, message_id: str) -> ChatMessage | None:
        def work(session: Session, now: datetime) -> dict[str, Any] | None:
            message = message_service.get_message(session, message_id)
            if message is None:
                return None
            message_service.require_participant(session, chat_id=message.chat_id, user_id=user_id)
            return message_service.message_record(message)

        record = await self._in_session(work)
        return message_from_record(record) if record is not None else None

    async def edit_message(self, user_id: str, message_id: str, content: str) -> ChatMessage:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            message = message_service.edit_message(
                session, message_id=message_id, user_id=user_id, content=content, now=now
            )
            return message_service.message_record(message)

        record = await self._in_session(work)
        await self._publish(chat_channel(record["chat_id"]), "messages", ChangeType.UPDATE, record)
        return message_from_record(record)

    async def hide_message(self, user_id: str, message_id: str) -> ChatMessage:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            message = message_service.hide_message(session, message_id=message_id, user_id=user_id)
            return message_service.message_record(message)

        record = await self._in_session(work)
        await self._publish(
            chat_channel(record["chat_id"]),
            "message_deletions",
            ChangeType.INSERT,
            {"message_id": message_id, "user_id": user_id, "chat_id": record["chat_id"]},
        )
        return message_from_record(record)

    async def delete_message(self, user_id: str, message_id: str) -> None:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            return message_service.delete_message(session, message_id=message_id, user_id=user_id)

        old_record = await self._in_session(work)
        await self._publish(
            chat_channel(old_record["chat_id"]),
            "messages",
            ChangeType.DELETE,
            old_record={"id": old_record["id"], "chat_id": old_record["chat_id"]},
        )

    async def set_star(self, user_id: str, message_id: str, starred: bool) -> ChatMessage:
        def work(session: Session, now: datetime) -> tuple[dict[str, Any], bool]:
            message, changed = message_service.set_star(
                session, message_id=message_id, user_id=user_id, starred=starred
            )
            return message_service.message_record(message), changed

        record, changed = await self._in_session(work)
        if changed:
            star = {"message_id": message_id, "user_id": user_id, "chat_id": record["chat_id"]}
            if starred:
                await self._publish(chat_channel(record["chat_id"]), "starred_messages", ChangeType.INSERT, star)
            else:
                await self._publish(
                    chat_channel(record["chat_id"]), "starred_messages", ChangeType.DELETE, old_record=star
                )
        return message_from_record(record)

    async def list_starred(self, user_id: str) -> List[ChatMessage]:
        def work(session: Session, now: datetime) -> list[dict[str, Any]]:
            messages = message_service.list_starred(session, user_id=user_id, now=now)
            return [message_service.message_record(message) for message in messages]

        return [message_from_record(record) for record in await self._in_session(work)]

    async def unread_counts(self, user_id: str, chat_id: str | None = None) -> Dict[str, int]:
        def work(session: Session, now: datetime) -> dict[str, int]:
            return message_service.count_unread_by_chat(session, user_id=user_id, now=now, chat_id=chat_id)

        return await self._in_session(work)

    async def record_receipt(self, user_id: str, message_id: str, state: DeliveryState) -> None:
        def work(session: Session, now: datetime) -> dict[str, Any] | None:
            receipt = message_service.record_receipt(
                session, message_id=message_id, user_id=user_id, state=state, now=now
            )
            if receipt is None:
                return None
            return {
                "message_id": message_id,
                "user_id": user_id,
                "chat_id": receipt.message.chat_id,
                "state": receipt.state,
                "updated_at": ensure_utc(receipt.updated_at),
            }

        record = await self._in_session(work)
        if record is not None:
            await self._publish(chat_channel(record["chat_id"]), "message_receipts", ChangeType.UPDATE, record)

    async def forward_messages(
        self, user_id: str, message_ids: Sequence[str], target_chat_id: str
    ) -> List[ChatMessage]:
        def work(session: Session, now: datetime) -> list[dict[str, Any]]:
            created = message_service.forward_messages(
                session, user_id=user_id, message_ids=message_ids, target_chat_id=target_chat_id, now=now
            )
            return [message_service.message_record(message) for message in created]

        records = await self._in_session(work)
        for record in records:
            await self._publish(chat_channel(target_chat_id), "messages", ChangeType.INSERT, record)
        return [message_from_record(record) for record in records]

    # Scheduled messages ----------------------------------------------------

    async def schedule_message(
        self, user_id: str, draft: MessageDraft, scheduled_for: datetime, auto_delete_seconds: int | None = None
    ) -> ScheduledMessageView:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            scheduled = message_service.schedule_message(
                session,
                sender_id=user_id,
                chat_id=draft.chat_id,
                content=draft.content,
                attachments=draft.attachments,
                scheduled_for=scheduled_for,
                auto_delete_seconds=auto_delete_seconds,
                now=now,
            )
            return message_service.scheduled_record(scheduled)

        return ScheduledMessageView.model_validate(await self._in_session(work))

    async def list_scheduled(self, user_id: str, chat_id: str | None = None) -> List[ScheduledMessageView]:
        def work(session: Session, now: datetime) -> list[dict[str, Any]]:
            rows = message_service.list_scheduled(session, user_id=user_id, chat_id=chat_id)
            return [message_service.scheduled_record(row) for row in rows]

        return [ScheduledMessageView.model_validate(record) for record in await self._in_session(work)]

    async def cancel_scheduled(self, user_id: str, scheduled_id: str) -> None:
        def work(session: Session, now: datetime) -> None:
            message_service.cancel_scheduled(session, scheduled_id=scheduled_id, user_id=user_id)

        await self._in_session(work)

    # Feed and notifications ------------------------------------------------

    async def create_post(self, author_id: str, content: str, media_url: str | None = None) -> dict[str, Any]:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            post = Post(author_id=author_id, content=content, media_url=media_url, created_at=now, updated_at=now)
            session.add(post)
            message_service.commit_or_raise(session, "create post")
            return _post_record(post)

        record = await self._in_session(work)
        await self._publish(posts_channel(), "posts", ChangeType.INSERT, record)
        return record

    async def update_post(self, post_id: str, content: str) -> dict[str, Any]:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            post = session.get(Post, post_id)
            if post is None:
                raise NotFoundError("Post not found")
            post.content = content
            post.updated_at = now
            message_service.commit_or_raise(session, "update post")
            return _post_record(post)

        record = await self._in_session(work)
        await self._publish(posts_channel(), "posts", ChangeType.UPDATE, record)
        return record

    async def notify(
        self, user_id: str, type_: str, content: str, *, title: str = "", sender_id: str | None = None
    ) -> dict[str, Any]:
        def work(session: Session, now: datetime) -> dict[str, Any]:
            notification = Notification(
                user_id=user_id, sender_id=sender_id, type=type_, title=title, content=content, created_at=now
            )
            session.add(notification)
            message_service.commit_or_raise(session, "create notification")
            return {
                "id": notification.id,
                "user_id": notification.user_id,
                "sender_id": notification.sender_id,
                "type": notification.type,
                "title": notification.title,
                "content": notification.content,
                "read": False,
                "created_at": ensure_utc(notification.created_at),
            }

        record = await self._in_session(work)
        await self._publish(notifications_channel(user_id), "notifications", ChangeType.INSERT, record)
        return record


def _post_record(post: Post) -> dict[str, Any]:
    return {
        "id": post.id,
        "author_id": post.author_id,
        "content": post.content or "",
        "media_url": post.media_url,
        "created_at": ensure_utc(post.created_at),
        "updated_at": ensure_utc(post.updated_at),
    }


__all__ = ["ChatBackend", "SqlChatBackend"]

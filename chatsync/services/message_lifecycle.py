"""Client-side owner of chat timelines and every message mutation.

Sends are optimistic: the message shows up immediately as ``sending`` and is
either replaced by the server row (matched on ``client_id``) or marked
``failed`` with a classified error. Nothing is retried automatically. Every
other operation waits for the backend and leaves local state untouched when it
fails, raising the classified taxonomy error instead.

Realtime events for open chats are merged idempotently, so replays of the same
insert, update, delete or receipt leave the timeline unchanged.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Sequence

from pydantic import ValidationError as SchemaValidationError

from ..clock import Clock, utcnow
from ..schemas.errors import ErrorKind
from ..schemas.messages import (
    MAX_MESSAGE_LENGTH,
    ChatMessage,
    ChatSummary,
    DeleteScope,
    DeliveryState,
    ForwardOutcome,
    ForwardReport,
    MessageDraft,
    ScheduledMessageView,
    advance_delivery_state,
    least_advanced,
    message_from_record,
)
from ..schemas.realtime import ChangeEvent, ChangeType, EventFilter
from .backend import ChatBackend
from .error_classifier import classify, to_exception
from .errors import NetworkError, PermissionDeniedError, SyncError, ValidationError
from .local_store import SessionCache
from .network_monitor import NetworkMonitor
from .rate_limiter import SEND_MESSAGE, RateLimiter
from .realtime import RealtimeBridge, RealtimeScope, chat_channel

logger = logging.getLogger(__name__)

_UNSENT = (DeliveryState.SENDING, DeliveryState.FAILED)


@dataclass(frozen=True, slots=True)
class _PendingSend:
    draft: MessageDraft
    auto_delete: int | None


def _new_client_id() -> str:
    return f"local-{uuid.uuid4()}"


def _draft_error(exc: SchemaValidationError) -> ValidationError:
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Invalid message"
    return ValidationError(message, user_message=message)


class MessageLifecycleManager:
    def __init__(
        self,
        user_id: str,
        backend: ChatBackend,
        bridge: RealtimeBridge,
        *,
        session_cache: SessionCache | None = None,
        network: NetworkMonitor | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Clock = utcnow,
        client_id_factory: Callable[[], str] = _new_client_id,
    ) -> None:
        self.user_id = user_id
        self._backend = backend
        self._bridge = bridge
        self._cache = session_cache
        self._network = network
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._client_id_factory = client_id_factory
        self._timelines: dict[str, dict[str, ChatMessage]] = {}
        self._pending: dict[str, _PendingSend] = {}
        # client_ids deleted for the sender while their insert was still in flight
        self._withdrawn: set[str] = set()
        self._generations: dict[str, int] = {}
        self._scopes: dict[str, RealtimeScope] = {}
        self._chats: dict[str, ChatSummary] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def _online(self) -> bool:
        return self._network.is_online if self._network is not None else True

    def _timeline(self, chat_id: str) -> dict[str, ChatMessage]:
        return self._timelines.setdefault(chat_id, {})

    def _find(self, message_id: str) -> ChatMessage | None:
        for timeline in self._timelines.values():
            message = timeline.get(message_id)
            if message is not None:
                return message
        return None

    async def _check_send_rate(self) -> None:
        if self._rate_limiter is not None:
            await asyncio.to_thread(self._rate_limiter.enforce, "send_message", self.user_id, SEND_MESSAGE)

    def _failure(self, action: str, exc: Exception) -> SyncError:
        classified = classify(exc, online=self._online)
        logger.warning("Failed to %s (%s): %s", action, classified.code, exc)
        return to_exception(classified)

    def _with_own_state(self, message: ChatMessage, previous: DeliveryState) -> ChatMessage:
        if message.sender_id != self.user_id:
            return message
        state = advance_delivery_state(previous, least_advanced(list(message.receipts.values())))
        return message.model_copy(update={"delivery_state": state})

    def _merge(self, incoming: ChatMessage, *, authoritative: bool = False) -> ChatMessage:
        """Fold a server copy of a message into the local timeline.

        Stars only change through star events unless ``incoming`` is
        ``authoritative`` (a fresh snapshot or the result of a star call), so a
        replayed insert cannot drop a later star.
        """

        timeline = self._timeline(incoming.chat_id)
        if incoming.client_id in self._withdrawn and incoming.sender_id == self.user_id:
            incoming = incoming.model_copy(update={"deleted_for": incoming.deleted_for | {self.user_id}})
        previous_state = DeliveryState.SENDING
        if incoming.client_id and incoming.sender_id == self.user_id and incoming.client_id != incoming.id:
            optimistic = timeline.pop(incoming.client_id, None)
            self._pending.pop(incoming.client_id, None)
            if optimistic is not None and optimistic.delivery_state != DeliveryState.FAILED:
                previous_state = optimistic.delivery_state

        existing = timeline.get(incoming.id)
        merged = incoming
        if existing is not None:
            previous_state = existing.delivery_state
            receipts = dict(existing.receipts)
            for user_id, state in incoming.receipts.items():
                receipts[user_id] = advance_delivery_state(receipts.get(user_id, DeliveryState.SENT), state)
            update: dict[str, Any] = {
                "receipts": receipts,
                "deleted_for": existing.deleted_for | incoming.deleted_for,
            }
            if not authoritative:
                update["starred_by"] = existing.starred_by
            if existing.edited_at is not None and (incoming.edited_at is None or incoming.edited_at < existing.edited_at):
                update["content"] = existing.content
                update["edited_at"] = existing.edited_at
            merged = incoming.model_copy(update=update)

        merged = self._with_own_state(merged, previous_state)
        timeline[merged.id] = merged
        return merged

    def _persist_timeline(self, chat_id: str) -> None:
        if self._cache is None:
            return
        confirmed = [
            message.model_dump(mode="json", exclude={"last_error"})
            for message in self._timeline(chat_id).values()
            if message.delivery_state not in _UNSENT
        ]
        self._cache.cache_messages(chat_id, confirmed)

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def messages(self, chat_id: str) -> List[ChatMessage]:
        """Current view of the chat: no expired messages, none hidden for the viewer."""

        now = self._clock()
        visible = [
            message for message in self._timeline(chat_id).values() if message.visible_to(self.user_id, now)
        ]
        visible.sort(key=lambda message: (message.created_at, message.id))
        return visible

    async def open_chat(self, chat_id: str) -> List[ChatMessage]:
        """Subscribe to the chat and load its timeline.

        The timeline is seeded from the short-lived message cache, then replaced
        by the backend snapshot. Only the most recent load for a chat is applied.
        Offline or on a network failure the cached view is returned, and the
        error is raised only when nothing is cached.
        """

        generation = self._generations.get(chat_id, 0) + 1
        self._generations[chat_id] = generation
        started_at = self._clock()

        if chat_id not in self._scopes:
            scope = self._bridge.scope()
            scope.subscribe(chat_channel(chat_id), EventFilter(), partial(self._on_chat_event, chat_id))
            self._scopes[chat_id] = scope

        timeline = self._timeline(chat_id)
        if not timeline and self._cache is not None:
            for record in self._cache.get_messages(chat_id) or []:
                try:
                    self._merge(message_from_record(record))
                except SchemaValidationError:
                    logger.warning("Ignoring malformed cached message in chat %s", chat_id)

        try:
            if not self._online:
                raise NetworkError("Client is offline")
            loaded = await self._backend.list_messages(self.user_id, chat_id)
        except Exception as exc:
            failure = self._failure("load messages", exc)
            if failure.kind == ErrorKind.NETWORK and timeline:
                logger.info("Serving cached timeline for chat %s while the backend is unreachable", chat_id)
                return self.messages(chat_id)
            raise failure from exc

        if self._generations.get(chat_id) != generation:
            logger.debug("Discarding superseded timeline load for chat %s", chat_id)
            return self.messages(chat_id)

        loaded_ids = {message.id for message in loaded}
        for message_id, message in list(timeline.items()):
            stale = message.delivery_state not in _UNSENT and message_id not in loaded_ids
            if stale and message.created_at <= started_at:
                timeline.pop(message_id, None)
        for message in loaded:
            self._merge(message, authoritative=True)

        self._persist_timeline(chat_id)
        return self.messages(chat_id)

    def close_chat(self, chat_id: str) -> None:
        scope = self._scopes.pop(chat_id, None)
        if scope is not None:
            scope.close()
        # Invalidate any load still in flight.
        self._generations[chat_id] = self._generations.get(chat_id, 0) + 1
        self._timelines.pop(chat_id, None)

    def dispose(self) -> None:
        for chat_id in list(self._scopes):
            self.close_chat(chat_id)
        self._timelines.clear()
        self._pending.clear()
        self._withdrawn.clear()

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    def _on_chat_event(self, chat_id: str, event: ChangeEvent) -> None:
        timeline = self._timeline(chat_id)
        if event.table == "messages":
            if event.type == ChangeType.DELETE:
                timeline.pop(str(event.row_id), None)
            else:
                self._merge(message_from_record(event.record))
        elif event.table == "message_deletions":
            if event.record.get("user_id") == self.user_id:
                self._update_local(
                    event.record.get("message_id"),
                    lambda message: {"deleted_for": message.deleted_for | {self.user_id}},
                )
        elif event.table == "starred_messages":
            source = event.record or event.old_record or {}
            user_id = source.get("user_id")
            if event.type == ChangeType.DELETE:
                self._update_local(source.get("message_id"), lambda message: {"starred_by": message.starred_by - {user_id}})
            else:
                self._update_local(source.get("message_id"), lambda message: {"starred_by": message.starred_by | {user_id}})
        elif event.table == "message_receipts":
            self._apply_receipt(
                event.record.get("message_id"), event.record.get("user_id"), DeliveryState(event.record["state"])
            )
        elif event.table == "chats":
            self._chats[chat_id] = ChatSummary.model_validate(event.record)

    def _update_local(self, message_id: str | None, change: Callable[[ChatMessage], dict[str, Any]]) -> None:
        message = self._find(message_id) if message_id else None
        if message is None:
            return
        self._timeline(message.chat_id)[message.id] = message.model_copy(update=change(message))

    def _apply_receipt(self, message_id: str | None, user_id: str | None, state: DeliveryState) -> None:
        message = self._find(message_id) if message_id else None
        if message is None or not user_id:
            return
        receipts = dict(message.receipts)
        receipts[user_id] = advance_delivery_state(receipts.get(user_id, DeliveryState.SENT), state)
        updated = self._with_own_state(message.model_copy(update={"receipts": receipts}), message.delivery_state)
        self._timeline(message.chat_id)[message.id] = updated

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        chat_id: str,
        content: str = "",
        attachments: Sequence[str] | None = None,
        *,
        scheduled_for: datetime | None = None,
        auto_delete: int | None = None,
        reply_to_id: str | None = None,
    ) -> ChatMessage | ScheduledMessageView:
        try:
            draft = MessageDraft(
                chat_id=chat_id, content=content, attachments=list(attachments or []), reply_to_id=reply_to_id
            )
        except SchemaValidationError as exc:
            raise _draft_error(exc) from exc
        if auto_delete is not None and auto_delete <= 0:
            raise ValidationError("auto_delete must be a positive number of seconds")

        if scheduled_for is not None:
            if scheduled_for <= self._clock():
                raise ValidationError("Scheduled time must be in the future")
            await self._check_send_rate()
            try:
                return await self._backend.schedule_message(self.user_id, draft, scheduled_for, auto_delete)
            except Exception as exc:
                raise self._failure("schedule message", exc) from exc

        return await self._send_now(draft, auto_delete)

    async def _send_now(self, draft: MessageDraft, auto_delete: int | None) -> ChatMessage:
        await self._check_send_rate()
        client_id = self._client_id_factory()
        optimistic = ChatMessage(
            id=client_id,
            client_id=client_id,
            chat_id=draft.chat_id,
            sender_id=self.user_id,
            content=draft.content,
            attachments=draft.attachments,
            reply_to_id=draft.reply_to_id,
            created_at=self._clock(),
            delivery_state=DeliveryState.SENDING,
        )
        timeline = self._timeline(draft.chat_id)
        timeline[client_id] = optimistic
        self._pending[client_id] = _PendingSend(draft=draft, auto_delete=auto_delete)

        try:
            if not self._online:
                raise NetworkError("Client is offline")
            confirmed = await self._backend.insert_message(self.user_id, draft, client_id, auto_delete)
        except Exception as exc:
            classified = classify(exc, online=self._online)
            logger.warning("Send failed in chat %s (%s): %s", draft.chat_id, classified.code, exc)
            self._withdrawn.discard(client_id)
            current = timeline.get(client_id)
            if current is None:
                # Already replaced by the server copy through realtime.
                return self._find_by_client_id(draft.chat_id, client_id) or optimistic
            failed = current.model_copy(
                update={
                    "delivery_state": advance_delivery_state(current.delivery_state, DeliveryState.FAILED),
                    "last_error": classified,
                }
            )
            timeline[client_id] = failed
            return failed

        merged = self._merge(confirmed)
        if client_id in self._withdrawn:
            merged = await self._hide_withdrawn(client_id, merged)
        self._persist_timeline(draft.chat_id)
        return merged

    async def _hide_withdrawn(self, client_id: str, message: ChatMessage) -> ChatMessage:
        """Carry a delete-for-me made during the send over to the confirmed server row."""

        try:
            hidden = await self._backend.hide_message(self.user_id, message.id)
        except Exception as exc:
            raise self._failure("hide message", exc) from exc
        finally:
            self._withdrawn.discard(client_id)
        return self._merge(hidden)

    def _find_by_client_id(self, chat_id: str, client_id: str) -> ChatMessage | None:
        return next(
            (message for message in self._timeline(chat_id).values() if message.client_id == client_id), None
        )

    def _failed_send(self, client_id: str) -> tuple[ChatMessage, _PendingSend]:
        pending = self._pending.get(client_id)
        message = self._timeline(pending.draft.chat_id).get(client_id) if pending is not None else None
        if pending is None or message is None or message.delivery_state != DeliveryState.FAILED:
            raise ValidationError("Only failed messages can be retried or discarded")
        return message, pending

    async def retry(self, client_id: str) -> ChatMessage:
        """Send a failed message again as a brand new optimistic message."""

        _, pending = self._failed_send(client_id)
        resent = await self._send_now(pending.draft, pending.auto_delete)
        self.discard(client_id)
        return resent

    def discard(self, client_id: str) -> None:
        _, pending = self._failed_send(client_id)
        self._timeline(pending.draft.chat_id).pop(client_id, None)
        self._pending.pop(client_id, None)

    # ------------------------------------------------------------------
    # Mutations on existing messages
    # ------------------------------------------------------------------

    def _require_own(self, message_id: str, action: str) -> ChatMessage | None:
        local = self._find(message_id)
        if local is not None and local.sender_id != self.user_id:
            raise PermissionDeniedError(f"Forbidden: cannot {action} another user's message", user_message="Forbidden")
        if local is not None and local.delivery_state in _UNSENT:
            raise ValidationError("Message has not been sent yet")
        return local

    async def edit(self, message_id: str, new_content: str) -> ChatMessage:
        self._require_own(message_id, "edit")
        if not (new_content or "").strip():
            raise ValidationError("Message content cannot be empty")
        if len(new_content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")

        try:
            updated = await self._backend.edit_message(self.user_id, message_id, new_content)
        except Exception as exc:
            raise self._failure("edit message", exc) from exc
        return self._merge(updated)

    async def delete(self, message_id: str, scope: DeleteScope = DeleteScope.FOR_ME) -> None:
        scope = DeleteScope(scope)
        if scope == DeleteScope.FOR_EVERYONE:
            self._require_own(message_id, "delete")
            try:
                await self._backend.delete_message(self.user_id, message_id)
            except Exception as exc:
                raise self._failure("delete message", exc) from exc
            local = self._find(message_id)
            if local is not None:
                self._timeline(local.chat_id).pop(message_id, None)
                self._persist_timeline(local.chat_id)
            return

        local = self._find(message_id)
        if local is not None and local.delivery_state in _UNSENT:
            if local.delivery_state == DeliveryState.SENDING and local.client_id:
                self._withdrawn.add(local.client_id)
            self._timeline(local.chat_id).pop(message_id, None)
            self._pending.pop(message_id, None)
            return

        try:
            hidden = await self._backend.hide_message(self.user_id, message_id)
        except Exception as exc:
            raise self._failure("hide message", exc) from exc
        self._merge(hidden)
        self._persist_timeline(hidden.chat_id)

    async def _set_star(self, message_id: str, starred: bool) -> ChatMessage:
        try:
            updated = await self._backend.set_star(self.user_id, message_id, starred)
        except Exception as exc:
            raise self._failure("star message" if starred else "unstar message", exc) from exc
        return self._merge(updated, authoritative=True)

    async def star(self, message_id: str) -> ChatMessage:
        return await self._set_star(message_id, True)

    async def unstar(self, message_id: str) -> ChatMessage:
        return await self._set_star(message_id, False)

    async def starred(self) -> List[ChatMessage]:
        try:
            return await self._backend.list_starred(self.user_id)
        except Exception as exc:
            raise self._failure("load starred messages", exc) from exc

    async def unread_counts(self) -> Dict[str, int]:
        """Messages from others not yet read by this user, keyed by chat."""

        try:
            return await self._backend.unread_counts(self.user_id)
        except Exception as exc:
            raise self._failure("load unread counts", exc) from exc

    async def unread_count(self, chat_id: str | None = None) -> int:
        try:
            counts = await self._backend.unread_counts(self.user_id, chat_id)
        except Exception as exc:
            raise self._failure("load unread count", exc) from exc
        return sum(counts.values())

    async def forward(self, message_ids: Sequence[str], target_chat_ids: Iterable[str]) -> ForwardReport:
        """Forward to each target chat independently; one failure does not stop the rest."""

        ids = [message_id for message_id in dict.fromkeys(message_ids) if message_id]
        targets = [chat_id for chat_id in dict.fromkeys(target_chat_ids) if chat_id]
        if not ids:
            raise ValidationError("Select at least one message to forward")
        if not targets:
            raise ValidationError("Select at least one chat to forward to")

        report = ForwardReport()
        for chat_id in targets:
            try:
                created = await self._backend.forward_messages(self.user_id, ids, chat_id)
            except Exception as exc:
                classified = classify(exc, online=self._online)
                logger.warning("Forward to chat %s failed (%s): %s", chat_id, classified.code, exc)
                report.outcomes[chat_id] = ForwardOutcome(chat_id=chat_id, ok=False, error=classified)
                continue
            if chat_id in self._scopes:
                for message in created:
                    self._merge(message)
            report.outcomes[chat_id] = ForwardOutcome(
                chat_id=chat_id, ok=True, message_ids=[message.id for message in created]
            )
        return report

    async def _advance_receipt(self, message_id: str, state: DeliveryState) -> None:
        local = self._find(message_id)
        if local is not None:
            if local.sender_id == self.user_id:
                return
            current = local.receipts.get(self.user_id, DeliveryState.SENT)
            if advance_delivery_state(current, state) == current:
                return
        try:
            await self._backend.record_receipt(self.user_id, message_id, state)
        except Exception as exc:
            raise self._failure(f"mark message {state.value}", exc) from exc
        self._apply_receipt(message_id, self.user_id, state)

    async def mark_delivered(self, message_id: str) -> None:
        await self._advance_receipt(message_id, DeliveryState.DELIVERED)

    async def mark_read(self, message_id: str) -> None:
        await self._advance_receipt(message_id, DeliveryState.READ)

    # ------------------------------------------------------------------
    # Chats and scheduled messages
    # ------------------------------------------------------------------

    async def list_chats(self) -> List[ChatSummary]:
        """Return chats with pinned ones first, refreshing the chat-list cache."""

        try:
            chats = await self._backend.list_chats(self.user_id)
        except Exception as exc:
            raise self._failure("load chats", exc) from exc
        self._chats = {chat.id: chat for chat in chats}
        if self._cache is not None:
            self._cache.cache_chat_list([chat.model_dump(mode="json") for chat in chats])
        return chats

    def cached_chats(self) -> List[ChatSummary] | None:
        if self._cache is None:
            return None
        records = self._cache.get_chat_list()
        if records is None:
            return None
        return [ChatSummary.model_validate(record) for record in records]

    async def _set_pinned(self, chat_id: str, pinned: bool) -> ChatSummary:
        try:
            chat = await self._backend.set_pinned(self.user_id, chat_id, pinned)
        except Exception as exc:
            raise self._failure("pin chat" if pinned else "unpin chat", exc) from exc
        self._chats[chat.id] = chat
        if self._cache is not None:
            self._cache.invalidate_chat_list()
        return chat

    async def pin_chat(self, chat_id: str) -> ChatSummary:
        return await self._set_pinned(chat_id, True)

    async def unpin_chat(self, chat_id: str) -> ChatSummary:
        return await self._set_pinned(chat_id, False)

    async def set_auto_delete(self, chat_id: str, seconds: int | None) -> ChatSummary:
        if seconds is not None and seconds <= 0:
            raise ValidationError("auto_delete must be a positive number of seconds")
        try:
            chat = await self._backend.set_auto_delete(self.user_id, chat_id, seconds)
        except Exception as exc:
            raise self._failure("update auto-delete timer", exc) from exc
        self._chats[chat.id] = chat
        return chat

    async def list_scheduled(self, chat_id: str | None = None) -> List[ScheduledMessageView]:
        try:
            return await self._backend.list_scheduled(self.user_id, chat_id)
        except Exception as exc:
            raise self._failure("load scheduled messages", exc) from exc

    async def cancel_scheduled(self, scheduled_id: str) -> None:
        try:
            await self._backend.cancel_scheduled(self.user_id, scheduled_id)
        except Exception as exc:
            raise self._failure("cancel scheduled message", exc) from exc


__all__ = ["MessageLifecycleManager"]

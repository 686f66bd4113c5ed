"""Chat and message persistence for the hosted backend tables.

Functions take an open :class:`Session`, commit their own unit of work and
raise taxonomy errors carrying Postgres-style codes. They return ORM rows; the
``*_record`` helpers turn rows into the plain dicts carried by change events.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..clock import ensure_utc
from ..models import (
    Chat,
    ChatParticipant,
    Message,
    MessageDeletion,
    MessageReceipt,
    PinnedChat,
    ScheduledMessage,
    StarredMessage,
)
from ..schemas.messages import DeliveryState, advance_delivery_state
from .error_classifier import classify, to_exception
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

_MESSAGE_OPTIONS = (
    selectinload(Message.deletions),
    selectinload(Message.stars),
    selectinload(Message.receipts),
)


def commit_or_raise(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Failed to %s: %s", action, exc)
        raise to_exception(classify(exc)) from exc


def _attachments_or_none(values: Iterable[str] | None) -> list[str] | None:
    if not values:
        return None
    cleaned = [value for value in values if value]
    return cleaned or None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def message_record(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "client_id": message.client_id,
        "chat_id": message.chat_id,
        "sender_id": message.sender_id,
        "content": message.content or "",
        "attachments": list(message.attachments or []),
        "reply_to_id": message.reply_to_id,
        "forwarded_from_id": message.forwarded_from_id,
        "created_at": ensure_utc(message.created_at),
        "edited_at": ensure_utc(message.edited_at),
        "expires_at": ensure_utc(message.expires_at),
        "deleted_for": sorted(deletion.user_id for deletion in message.deletions),
        "starred_by": sorted(star.user_id for star in message.stars),
        "receipts": {receipt.user_id: receipt.state for receipt in message.receipts},
    }


def chat_record(chat: Chat) -> dict[str, Any]:
    return {
        "id": chat.id,
        "name": chat.name,
        "is_group": bool(chat.is_group),
        "participants": sorted(participant.user_id for participant in chat.participants),
        "pinned_by": sorted(pin.user_id for pin in chat.pins),
        "auto_delete_seconds": chat.auto_delete_seconds,
        "created_at": ensure_utc(chat.created_at),
    }


def scheduled_record(scheduled: ScheduledMessage) -> dict[str, Any]:
    return {
        "id": scheduled.id,
        "chat_id": scheduled.chat_id,
        "sender_id": scheduled.sender_id,
        "content": scheduled.content or "",
        "attachments": list(scheduled.attachments or []),
        "scheduled_for": ensure_utc(scheduled.scheduled_for),
        "auto_delete_seconds": scheduled.auto_delete_seconds,
        "sent": bool(scheduled.sent),
        "sent_at": ensure_utc(scheduled.sent_at),
        "message_id": scheduled.message_id,
    }


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


def create_chat(
    db: Session,
    *,
    creator_id: str,
    participant_ids: Sequence[str],
    now: datetime,
    name: str | None = None,
    is_group: bool = False,
    auto_delete_seconds: int | None = None,
) -> Chat:
    """Create a chat with the creator and the given participants as members."""

    members: list[str] = []
    for raw in [creator_id, *participant_ids]:
        user_id = (raw or "").strip()
        if user_id and user_id not in members:
            members.append(user_id)

    if not is_group and len(members) != 2:
        raise ValidationError("Direct chats require exactly two participants")
    if is_group and len(members) < 2:
        raise ValidationError("Group chats require at least two participants")
    if auto_delete_seconds is not None and auto_delete_seconds <= 0:
        raise ValidationError("auto_delete_seconds must be positive")

    chat = Chat(
        name=(name or "").strip() or None,
        is_group=is_group,
        created_by=creator_id,
        auto_delete_seconds=auto_delete_seconds,
        created_at=now,
        updated_at=now,
    )
    chat.participants = [
        ChatParticipant(user_id=user_id, role="owner" if user_id == creator_id else "member", joined_at=now)
        for user_id in members
    ]
    db.add(chat)
    commit_or_raise(db, "create chat")
    return chat


def require_participant(db: Session, *, chat_id: str, user_id: str) -> Chat:
    chat = db.scalar(
        select(Chat)
        .where(Chat.id == chat_id)
        .options(selectinload(Chat.participants), selectinload(Chat.pins))
    )
    if chat is None:
        raise NotFoundError("Chat not found")
    if user_id not in {participant.user_id for participant in chat.participants}:
        raise PermissionDeniedError("You are not a participant of this chat")
    return chat


def list_chats(db: Session, *, user_id: str) -> list[Chat]:
    """Return the user's chats, pinned first, then most recently active."""

    stmt = (
        select(Chat)
        .join(ChatParticipant, ChatParticipant.chat_id == Chat.id)
        .where(ChatParticipant.user_id == user_id)
        .options(selectinload(Chat.participants), selectinload(Chat.pins))
        .order_by(Chat.updated_at.desc(), Chat.id.asc())
    )
    chats = list(db.scalars(stmt))
    chats.sort(key=lambda chat: user_id not in {pin.user_id for pin in chat.pins})
    return chats


def set_pinned(db: Session, *, chat_id: str, user_id: str, pinned: bool) -> Chat:
    chat = require_participant(db, chat_id=chat_id, user_id=user_id)
    existing = next((pin for pin in chat.pins if pin.user_id == user_id), None)
    if pinned and existing is None:
        chat.pins.append(PinnedChat(user_id=user_id))
    elif not pinned and existing is not None:
        chat.pins.remove(existing)
    else:
        return chat
    commit_or_raise(db, "update chat pin")
    return chat


def set_auto_delete(db: Session, *, chat_id: str, user_id: str, seconds: int | None) -> Chat:
    """Change the chat's disappearing-message timer for future messages only."""

    if seconds is not None and seconds <= 0:
        raise ValidationError("auto_delete_seconds must be positive")
    chat = require_participant(db, chat_id=chat_id, user_id=user_id)
    chat.auto_delete_seconds = seconds
    commit_or_raise(db, "update auto-delete timer")
    return chat


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def get_message(db: Session, message_id: str) -> Message | None:
    return db.scalar(select(Message).where(Message.id == message_id).options(*_MESSAGE_OPTIONS))


def _require_message(db: Session, message_id: str) -> Message:
    message = get_message(db, message_id)
    if message is None:
        raise NotFoundError("Message not found")
    return message


def _find_by_client_id(db: Session, *, sender_id: str, client_id: str) -> Message | None:
    return db.scalar(
        select(Message)
        .where(Message.sender_id == sender_id, Message.client_id == client_id)
        .options(*_MESSAGE_OPTIONS)
    )


def _new_message(
    chat: Chat,
    *,
    sender_id: str,
    content: str,
    attachments: list[str] | None,
    now: datetime,
    client_id: str | None = None,
    reply_to_id: str | None = None,
    forwarded_from_id: str | None = None,
    auto_delete_seconds: int | None = None,
) -> Message:
    lifetime = auto_delete_seconds if auto_delete_seconds is not None else chat.auto_delete_seconds
    message = Message(
        chat_id=chat.id,
        sender_id=sender_id,
        client_id=client_id,
        content=content,
        attachments=attachments,
        reply_to_id=reply_to_id,
        forwarded_from_id=forwarded_from_id,
        created_at=now,
        expires_at=now + timedelta(seconds=lifetime) if lifetime else None,
    )
    message.receipts = [
        MessageReceipt(user_id=participant.user_id, state=DeliveryState.SENT.value, updated_at=now)
        for participant in chat.participants
        if participant.user_id != sender_id
    ]
    chat.updated_at = now
    return message


def insert_message(
    db: Session,
    *,
    sender_id: str,
    chat_id: str,
    content: str,
    now: datetime,
    attachments: Sequence[str] | None = None,
    client_id: str | None = None,
    reply_to_id: str | None = None,
    auto_delete_seconds: int | None = None,
) -> tuple[Message, bool]:
    """Persist a message. Returns ``(message, created)``.

    A repeated ``client_id`` from the same sender returns the row created by the
    first attempt instead of inserting a duplicate.
    """

    cleaned = _attachments_or_none(attachments)
    if not (content or "").strip() and not cleaned:
        raise ValidationError("Message requires text or attachments")

    if client_id:
        existing = _find_by_client_id(db, sender_id=sender_id, client_id=client_id)
        if existing is not None:
            return existing, False

    chat = require_participant(db, chat_id=chat_id, user_id=sender_id)

    if reply_to_id is not None:
        parent = db.get(Message, reply_to_id)
        if parent is None:
            raise NotFoundError("Reply target not found")
        if parent.chat_id != chat.id:
            raise ValidationError("Reply must stay within the same chat")

    message = _new_message(
        chat,
        sender_id=sender_id,
        content=content or "",
        attachments=cleaned,
        now=now,
        client_id=client_id,
        reply_to_id=reply_to_id,
        auto_delete_seconds=auto_delete_seconds,
    )
    db.add(message)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if client_id:
            existing = _find_by_client_id(db, sender_id=sender_id, client_id=client_id)
            if existing is not None:
                return existing, False
        raise to_exception(classify(exc)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise to_exception(classify(exc)) from exc
    return message, True


def edit_message(db: Session, *, message_id: str, user_id: str, content: str, now: datetime) -> Message:
    if not (content or "").strip():
        raise ValidationError("Message content cannot be empty")
    message = _require_message(db, message_id)
    if message.sender_id != user_id:
        raise PermissionDeniedError("You can only edit your own messages")
    message.content = content
    message.edited_at = now
    commit_or_raise(db, "edit message")
    return message


def hide_message(db: Session, *, message_id: str, user_id: str) -> Message:
    """Tombstone the message for ``user_id`` only. Repeating the call is a no-op."""

    message = _require_message(db, message_id)
    require_participant(db, chat_id=message.chat_id, user_id=user_id)
    if any(deletion.user_id == user_id for deletion in message.deletions):
        return message
    message.deletions.append(MessageDeletion(user_id=user_id))
    commit_or_raise(db, "hide message")
    return message


def delete_message(db: Session, *, message_id: str, user_id: str) -> dict[str, Any]:
    """Hard-delete the author's own message and return its last record."""

    message = _require_message(db, message_id)
    if message.sender_id != user_id:
        raise PermissionDeniedError("You can only delete your own messages for everyone")
    record = message_record(message)
    db.delete(message)
    commit_or_raise(db, "delete message")
    return record


def set_star(db: Session, *, message_id: str, user_id: str, starred: bool) -> tuple[Message, bool]:
    """Star or unstar for ``user_id``. Returns ``(message, changed)``."""

    message = _require_message(db, message_id)
    require_participant(db, chat_id=message.chat_id, user_id=user_id)
    existing = next((star for star in message.stars if star.user_id == user_id), None)
    if starred and existing is None:
        message.stars.append(StarredMessage(user_id=user_id))
    elif not starred and existing is not None:
        message.stars.remove(existing)
    else:
        return message, False
    commit_or_raise(db, "update star")
    return message, True


def record_receipt(
    db: Session, *, message_id: str, user_id: str, state: DeliveryState, now: datetime
) -> MessageReceipt | None:
    """Advance the recipient's receipt. Returns ``None`` when nothing changed."""

    message = _require_message(db, message_id)
    if message.sender_id == user_id:
        return None
    receipt = next((row for row in message.receipts if row.user_id == user_id), None)
    if receipt is None:
        require_participant(db, chat_id=message.chat_id, user_id=user_id)
        receipt = MessageReceipt(user_id=user_id, state=DeliveryState.SENT.value, updated_at=now)
        message.receipts.append(receipt)

    current = DeliveryState(receipt.state)
    advanced = advance_delivery_state(current, state)
    if advanced == current and receipt.message_id is not None:
        return None
    receipt.state = advanced.value
    receipt.updated_at = now
    commit_or_raise(db, "record receipt")
    return receipt


def _visible_to(user_id: str, now: datetime):
    return (
        or_(Message.expires_at.is_(None), Message.expires_at > now),
        ~Message.deletions.any(MessageDeletion.user_id == user_id),
    )


def list_messages(db: Session, *, chat_id: str, user_id: str, now: datetime, limit: int | None = None) -> list[Message]:
    """Return the chat's messages visible to ``user_id`` in chronological order."""

    require_participant(db, chat_id=chat_id, user_id=user_id)
    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id, *_visible_to(user_id, now))
        .options(*_MESSAGE_OPTIONS)
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    messages = list(db.scalars(stmt))
    messages.reverse()
    return messages


def list_starred(db: Session, *, user_id: str, now: datetime) -> list[Message]:
    stmt = (
        select(Message)
        .join(StarredMessage, StarredMessage.message_id == Message.id)
        .where(StarredMessage.user_id == user_id, *_visible_to(user_id, now))
        .options(*_MESSAGE_OPTIONS)
        .order_by(StarredMessage.created_at.desc(), Message.id.asc())
    )
    return list(db.scalars(stmt))


def count_unread_by_chat(db: Session, *, user_id: str, now: datetime, chat_id: str | None = None) -> dict[str, int]:
    """Count visible messages from others that ``user_id`` has not read, per chat.

    Chats without unread messages are left out.
    """

    if chat_id is not None:
        require_participant(db, chat_id=chat_id, user_id=user_id)
    read_by_user = Message.receipts.any(
        and_(MessageReceipt.user_id == user_id, MessageReceipt.state == DeliveryState.READ.value)
    )
    stmt = (
        select(Message.chat_id, func.count(Message.id))
        .join(ChatParticipant, and_(ChatParticipant.chat_id == Message.chat_id, ChatParticipant.user_id == user_id))
        .where(Message.sender_id != user_id, ~read_by_user, *_visible_to(user_id, now))
        .group_by(Message.chat_id)
    )
    if chat_id is not None:
        stmt = stmt.where(Message.chat_id == chat_id)
    return {row_chat_id: count for row_chat_id, count in db.execute(stmt)}


def count_unread(db: Session, *, user_id: str, now: datetime, chat_id: str | None = None) -> int:
    return sum(count_unread_by_chat(db, user_id=user_id, now=now, chat_id=chat_id).values())


def forward_messages(
    db: Session, *, user_id: str, message_ids: Sequence[str], target_chat_id: str, now: datetime
) -> list[Message]:
    """Copy the given messages into one target chat in a single transaction."""

    if not message_ids:
        raise ValidationError("Select at least one message to forward")
    target = require_participant(db, chat_id=target_chat_id, user_id=user_id)

    sources: list[Message] = []
    for message_id in message_ids:
        source = _require_message(db, message_id)
        require_participant(db, chat_id=source.chat_id, user_id=user_id)
        sources.append(source)

    created: list[Message] = []
    for offset, source in enumerate(sources):
        # Keep the forwarded batch in its original order within the target chat.
        stamp = now + timedelta(microseconds=offset)
        created.append(
            _new_message(
                target,
                sender_id=user_id,
                content=source.content or "",
                attachments=list(source.attachments or []) or None,
                now=stamp,
                forwarded_from_id=source.id,
            )
        )
    db.add_all(created)
    commit_or_raise(db, "forward messages")
    return created


# ---------------------------------------------------------------------------
# Scheduled messages
# ---------------------------------------------------------------------------


def schedule_message(
    db: Session,
    *,
    sender_id: str,
    chat_id: str,
    content: str,
    scheduled_for: datetime,
    now: datetime,
    attachments: Sequence[str] | None = None,
    auto_delete_seconds: int | None = None,
) -> ScheduledMessage:
    cleaned = _attachments_or_none(attachments)
    if not (content or "").strip() and not cleaned:
        raise ValidationError("Message requires text or attachments")
    if ensure_utc(scheduled_for) <= now:
        raise ValidationError("Scheduled time must be in the future")
    require_participant(db, chat_id=chat_id, user_id=sender_id)

    scheduled = ScheduledMessage(
        chat_id=chat_id,
        sender_id=sender_id,
        content=content or "",
        attachments=cleaned,
        scheduled_for=scheduled_for,
        auto_delete_seconds=auto_delete_seconds,
        created_at=now,
    )
    db.add(scheduled)
    commit_or_raise(db, "schedule message")
    return scheduled


def list_scheduled(db: Session, *, user_id: str, chat_id: str | None = None) -> list[ScheduledMessage]:
    stmt = select(ScheduledMessage).where(ScheduledMessage.sender_id == user_id, ScheduledMessage.sent.is_(False))
    if chat_id is not None:
        stmt = stmt.where(ScheduledMessage.chat_id == chat_id)
    return list(db.scalars(stmt.order_by(ScheduledMessage.scheduled_for.asc())))


def cancel_scheduled(db: Session, *, scheduled_id: str, user_id: str) -> None:
    scheduled = db.get(ScheduledMessage, scheduled_id)
    if scheduled is None:
        raise NotFoundError("Scheduled message not found")
    if scheduled.sender_id != user_id:
        raise PermissionDeniedError("You can only cancel your own scheduled messages")
    if scheduled.sent:
        raise ConflictError("Scheduled message was already sent")
    db.delete(scheduled)
    commit_or_raise(db, "cancel scheduled message")


def publish_scheduled(db: Session, scheduled: ScheduledMessage, *, now: datetime) -> Message:
    """Materialize one due scheduled message into its chat."""

    chat = db.scalar(select(Chat).where(Chat.id == scheduled.chat_id).options(selectinload(Chat.participants)))
    if chat is None:
        raise NotFoundError("Chat not found")
    message = _new_message(
        chat,
        sender_id=scheduled.sender_id,
        content=scheduled.content or "",
        attachments=list(scheduled.attachments or []) or None,
        now=now,
        client_id=f"scheduled:{scheduled.id}",
        auto_delete_seconds=scheduled.auto_delete_seconds,
    )
    db.add(message)
    db.flush()
    scheduled.sent = True
    scheduled.sent_at = now
    scheduled.message_id = message.id
    commit_or_raise(db, "publish scheduled message")
    return message


__all__ = [
    "commit_or_raise",
    "message_record",
    "chat_record",
    "scheduled_record",
    "create_chat",
    "require_participant",
    "list_chats",
    "set_pinned",
    "set_auto_delete",
    "get_message",
    "insert_message",
    "edit_message",
    "hide_message",
    "delete_message",
    "set_star",
    "record_receipt",
    "list_messages",
    "list_starred",
    "count_unread_by_chat",
    "count_unread",
    "forward_messages",
    "schedule_message",
    "list_scheduled",
    "cancel_scheduled",
    "publish_scheduled",
]

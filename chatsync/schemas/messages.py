"""Schemas describing chats and messages as the client holds them."""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, List, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ClassifiedError


MAX_MESSAGE_LENGTH = 4000


class DeliveryState(StrEnum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


_DELIVERY_RANK: dict[DeliveryState, int] = {
    DeliveryState.SENDING: 0,
    DeliveryState.SENT: 1,
    DeliveryState.DELIVERED: 2,
    DeliveryState.READ: 3,
}


def advance_delivery_state(current: DeliveryState, incoming: DeliveryState) -> DeliveryState:
    """Return the state after applying ``incoming`` on top of ``current``.

    States only move forward along sending -> sent -> delivered -> read; a later
    state subsumes skipped ones. ``failed`` is reachable from ``sending`` only and
    is terminal. Anything else leaves ``current`` untouched.
    """

    if current == DeliveryState.FAILED:
        return current
    if incoming == DeliveryState.FAILED:
        return incoming if current == DeliveryState.SENDING else current
    if _DELIVERY_RANK[incoming] > _DELIVERY_RANK[current]:
        return incoming
    return current


def least_advanced(states: List[DeliveryState]) -> DeliveryState:
    """Aggregate per-recipient receipts into the sender-facing state."""

    ranked = [state for state in states if state in _DELIVERY_RANK]
    if not ranked:
        return DeliveryState.SENT
    return min(ranked, key=_DELIVERY_RANK.__getitem__)


class DeleteScope(StrEnum):
    FOR_ME = "for_me"
    FOR_EVERYONE = "for_everyone"


class ChatMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str | None = None
    chat_id: str
    sender_id: str
    content: str = ""
    attachments: List[str] = Field(default_factory=list)
    reply_to_id: str | None = None
    forwarded_from_id: str | None = None
    created_at: datetime
    edited_at: datetime | None = None
    expires_at: datetime | None = None
    deleted_for: Set[str] = Field(default_factory=set)
    starred_by: Set[str] = Field(default_factory=set)
    receipts: Dict[str, DeliveryState] = Field(default_factory=dict)
    delivery_state: DeliveryState = DeliveryState.SENT
    last_error: ClassifiedError | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def visible_to(self, user_id: str, now: datetime) -> bool:
        return user_id not in self.deleted_for and not self.is_expired(now)


class ChatSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str | None = None
    is_group: bool = False
    participants: List[str]
    pinned_by: Set[str] = Field(default_factory=set)
    auto_delete_seconds: int | None = None
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _direct_chats_have_two_participants(self) -> "ChatSummary":
        if not self.is_group and len(set(self.participants)) != 2:
            raise ValueError("direct chats must have exactly two participants")
        return self


class MessageDraft(BaseModel):
    """Input for a send, validated before any network call."""

    chat_id: str = Field(..., min_length=1)
    content: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    attachments: List[str] = Field(default_factory=list)
    reply_to_id: str | None = None

    @model_validator(mode="after")
    def _requires_text_or_attachment(self) -> "MessageDraft":
        self.attachments = [value for value in self.attachments if value]
        if not self.content.strip() and not self.attachments:
            raise ValueError("message requires text or attachments")
        return self


class ScheduledMessageView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    sender_id: str
    content: str = ""
    attachments: List[str] = Field(default_factory=list)
    scheduled_for: datetime
    auto_delete_seconds: int | None = None
    sent: bool = False
    sent_at: datetime | None = None
    message_id: str | None = None


class ForwardOutcome(BaseModel):
    chat_id: str
    ok: bool
    message_ids: List[str] = Field(default_factory=list)
    error: ClassifiedError | None = None


class ForwardReport(BaseModel):
    outcomes: Dict[str, ForwardOutcome] = Field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [chat_id for chat_id, outcome in self.outcomes.items() if outcome.ok]

    @property
    def failed(self) -> List[str]:
        return [chat_id for chat_id, outcome in self.outcomes.items() if not outcome.ok]

    def as_status_map(self) -> dict[str, str]:
        return {chat_id: ("success" if outcome.ok else "failure") for chat_id, outcome in self.outcomes.items()}


def message_from_record(record: dict[str, Any]) -> ChatMessage:
    """Build a ``ChatMessage`` from a backend row or realtime payload."""

    data = dict(record)
    data["attachments"] = list(data.get("attachments") or [])
    data["deleted_for"] = set(data.get("deleted_for") or [])
    data["starred_by"] = set(data.get("starred_by") or [])
    data["receipts"] = dict(data.get("receipts") or {})
    data.setdefault("delivery_state", DeliveryState.SENT)
    return ChatMessage.model_validate(data)


__all__ = [
    "MAX_MESSAGE_LENGTH",
    "DeliveryState",
    "advance_delivery_state",
    "least_advanced",
    "DeleteScope",
    "ChatMessage",
    "ChatSummary",
    "MessageDraft",
    "ScheduledMessageView",
    "ForwardOutcome",
    "ForwardReport",
    "message_from_record",
]

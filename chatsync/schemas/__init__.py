"""Convenience exports for schema layer."""
from .cache import (
    COLLECTION_NAMES,
    CacheCollectionName,
    CachedEntry,
    CachedPage,
    CachedPost,
    CachedProfile,
    CachedReel,
    CachedStory,
    CachePayload,
    cache_payload_adapter,
)
from .errors import ClassifiedError, ErrorKind
from .messages import (
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
from .rate_limits import RateLimitConfig, RateLimitDecision
from .realtime import ChangeEvent, ChangeType, EventFilter

__all__ = [
    "COLLECTION_NAMES",
    "CacheCollectionName",
    "CachedEntry",
    "CachedPage",
    "CachedPost",
    "CachedProfile",
    "CachedReel",
    "CachedStory",
    "CachePayload",
    "cache_payload_adapter",
    "ClassifiedError",
    "ErrorKind",
    "ChatMessage",
    "ChatSummary",
    "DeleteScope",
    "DeliveryState",
    "ForwardOutcome",
    "ForwardReport",
    "MessageDraft",
    "ScheduledMessageView",
    "advance_delivery_state",
    "least_advanced",
    "message_from_record",
    "RateLimitConfig",
    "RateLimitDecision",
    "ChangeEvent",
    "ChangeType",
    "EventFilter",
]

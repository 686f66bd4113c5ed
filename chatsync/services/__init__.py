"""Convenience exports for service layer."""
from .backend import ChatBackend, SqlChatBackend
from .backend_jobs import (
    BackendJobError,
    PublishSummary,
    SweepSummary,
    publish_due_messages,
    run_publish,
    run_sweep,
    sweep_expired_messages,
)
from .error_classifier import classify, to_exception
from .errors import (
    AuthError,
    ConflictError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    SyncError,
    UnknownError,
    ValidationError,
)
from .feed_sync import FeedSync
from .local_store import LocalStore, SessionCache
from .media_urls import build_srcset, optimized_image_url, picture_sources
from .message_lifecycle import MessageLifecycleManager
from .network_monitor import NetworkMonitor
from .object_cache import ObjectCache
from .rate_limiter import LOGIN, OTP_SEND, OTP_VERIFY, SEND_MESSAGE, RateLimiter
from .realtime import (
    ChangeFeed,
    RealtimeBridge,
    RealtimeScope,
    Subscription,
    chat_channel,
    notifications_channel,
    posts_channel,
)

__all__ = [
    "ChatBackend",
    "SqlChatBackend",
    "BackendJobError",
    "PublishSummary",
    "SweepSummary",
    "publish_due_messages",
    "run_publish",
    "run_sweep",
    "sweep_expired_messages",
    "classify",
    "to_exception",
    "AuthError",
    "ConflictError",
    "NetworkError",
    "NotFoundError",
    "PermissionDeniedError",
    "RateLimitedError",
    "SyncError",
    "UnknownError",
    "ValidationError",
    "FeedSync",
    "LocalStore",
    "SessionCache",
    "build_srcset",
    "optimized_image_url",
    "picture_sources",
    "MessageLifecycleManager",
    "NetworkMonitor",
    "ObjectCache",
    "LOGIN",
    "OTP_SEND",
    "OTP_VERIFY",
    "SEND_MESSAGE",
    "RateLimiter",
    "ChangeFeed",
    "RealtimeBridge",
    "RealtimeScope",
    "Subscription",
    "chat_channel",
    "notifications_channel",
    "posts_channel",
]

"""Convenience exports for ORM models."""
from .cached_object import CacheCollection, CachedObject
from .chat import Chat, ChatParticipant, PinnedChat
from .local_entry import LocalEntry
from .message import Message, MessageDeletion, MessageReceipt, StarredMessage
from .notification import Notification
from .post import Post
from .rate_limit import RateLimit
from .scheduled_message import ScheduledMessage

__all__ = [
    "CacheCollection",
    "CachedObject",
    "Chat",
    "ChatParticipant",
    "PinnedChat",
    "LocalEntry",
    "Message",
    "MessageDeletion",
    "MessageReceipt",
    "StarredMessage",
    "Notification",
    "Post",
    "RateLimit",
    "ScheduledMessage",
]

"""Typed payloads for the structured object cache.

Each collection has its own schema; payloads are a tagged union on ``kind`` so a
row read back from storage is validated against the collection it came from.
"""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Generic, List, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class CacheCollectionName(StrEnum):
    POSTS = "posts"
    PROFILES = "profiles"
    REELS = "reels"
    PAGES = "pages"
    STORIES = "stories"


class _CachedModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CachedPost(_CachedModel):
    kind: Literal["posts"] = "posts"
    id: str
    author_id: str
    content: str = ""
    media_url: str | None = None
    like_count: int = 0
    comment_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CachedProfile(_CachedModel):
    kind: Literal["profiles"] = "profiles"
    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    is_verified: bool = False


class CachedReel(_CachedModel):
    kind: Literal["reels"] = "reels"
    id: str
    author_id: str
    video_url: str
    caption: str = ""
    thumbnail_url: str | None = None
    view_count: int = 0


class CachedPage(_CachedModel):
    kind: Literal["pages"] = "pages"
    id: str
    name: str
    category: str | None = None
    avatar_url: str | None = None
    follower_count: int = 0


class CachedStory(_CachedModel):
    kind: Literal["stories"] = "stories"
    id: str
    author_id: str
    media_url: str
    media_type: str = "image"
    expires_at: datetime | None = None


CachePayload = Annotated[
    Union[CachedPost, CachedProfile, CachedReel, CachedPage, CachedStory],
    Field(discriminator="kind"),
]

cache_payload_adapter: TypeAdapter[CachePayload] = TypeAdapter(CachePayload)

T = TypeVar("T")


class CachedEntry(BaseModel, Generic[T]):
    """A cached value with the instant it was written and the instant it lapses."""

    data: T
    created_at_ms: int
    expires_at_ms: int | None = None

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> "CachedEntry[T]":
        if self.expires_at_ms is not None and self.expires_at_ms <= self.created_at_ms:
            raise ValueError("expires_at_ms must be later than created_at_ms")
        return self

    def is_valid(self, now_ms: int) -> bool:
        return self.expires_at_ms is None or now_ms < self.expires_at_ms


COLLECTION_NAMES: List[str] = [member.value for member in CacheCollectionName]


__all__ = [
    "CacheCollectionName",
    "CachedPost",
    "CachedProfile",
    "CachedReel",
    "CachedPage",
    "CachedStory",
    "CachePayload",
    "cache_payload_adapter",
    "CachedEntry",
    "COLLECTION_NAMES",
]

"""Accessors for the service objects the app owns."""
from __future__ import annotations

from fastapi import Request

from ..database import Database
from ..services.realtime import ChangeFeed


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


__all__ = ["get_database", "get_change_feed"]

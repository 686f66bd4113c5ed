"""WebSocket endpoint streaming change events for one realtime channel."""
from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ..database import Database
from ..security import bearer_token, decode_access_token
from ..services import message_service
from ..services.errors import NotFoundError, PermissionDeniedError
from ..services.realtime import ChangeFeed, posts_channel

router = APIRouter()
logger = logging.getLogger(__name__)

_PRIVATE_KINDS = ("chat", "notifications")


async def _can_join(websocket: WebSocket, channel: str, token: str | None) -> bool:
    """Public channels are open; chat and notification channels need a token for a member."""

    if channel == posts_channel():
        return True
    kind, _, key = channel.partition(":")
    if kind not in _PRIVATE_KINDS or not key:
        return False

    raw_token = token or bearer_token(websocket.headers.get("authorization"))
    if not raw_token:
        return False
    try:
        user_id = decode_access_token(raw_token)
    except HTTPException:
        return False
    except RuntimeError:
        logger.error("Private realtime channels are unavailable: JWT_SECRET_KEY is not configured")
        return False

    if kind == "notifications":
        return key == user_id

    database: Database = websocket.app.state.database

    def _check() -> None:
        with database.session() as session:
            message_service.require_participant(session, chat_id=key, user_id=user_id)

    try:
        await asyncio.to_thread(_check)
    except (NotFoundError, PermissionDeniedError):
        return False
    return True


@router.websocket("/ws/channels/{channel}")
async def channel_updates(
    websocket: WebSocket,
    channel: str,
    token: str | None = Query(default=None, alias="token"),
) -> None:
    """Push every event published on ``channel`` until the client disconnects."""

    if not await _can_join(websocket, channel, token):
        logger.warning("Refused realtime socket for %s from %s", channel, websocket.client)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    feed: ChangeFeed = websocket.app.state.change_feed
    await feed.connect(channel, websocket)
    logger.info("Realtime socket joined %s from %s", channel, websocket.client)
    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            except Exception:
                logger.exception("Realtime socket receive failed")
                break

            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                payload = {"type": raw}

            message_type = str(payload.get("type") or "").lower() if isinstance(payload, dict) else ""
            if message_type == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
            elif message_type == "hello":
                await websocket.send_text(json.dumps({"type": "ready", "channel": channel}))
    finally:
        await feed.disconnect(websocket)
        logger.info("Realtime socket left %s", channel)


__all__ = ["router"]

"""Cron-style server functions: expired-message sweep and scheduled-message publisher."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..clock import utcnow
from ..config import get_settings
from ..database import Database
from ..security import is_placeholder, verify_bearer_token
from ..services.backend_jobs import BackendJobError, publish_and_broadcast, sweep_and_broadcast
from ..services.realtime import ChangeFeed
from .deps import get_change_feed, get_database

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions", tags=["functions"])


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    secret = get_settings().cron_secret
    if is_placeholder(secret):
        logger.error("CRON_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduled functions disabled")
    if not verify_bearer_token(authorization, secret):
        logger.warning("Unauthorized access attempt to a scheduled function")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/delete-expired-messages", dependencies=[Depends(require_cron_secret)])
async def delete_expired_messages(
    database: Database = Depends(get_database),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict[str, object]:
    try:
        summary = await sweep_and_broadcast(database.create_session, feed)
    except BackendJobError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from exc
    return {"success": True, "deleted": summary.total, "timestamp": utcnow().isoformat()}


@router.post("/publish-scheduled-messages", dependencies=[Depends(require_cron_secret)])
async def publish_scheduled_messages(
    database: Database = Depends(get_database),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict[str, object]:
    try:
        summary = await publish_and_broadcast(database.create_session, feed)
    except BackendJobError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from exc
    return {
        "success": True,
        "published": summary.total,
        "failed": len(summary.failed),
        "timestamp": utcnow().isoformat(),
    }


__all__ = ["router", "require_cron_secret"]

"""Application entry point for the chat sync backend."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import Database
from .routers import functions_router, realtime_router
from .services.backend_jobs import BackendJobError, publish_and_broadcast, sweep_and_broadcast
from .services.realtime import ChangeFeed

logger = logging.getLogger(__name__)

settings = get_settings()
APP_NAME = settings.app_name
API_VERSION = settings.api_version
DISABLE_JOBS = settings.disable_jobs or os.getenv("PYTEST_CURRENT_TEST") is not None

app = FastAPI(title=APP_NAME, version=API_VERSION)
app.state.database = Database(settings.database_url)
app.state.change_feed = ChangeFeed()

if settings.cors_origins:
    origins: Iterable[str] = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(functions_router)
app.include_router(realtime_router)

_job_tasks: list[asyncio.Task[None]] = []
_jobs_stop = asyncio.Event()


async def _run_sweep_once() -> None:
    try:
        await sweep_and_broadcast(app.state.database.create_session, app.state.change_feed)
    except BackendJobError:
        logger.exception("Scheduled expired-message sweep failed")
    except Exception:  # pragma: no cover
        logger.exception("Unexpected error during expired-message sweep")


async def _run_publish_once() -> None:
    try:
        await publish_and_broadcast(app.state.database.create_session, app.state.change_feed)
    except BackendJobError:
        logger.exception("Scheduled message publish failed")
    except Exception:  # pragma: no cover
        logger.exception("Unexpected error during scheduled message publish")


async def _job_loop(run_once: Callable[[], Awaitable[None]], interval_seconds: float) -> None:
    """Run ``run_once`` on a fixed interval until shutdown."""

    while not _jobs_stop.is_set():
        await run_once()
        try:
            await asyncio.wait_for(_jobs_stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def _startup() -> None:
    """Ensure the schema exists and start the periodic jobs."""

    try:
        app.state.database.init()
    except Exception:  # pragma: no cover
        logger.exception("Database initialisation failed")
        raise

    if DISABLE_JOBS:
        logger.info("Background jobs disabled")
        return

    if not any(not task.done() for task in _job_tasks):
        _jobs_stop.clear()
        _job_tasks[:] = [
            asyncio.create_task(_job_loop(_run_sweep_once, settings.sweep_interval_seconds)),
            asyncio.create_task(_job_loop(_run_publish_once, settings.publish_interval_seconds)),
        ]


@app.on_event("shutdown")
async def _shutdown() -> None:
    """Stop background jobs cleanly during application shutdown."""

    _jobs_stop.set()
    for task in _job_tasks:
        try:
            await task
        except asyncio.CancelledError:  # pragma: no cover
            pass
    _job_tasks.clear()


@app.get("/api", tags=["system"])
def api_info() -> dict[str, str]:
    return {"service": APP_NAME, "version": API_VERSION}


@app.get("/health", tags=["system"])
async def healthcheck() -> dict[str, object]:
    feed: ChangeFeed = app.state.change_feed
    return {"status": "ok", "realtime_listeners": feed.listener_count()}

"""Connectivity state shared by the classifier and the lifecycle manager."""
from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class NetworkMonitor:
    """Holds the online flag and notifies listeners when it flips.

    Online/offline notices are logged at most once per cooldown window so a
    flapping connection does not flood the log.
    """

    def __init__(
        self,
        *,
        online: bool = True,
        notice_cooldown: float | None = None,
        probe_timeout: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._online = online
        self._listeners: list[Listener] = []
        self._cooldown = settings.network_notice_cooldown_seconds if notice_cooldown is None else notice_cooldown
        self._probe_timeout = settings.network_probe_timeout_seconds if probe_timeout is None else probe_timeout
        self._monotonic = monotonic
        self._transport = transport
        self._last_notice: float | None = None
        self._initialized = False

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> None:
        """Start monitoring and tell the registered listeners the current state once."""

        if self._initialized:
            return
        self._initialized = True
        logger.info("Network monitor started (online=%s)", self._online)
        self._notify(self._online)

    def dispose(self) -> None:
        self._listeners.clear()
        self._initialized = False

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self._notice(online)
        self._notify(online)

    def _notify(self, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:  # pragma: no cover
                logger.exception("Network listener failed")

    def _notice(self, online: bool) -> None:
        now = self._monotonic()
        if self._last_notice is not None and now - self._last_notice < self._cooldown:
            return
        self._last_notice = now
        if online:
            logger.info("Connection restored")
        else:
            logger.warning("Connection lost; working offline")

    async def probe(self, url: str) -> bool:
        """Issue a lightweight HEAD request and update the online flag from the outcome."""

        try:
            async with httpx.AsyncClient(timeout=self._probe_timeout, transport=self._transport) as client:
                response = await client.head(url)
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe to %s failed: %s", url, exc)
            self.set_online(False)
            return False
        reachable = response.status_code < 500
        self.set_online(reachable)
        return reachable


__all__ = ["NetworkMonitor"]

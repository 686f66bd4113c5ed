"""Fixed-window attempt counter persisted in the ``rate_limits`` table.

The counter is keyed by ``(action, identifier)``. Because windows are fixed
rather than sliding, a caller can land up to twice ``max_attempts`` across a
window boundary. The limiter fails open: storage problems allow the attempt.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..clock import Clock, ensure_utc, utcnow
from ..config import get_settings
from ..database import Database
from ..models import RateLimit
from ..schemas.rate_limits import RateLimitConfig, RateLimitDecision
from .errors import RateLimitedError

logger = logging.getLogger(__name__)

OTP_SEND = RateLimitConfig(max_attempts=5, window_ms=60_000, block_duration_ms=300_000)
OTP_VERIFY = RateLimitConfig(max_attempts=5, window_ms=60_000, block_duration_ms=300_000)
LOGIN = RateLimitConfig(max_attempts=5, window_ms=60_000, block_duration_ms=300_000)
SEND_MESSAGE = RateLimitConfig(max_attempts=30, window_ms=60_000, block_duration_ms=60_000)


def default_config() -> RateLimitConfig:
    settings = get_settings()
    return RateLimitConfig(
        max_attempts=settings.rate_limit_max_attempts,
        window_ms=settings.rate_limit_window_ms,
        block_duration_ms=settings.rate_limit_block_ms,
    )


class RateLimiter:
    def __init__(self, database: Database, *, config: RateLimitConfig | None = None, clock: Clock = utcnow) -> None:
        self._database = database
        self._config = config or default_config()
        self._clock = clock

    def init(self) -> None:
        self._database.init(tables=[RateLimit.__table__])

    def check_and_record(
        self, action: str, identifier: str | None, config: RateLimitConfig | None = None
    ) -> RateLimitDecision:
        """Count one attempt and report whether it may proceed."""

        if not identifier:
            return RateLimitDecision(allowed=True)

        config = config or self._config
        now = self._clock()
        window = timedelta(milliseconds=config.window_ms)

        try:
            with self._database.session() as session:
                record = session.scalar(
                    select(RateLimit).where(RateLimit.action == action, RateLimit.identifier == identifier)
                )
                if record is None:
                    session.add(
                        RateLimit(
                            action=action,
                            identifier=identifier,
                            attempt_count=1,
                            window_start=now,
                            last_attempt=now,
                        )
                    )
                    session.commit()
                    return RateLimitDecision(allowed=True, remaining_attempts=config.max_attempts - 1)

                blocked_until = ensure_utc(record.blocked_until)
                if blocked_until is not None and blocked_until > now:
                    return RateLimitDecision(allowed=False, remaining_attempts=0, blocked_until=blocked_until)

                window_start = ensure_utc(record.window_start)
                if blocked_until is not None or now - window_start >= window:
                    record.attempt_count = 1
                    record.window_start = now
                    record.last_attempt = now
                    record.blocked_until = None
                    session.commit()
                    return RateLimitDecision(allowed=True, remaining_attempts=config.max_attempts - 1)

                attempts = record.attempt_count + 1
                record.attempt_count = attempts
                record.last_attempt = now
                if attempts > config.max_attempts:
                    blocked_until = now + timedelta(milliseconds=config.block_duration_ms)
                    record.blocked_until = blocked_until
                    session.commit()
                    logger.warning("Rate limit exceeded for %s (%s); blocked until %s", action, identifier, blocked_until)
                    return RateLimitDecision(allowed=False, remaining_attempts=0, blocked_until=blocked_until)

                session.commit()
                return RateLimitDecision(allowed=True, remaining_attempts=config.max_attempts - attempts)
        except SQLAlchemyError:
            logger.exception("Rate limit check failed for %s; allowing attempt", action)
            return RateLimitDecision(allowed=True)

    def enforce(self, action: str, identifier: str | None, config: RateLimitConfig | None = None) -> RateLimitDecision:
        """Like :meth:`check_and_record` but raise :class:`RateLimitedError` when rejected."""

        decision = self.check_and_record(action, identifier, config)
        if decision.allowed:
            return decision
        retry_after_ms = None
        if decision.blocked_until is not None:
            retry_after_ms = max(0, int((decision.blocked_until - self._clock()).total_seconds() * 1000))
        raise RateLimitedError(f"Too many {action} attempts", retry_after_ms=retry_after_ms)

    def reset(self, action: str, identifier: str | None) -> None:
        """Forget the counter, typically after the guarded action succeeded."""

        if not identifier:
            return
        try:
            with self._database.session() as session:
                session.execute(
                    delete(RateLimit).where(RateLimit.action == action, RateLimit.identifier == identifier)
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception("Rate limit reset failed for %s", action)


__all__ = ["RateLimiter", "default_config", "OTP_SEND", "OTP_VERIFY", "LOGIN", "SEND_MESSAGE"]

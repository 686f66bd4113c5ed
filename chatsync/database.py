"""Database layer utilities for SQLAlchemy-backed persistence."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _engine_for(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Sessions are handed to worker threads via asyncio.to_thread.
        connect_args = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/").endswith(("sqlite:", "pysqlite:")):
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool, future=True)
        return create_engine(url, connect_args=connect_args, future=True)
    return create_engine(url, pool_pre_ping=True, future=True)


class Database:
    """Owns one engine and its session factory.

    Constructed explicitly and passed to the services that need it, so tests can
    run several isolated databases (device store, backend tables) side by side.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = _engine_for(self.url)
        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autoflush=False,
                autocommit=False,
                future=True,
                expire_on_commit=False,
            )
        return self._session_factory

    def init(self, tables: list | None = None) -> None:
        """Create tables when missing. Safe to call repeatedly."""
        # Import models to ensure they are registered on the metadata before create_all runs.
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine, tables=tables)

    def drop_all(self) -> None:
        from . import models  # noqa: F401

        Base.metadata.drop_all(bind=self.engine)

    def create_session(self) -> Session:
        """Return a new session for background tasks or scripts."""
        return self.session_factory()

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None


__all__ = ["Base", "Database"]

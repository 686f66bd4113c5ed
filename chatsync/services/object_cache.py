"""Versioned, per-collection cache of structured entities (posts, profiles, ...).

Rows are stamped with ``stored_at`` on every write and filtered by age on read.
Lapsed rows stay in storage until overwritten or cleared; there is no
background compaction.
"""
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..clock import Clock, to_millis, utcnow
from ..config import get_settings
from ..database import Database
from ..models import CacheCollection, CachedObject
from ..schemas.cache import COLLECTION_NAMES, CachePayload, CacheCollectionName, cache_payload_adapter
from .errors import ValidationError

logger = logging.getLogger(__name__)


class ObjectCache:
    def __init__(
        self,
        database: Database,
        *,
        max_age_seconds: int | None = None,
        version: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self._database = database
        self._max_age_ms = (settings.object_cache_max_age_seconds if max_age_seconds is None else max_age_seconds) * 1000
        self._version = settings.object_cache_version if version is None else version
        self._clock = clock
        self._ready = False

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    def init(self) -> None:
        """Open the store, creating one record per collection. Safe to call repeatedly."""

        if self._ready:
            return
        self._database.init(tables=[CacheCollection.__table__, CachedObject.__table__])
        now_ms = self._now_ms()
        with self._database.session() as session:
            known = {row.name: row for row in session.scalars(select(CacheCollection)).all()}
            for name in COLLECTION_NAMES:
                record = known.get(name)
                if record is None:
                    session.add(CacheCollection(name=name, version=self._version, opened_at_ms=now_ms))
                    continue
                if record.version < self._version:
                    logger.info(
                        "Upgrading object cache collection %s from v%d to v%d", name, record.version, self._version
                    )
                    session.execute(delete(CachedObject).where(CachedObject.collection == name))
                    record.version = self._version
                record.opened_at_ms = now_ms
            session.commit()
        self._ready = True

    def dispose(self) -> None:
        self._ready = False
        self._database.dispose()

    def _collection(self, collection: str) -> str:
        try:
            return CacheCollectionName(collection).value
        except ValueError as exc:
            raise ValidationError(f"Unknown cache collection: {collection}") from exc

    def _validate(self, collection: str, value: Any) -> CachePayload:
        data = value.model_dump(mode="json") if hasattr(value, "model_dump") else dict(value)
        data.setdefault("kind", collection)
        if data["kind"] != collection:
            raise ValidationError(f"Payload of kind {data['kind']!r} cannot be stored in {collection!r}")
        try:
            return cache_payload_adapter.validate_python(data)
        except SchemaValidationError as exc:
            raise ValidationError(f"Invalid {collection} payload") from exc

    def _decode(self, row: CachedObject) -> CachePayload | None:
        try:
            payload = cache_payload_adapter.validate_python(json.loads(row.payload))
        except (ValueError, SchemaValidationError):
            logger.warning("Ignoring unreadable cache row %s/%s", row.collection, row.key)
            return None
        if payload.kind != row.collection:
            return None
        return payload

    def set(self, collection: str, key: str, value: Any) -> CachePayload:
        """Validate and store ``value``; a later write to the same key replaces it."""

        name = self._collection(collection)
        payload = self._validate(name, value)
        self.init()
        row = CachedObject(
            collection=name,
            key=key,
            payload=json.dumps(payload.model_dump(mode="json")),
            stored_at_ms=self._now_ms(),
        )
        try:
            with self._database.session() as session:
                session.merge(row)
                session.commit()
        except SQLAlchemyError:
            logger.exception("Object cache write failed for %s/%s", name, key)
        return payload

    def get(self, collection: str, key: str) -> CachePayload | None:
        name = self._collection(collection)
        self.init()
        try:
            with self._database.session() as session:
                row = session.get(CachedObject, (name, key))
        except SQLAlchemyError:
            logger.exception("Object cache read failed for %s/%s", name, key)
            return None
        if row is None or self._now_ms() - row.stored_at_ms >= self._max_age_ms:
            return None
        return self._decode(row)

    def get_all(self, collection: str) -> List[CachePayload]:
        name = self._collection(collection)
        self.init()
        cutoff = self._now_ms() - self._max_age_ms
        try:
            with self._database.session() as session:
                rows = session.scalars(
                    select(CachedObject)
                    .where(CachedObject.collection == name, CachedObject.stored_at_ms > cutoff)
                    .order_by(CachedObject.stored_at_ms.desc())
                ).all()
        except SQLAlchemyError:
            logger.exception("Object cache scan failed for %s", name)
            return []
        payloads = (self._decode(row) for row in rows)
        return [payload for payload in payloads if payload is not None]

    def delete(self, collection: str, key: str) -> None:
        name = self._collection(collection)
        self.init()
        try:
            with self._database.session() as session:
                session.execute(delete(CachedObject).where(CachedObject.collection == name, CachedObject.key == key))
                session.commit()
        except SQLAlchemyError:
            logger.exception("Object cache delete failed for %s/%s", name, key)

    def clear(self, collection: str) -> None:
        name = self._collection(collection)
        self.init()
        try:
            with self._database.session() as session:
                session.execute(delete(CachedObject).where(CachedObject.collection == name))
                session.commit()
        except SQLAlchemyError:
            logger.exception("Object cache clear failed for %s", name)

    def clear_all(self) -> None:
        for name in COLLECTION_NAMES:
            self.clear(name)


__all__ = ["ObjectCache"]

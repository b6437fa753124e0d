from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, NamedTuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..models.cached_lookup import CachedLookup, CacheKind

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)


class CacheKey(NamedTuple):
    kind: CacheKind
    lookup_key: str
    marketplace: str
    variant: str = ""

    @classmethod
    def search(cls, keyword: str, marketplace: str) -> "CacheKey":
        return cls(CacheKind.SEARCH, keyword, marketplace)

    @classmethod
    def product(cls, asin: str, marketplace: str) -> "CacheKey":
        return cls(CacheKind.PRODUCT, asin, marketplace)

    @classmethod
    def reviews(cls, asin: str, marketplace: str, sort: str) -> "CacheKey":
        return cls(CacheKind.REVIEWS, asin, marketplace, sort)

    @classmethod
    def qna(cls, asin: str, marketplace: str) -> "CacheKey":
        return cls(CacheKind.QNA, asin, marketplace)


class CacheLayer:
    """
    TTL-gated read-through store for paid external-API responses.

    - ``get`` only returns a payload whose ``updated_at`` is newer than
      ``now - ttl``; anything older behaves exactly like a miss.
    - ``put`` is an upsert on the natural key; callers write through it as
      soon as a fetch succeeds, before using the result.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = ttl
        self._clock = clock

    def _find(self, db: Session, key: CacheKey) -> CachedLookup | None:
        return (
            db.query(CachedLookup)
            .filter(
                CachedLookup.kind == key.kind,
                CachedLookup.lookup_key == key.lookup_key,
                CachedLookup.marketplace == key.marketplace,
                CachedLookup.variant == key.variant,
            )
            .first()
        )

    def get(self, key: CacheKey, ttl: timedelta | None = None) -> Any | None:
        threshold = self._clock() - (ttl if ttl is not None else self.ttl)
        db = self._session_factory()
        try:
            row = (
                db.query(CachedLookup.payload)
                .filter(
                    CachedLookup.kind == key.kind,
                    CachedLookup.lookup_key == key.lookup_key,
                    CachedLookup.marketplace == key.marketplace,
                    CachedLookup.variant == key.variant,
                    CachedLookup.updated_at > threshold,
                )
                .first()
            )
        finally:
            db.close()

        if row is None:
            return None
        logger.debug(
            "Cache hit for %s:%s",
            key.kind.value,
            key.lookup_key,
            extra={"step": "cache_hit"},
        )
        return row[0]

    def put(self, key: CacheKey, payload: Any, fetched_by: str | None = None) -> None:
        now = self._clock()
        db = self._session_factory()
        try:
            entry = self._find(db, key)
            if entry is None:
                db.add(
                    CachedLookup(
                        kind=key.kind,
                        lookup_key=key.lookup_key,
                        marketplace=key.marketplace,
                        variant=key.variant,
                        payload=payload,
                        fetched_by=fetched_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
                try:
                    db.commit()
                    return
                except IntegrityError:
                    # Another writer inserted the same natural key first
                    db.rollback()
                    entry = self._find(db, key)
                    if entry is None:
                        raise

            entry.payload = payload
            entry.fetched_by = fetched_by
            entry.updated_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum, UniqueConstraint
from datetime import datetime
import enum

from ..core.db import Base


class CacheKind(str, enum.Enum):
    SEARCH = "search"    # keyword + marketplace
    PRODUCT = "product"  # asin + marketplace
    REVIEWS = "reviews"  # asin + marketplace + sort
    QNA = "qna"          # asin + marketplace


class CachedLookup(Base):
    """
    Snapshot of one external-API response, addressed by its natural key.

    Rows are upserted (last writer wins) and never versioned.
    """

    __tablename__ = "cached_lookups"
    __table_args__ = (
        UniqueConstraint(
            "kind", "lookup_key", "marketplace", "variant",
            name="uq_cached_lookups_natural_key",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Enum(CacheKind), nullable=False)
    lookup_key = Column(String, nullable=False)      # keyword or asin
    marketplace = Column(String, nullable=False)
    variant = Column(String, nullable=False, default="")  # review sort order, "" otherwise
    payload = Column(JSON, nullable=False)
    fetched_by = Column(String, nullable=True)       # who triggered the paid call
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

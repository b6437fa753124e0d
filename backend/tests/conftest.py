import os

# Settings are read at import time; tests never touch these services.
os.environ.setdefault("DATABASE_URL", "sqlite:///market_intel_test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.db import Base
from app.models.cached_lookup import CachedLookup  # noqa: F401
from app.models.market_intel_job import MarketIntelJob  # noqa: F401


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()

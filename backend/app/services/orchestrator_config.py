from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable

from ..core.config import Settings, get_settings


@dataclass(frozen=True)
class OrchestratorConfig:
    """
    Timing and policy knobs for collection and analysis.

    ``sleep`` and ``clock`` are injectable so tests can drive the polling
    loop without waiting on real time.
    """

    cache_ttl: timedelta = timedelta(hours=168)
    item_timeout: float = 65.0
    call_delay: float = 2.0
    keyword_delay: float = 3.0
    review_stagger: float = 3.0
    review_poll_interval: float = 15.0
    review_max_wait: float = 3600.0
    review_success_threshold: float = 0.75
    review_sort: str = "recent"
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)
    clock: Callable[[], float] = field(default=time.monotonic, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OrchestratorConfig":
        s = settings or get_settings()
        return cls(
            cache_ttl=timedelta(hours=s.MI_CACHE_TTL_HOURS),
            item_timeout=s.MI_ITEM_TIMEOUT_SECONDS,
            call_delay=s.MI_CALL_DELAY_SECONDS,
            keyword_delay=s.MI_KEYWORD_DELAY_SECONDS,
            review_stagger=s.MI_REVIEW_STAGGER_SECONDS,
            review_poll_interval=s.MI_REVIEW_POLL_INTERVAL_SECONDS,
            review_max_wait=s.MI_REVIEW_MAX_WAIT_SECONDS,
            review_success_threshold=s.MI_REVIEW_SUCCESS_THRESHOLD,
            review_sort=s.MI_REVIEW_SORT,
        )

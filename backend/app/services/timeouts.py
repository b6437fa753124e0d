from __future__ import annotations

import asyncio
from typing import Any, Awaitable


class _TimedOut:
    """Sentinel returned by ``race_timeout`` when the timer wins."""

    _instance: "_TimedOut | None" = None

    def __new__(cls) -> "_TimedOut":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "TIMED_OUT"


TIMED_OUT = _TimedOut()


async def race_timeout(awaitable: Awaitable[Any], seconds: float) -> Any:
    """
    Race an external call against a timer.

    Returns the call's result, or TIMED_OUT if ``seconds`` elapse first.
    Exceptions raised by the call propagate unchanged.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        return TIMED_OUT

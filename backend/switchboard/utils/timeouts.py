"""
timeouts.py – race network-bound awaitables against a timer.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from ..errors import ProbeTimeoutError

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    what: str,
    provider: str = "",
) -> T:
    """Await *awaitable*, raising ProbeTimeoutError if it takes longer than *timeout*.

    A timeout of None or <= 0 disables the timer.
    """
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProbeTimeoutError(what, timeout, provider=provider) from exc

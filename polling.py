"""Bounded polling shared by every wait-for-state site."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

Predicate = Callable[[], Union[Any, Awaitable[Any]]]


async def poll_until(predicate: Predicate, interval: float, max_attempts: int) -> Optional[Any]:
    """
    Call predicate until it returns a truthy value or attempts run out.

    Args:
        predicate: Sync or async callable checked once per attempt
        interval: Seconds to sleep between checks
        max_attempts: Number of checks; no sleep follows the last one

    Returns:
        The first truthy value, or None when every check came back falsy
    """
    for attempt in range(1, max_attempts + 1):
        value = predicate()
        if inspect.isawaitable(value):
            value = await value
        if value:
            return value
        if attempt < max_attempts:
            await asyncio.sleep(interval)
    return None

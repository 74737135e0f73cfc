"""
Bounded concurrency for registry work.
"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class BoundedPool:
    """Run coroutines with at most ``max_concurrent`` in flight.

    ``map`` keeps input order. The first failure cancels the remaining tasks
    and is re-raised once they have all finished, so no task outlives the
    call.
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = None  # Lazy-load to avoid event loop issues

    @property
    def semaphore(self) -> asyncio.Semaphore:
        """Lazy-load semaphore to avoid event loop issues."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    async def run(self, func: Callable[[T], Awaitable[R]], item: T) -> R:
        async with self.semaphore:
            return await func(item)

    async def map(self, func: Callable[[T], Awaitable[R]], items: Iterable[T]) -> List[R]:
        """
        Apply ``func`` to every item concurrently.

        Args:
            func: Coroutine function called once per item
            items: Inputs

        Returns:
            List[R]: Results in input order

        Raises:
            Exception: The first exception raised by any call
        """
        tasks = [asyncio.ensure_future(self.run(func, item)) for item in items]
        if not tasks:
            return []

        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

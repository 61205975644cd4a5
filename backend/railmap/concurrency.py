from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")


async def run_with_concurrency(
    items: Iterable[T],
    concurrency: int,
    handler: Callable[[T], Awaitable[None]],
) -> None:
    """Drain ``items`` with ``concurrency`` workers sharing one queue.

    Each worker yields to the event loop after every item.
    """
    queue: deque[T] = deque(items)
    worker_count = max(1, int(concurrency))

    async def worker() -> None:
        while queue:
            item = queue.popleft()
            await handler(item)
            await asyncio.sleep(0)

    await asyncio.gather(*(worker() for _ in range(worker_count)))

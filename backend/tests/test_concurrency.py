from __future__ import annotations

import asyncio

import pytest

from railmap.concurrency import run_with_concurrency


def _run_pool(items: list[int], concurrency: int) -> tuple[list[int], int]:
    processed: list[int] = []
    in_flight = 0
    peak = 0

    async def handler(item: int) -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        processed.append(item)
        in_flight -= 1

    asyncio.run(run_with_concurrency(items, concurrency, handler))
    return processed, peak


@pytest.mark.parametrize("concurrency", [1, 2, 4])
def test_pool_caps_in_flight_handlers_and_drains_all_items(concurrency: int) -> None:
    processed, peak = _run_pool(list(range(10)), concurrency)
    assert peak == concurrency
    assert sorted(processed) == list(range(10))


@pytest.mark.parametrize("concurrency", [0, -3])
def test_pool_clamps_non_positive_concurrency_to_one(concurrency: int) -> None:
    processed, peak = _run_pool(list(range(5)), concurrency)
    assert peak == 1
    assert processed == list(range(5))


def test_pool_with_more_workers_than_items() -> None:
    processed, peak = _run_pool([1, 2], 8)
    assert peak == 2
    assert sorted(processed) == [1, 2]
    assert _run_pool([], 3) == ([], 0)


def test_workers_yield_between_items() -> None:
    order: list[str] = []
    pending: list[asyncio.Task[None]] = []

    async def tick() -> None:
        order.append("tick")

    async def handler(item: str) -> None:
        order.append(item)
        if item == "a":
            pending.append(asyncio.create_task(tick()))

    async def main() -> None:
        await run_with_concurrency(["a", "b", "c"], 1, handler)
        await asyncio.gather(*pending)

    asyncio.run(main())
    assert order == ["a", "tick", "b", "c"]

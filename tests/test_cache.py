import asyncio

import pytest

from storesync.common.cache import SingleFlightCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_load() -> None:
    cache: SingleFlightCache[int] = SingleFlightCache(ttl_seconds=60)
    release = asyncio.Event()

    async def loader() -> int:
        await release.wait()
        return 42

    waiters = [asyncio.create_task(cache.get_or_load("k", loader)) for _ in range(5)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*waiters)

    assert results == [42] * 5
    assert cache.loads == 1
    assert cache.peek("k") == 42


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache: SingleFlightCache[str] = SingleFlightCache(ttl_seconds=10, clock=clock)
    values = iter(["first", "second"])

    async def loader() -> str:
        return next(values)

    assert await cache.get_or_load("k", loader) == "first"
    clock.now += 5
    assert await cache.get_or_load("k", loader) == "first"
    clock.now += 10
    assert cache.peek("k") is None
    assert await cache.get_or_load("k", loader) == "second"
    assert cache.loads == 2


@pytest.mark.asyncio
async def test_failed_load_is_not_cached_and_is_shared() -> None:
    cache: SingleFlightCache[int] = SingleFlightCache()
    release = asyncio.Event()
    attempts = {"count": 0}

    async def failing() -> int:
        attempts["count"] += 1
        await release.wait()
        raise RuntimeError("source down")

    waiters = [asyncio.create_task(cache.get_or_load("k", failing)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert attempts["count"] == 1
    assert all(isinstance(result, RuntimeError) for result in results)
    assert len(cache) == 0

    async def working() -> int:
        return 7

    assert await cache.get_or_load("k", working) == 7


@pytest.mark.asyncio
async def test_oldest_entry_is_evicted_when_full() -> None:
    clock = FakeClock()
    cache: SingleFlightCache[str] = SingleFlightCache(ttl_seconds=100, max_entries=2, clock=clock)

    for key in ("a", "b", "c"):
        async def loader(key: str = key) -> str:
            return key.upper()

        await cache.get_or_load(key, loader)
        clock.now += 1

    assert len(cache) == 2
    assert cache.peek("a") is None
    assert cache.peek("c") == "C"

    cache.invalidate("c")
    assert cache.peek("c") is None
    cache.invalidate()
    assert len(cache) == 0

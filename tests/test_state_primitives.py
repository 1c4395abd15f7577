"""Tests for the reader/writer lock and the TTL cache."""

from __future__ import annotations

import asyncio

import pytest

from cogs.state.cache import TTLCache
from cogs.state.locks import ReadWriteLock

from tests.mocks import Clock


@pytest.mark.asyncio
async def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def reader() -> None:
        async with lock.read():
            if lock.readers == 2:
                inside.set()
            await release.wait()

    tasks = [asyncio.create_task(reader()) for _ in range(2)]
    await asyncio.wait_for(inside.wait(), 1.0)
    assert lock.readers == 2
    release.set()
    await asyncio.gather(*tasks)
    assert lock.readers == 0


@pytest.mark.asyncio
async def test_writer_excludes_readers_and_is_preferred() -> None:
    lock = ReadWriteLock()
    order: list[str] = []

    await lock.acquire_read()
    writer = asyncio.create_task(lock.acquire_write())
    await asyncio.sleep(0)
    # A queued writer blocks newcomers even though only a reader holds the lock.
    late_reader = asyncio.create_task(lock.acquire_read())
    await asyncio.sleep(0)
    assert not writer.done()
    assert not late_reader.done()

    await lock.release_read()
    await asyncio.wait_for(writer, 1.0)
    order.append("writer")
    assert lock.write_locked
    assert not late_reader.done()

    await lock.release_write()
    await asyncio.wait_for(late_reader, 1.0)
    order.append("reader")
    assert order == ["writer", "reader"]
    await lock.release_read()


@pytest.mark.asyncio
async def test_cancelled_writer_unblocks_readers() -> None:
    lock = ReadWriteLock()
    await lock.acquire_read()
    writer = asyncio.create_task(lock.acquire_write())
    await asyncio.sleep(0)
    reader = asyncio.create_task(lock.acquire_read())
    await asyncio.sleep(0)

    writer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await writer
    await asyncio.wait_for(reader, 1.0)
    assert lock.readers == 2
    assert not lock.write_locked


def test_cache_expires_lazily() -> None:
    clock = Clock()
    cache: TTLCache[str, str] = TTLCache(10.0, clock=clock)
    cache.set("abc", "alice@example.com")

    clock.advance(9.9)
    assert cache.get("abc") == "alice@example.com"

    clock.advance(0.1)
    assert len(cache) == 1
    assert cache.get("abc") is None
    assert len(cache) == 0


def test_cache_refresh_and_disabled_ttl() -> None:
    clock = Clock()
    cache: TTLCache[str, int] = TTLCache(5.0, clock=clock)
    cache.set("a", 1)
    clock.advance(3)
    cache.set("a", 2)
    clock.advance(3)

    assert cache.get("a") == 2
    clock.advance(2)
    assert cache.get("a") is None

    disabled: TTLCache[str, int] = TTLCache(0, clock=clock)
    disabled.set("a", 1)
    assert disabled.get("a") is None

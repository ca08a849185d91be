"""Unit tests for in-flight request deduplication."""

from __future__ import annotations

import asyncio

import pytest

from comborank.services.rankings.resilience import InFlightRegistry


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_call() -> None:
    registry = InFlightRegistry()
    release = asyncio.Event()
    calls = {"count": 0}

    async def _fetch() -> int:
        calls["count"] += 1
        await release.wait()
        return 245

    waiters = [asyncio.create_task(registry.run("123:sleep sounds:us:ios", _fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    assert len(registry) == 1

    release.set()
    results = await asyncio.gather(*waiters)
    await asyncio.sleep(0)

    assert calls["count"] == 1
    assert [value for value, _ in results] == [245, 245, 245]
    assert [joined for _, joined in results] == [False, True, True]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_failure_is_shared_and_entry_removed() -> None:
    registry = InFlightRegistry()
    release = asyncio.Event()

    async def _fetch() -> int:
        await release.wait()
        raise RuntimeError("upstream exploded")

    waiters = [asyncio.create_task(registry.run("key", _fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)
    await asyncio.sleep(0)

    assert all(isinstance(result, RuntimeError) for result in results)
    assert "key" not in registry


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_work() -> None:
    registry = InFlightRegistry()
    release = asyncio.Event()
    completed = asyncio.Event()

    async def _fetch() -> str:
        await release.wait()
        completed.set()
        return "stored"

    caller = asyncio.create_task(registry.run("key", _fetch))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    assert "key" in registry
    release.set()
    await asyncio.wait_for(completed.wait(), timeout=1.0)
    for _ in range(3):
        await asyncio.sleep(0)

    assert "key" not in registry


@pytest.mark.asyncio
async def test_distinct_keys_run_independently() -> None:
    registry = InFlightRegistry()

    async def _value(value: str) -> str:
        return value

    first, second = await asyncio.gather(
        registry.run("a", lambda: _value("a")),
        registry.run("b", lambda: _value("b")),
    )

    assert first == ("a", False)
    assert second == ("b", False)


@pytest.mark.asyncio
async def test_waiters_are_counted_per_key() -> None:
    registry = InFlightRegistry()
    release = asyncio.Event()

    async def _fetch() -> int:
        await release.wait()
        return 7

    first = asyncio.create_task(registry.run("key", _fetch))
    second = asyncio.create_task(registry.run("key", _fetch))
    await asyncio.sleep(0)
    assert registry.waiters("key") == 2

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    assert registry.waiters("key") == 1

    release.set()
    assert await second == (7, True)
    assert registry.waiters("key") == 0


@pytest.mark.asyncio
async def test_lookup_without_callers_is_abandoned_and_key_freed() -> None:
    registry = InFlightRegistry()
    token = asyncio.Event()
    dispatched = {"count": 0}

    async def _fetch() -> str:
        await token.wait()
        registry.ensure_awaited("key")
        dispatched["count"] += 1
        return "fetched"

    caller = asyncio.create_task(registry.run("key", _fetch))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    token.set()
    for _ in range(3):
        await asyncio.sleep(0)

    assert dispatched["count"] == 0
    assert "key" not in registry
    assert await registry.run("key", _fetch) == ("fetched", False)
    assert dispatched["count"] == 1

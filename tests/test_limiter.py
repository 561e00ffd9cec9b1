"""Tests for the concurrency limiter."""

from __future__ import annotations

import asyncio

import pytest

from batchgen_service.limiter import ConcurrencyLimiter


@pytest.mark.asyncio
async def test_never_exceeds_limit():
    limiter = ConcurrencyLimiter(3)
    active = 0
    seen = 0

    async def work():
        nonlocal active, seen
        async with limiter.slot():
            active += 1
            seen = max(seen, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(work() for _ in range(12)))
    assert seen == 3
    assert limiter.peak == 3
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_acquire_waits_for_release():
    limiter = ConcurrencyLimiter(1)
    permit = await limiter.acquire()
    waiter = asyncio.ensure_future(limiter.acquire())
    await asyncio.sleep(0)
    assert not waiter.done()

    limiter.release(permit)
    second = await asyncio.wait_for(waiter, timeout=1)
    assert limiter.in_flight == 1
    limiter.release(second)


@pytest.mark.asyncio
async def test_double_release_is_rejected():
    limiter = ConcurrencyLimiter(2)
    permit = await limiter.acquire()
    limiter.release(permit)
    with pytest.raises(RuntimeError):
        limiter.release(permit)


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(0)

"""
Concurrency limiter for outstanding generation backend calls.

Wraps an `asyncio.Semaphore` and keeps simple in-flight/peak counters so
callers (and tests) can observe the effective parallelism.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5

_permit_ids = itertools.count(1)


@dataclass
class Permit:
    id: int = field(default_factory=lambda: next(_permit_ids))
    released: bool = False


class ConcurrencyLimiter:
    """Hands out at most `limit` permits at a time; waiters suspend until one frees up."""

    def __init__(self, limit: int = DEFAULT_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak = 0

    async def acquire(self) -> Permit:
        await self._semaphore.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        return Permit()

    def release(self, permit: Permit) -> None:
        if permit.released:
            raise RuntimeError(f"Permit {permit.id} was already released")
        permit.released = True
        self.in_flight -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[Permit]:
        permit = await self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)

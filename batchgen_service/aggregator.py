"""
Running counters and result list for one batch run.

The aggregator is the only writer of the counters. `record` takes an
`asyncio.Lock` so concurrently settling jobs never lose an update, and an
optional `on_recorded` callback runs inside that same critical section so
events carrying `current` are emitted in counter order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .events import BatchFinished, ResultRecord
from .generation import JobOutcome, Ok
from .jobs import Job

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CounterSnapshot:
    completed: int
    succeeded: int
    failed: int
    total: int


class ResultAggregator:
    def __init__(self) -> None:
        self.state = RunState.IDLE
        self.total = 0
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self.results: List[ResultRecord] = []
        self._lock = asyncio.Lock()

    def start(self, total: int) -> None:
        if self.state is not RunState.IDLE:
            raise RuntimeError(f"Cannot start a run in state {self.state.value}")
        self.total = total
        self.state = RunState.RUNNING

    async def record(
        self,
        job: Job,
        outcome: JobOutcome,
        on_recorded: Optional[Callable[[CounterSnapshot], None]] = None,
    ) -> CounterSnapshot:
        if self.state is not RunState.RUNNING:
            raise RuntimeError(f"Cannot record outcomes in state {self.state.value}")

        async with self._lock:
            self.completed += 1
            if isinstance(outcome, Ok):
                self.succeeded += 1
                self.results.append(
                    ResultRecord(
                        template_id=job.id,
                        template_name=job.display_name,
                        image_url=outcome.output_url,
                        prompt=job.prompt,
                        model=job.model,
                        saved=outcome.persisted,
                        image_record_id=outcome.record_id,
                    )
                )
            else:
                self.failed += 1
            snapshot = self.snapshot()
            if on_recorded is not None:
                on_recorded(snapshot)
        return snapshot

    def snapshot(self) -> CounterSnapshot:
        return CounterSnapshot(
            completed=self.completed,
            succeeded=self.succeeded,
            failed=self.failed,
            total=self.total,
        )

    def finish(self) -> BatchFinished:
        if self.state is not RunState.RUNNING:
            raise RuntimeError(f"Cannot finish a run in state {self.state.value}")
        if self.completed != self.total:
            raise RuntimeError(
                f"Run finished with {self.completed}/{self.total} jobs settled"
            )
        self.state = RunState.COMPLETE
        logger.info(
            "Batch complete: %d/%d succeeded, %d failed", self.succeeded, self.total, self.failed
        )
        return BatchFinished(
            completed=self.completed,
            succeeded=self.succeeded,
            failed=self.failed,
            results=tuple(self.results),
        )

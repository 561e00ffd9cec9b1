"""
Batch orchestration.

`BatchOrchestrator.run` drives one batch end to end:
normalized jobs -> one task per job behind the concurrency limiter ->
invoke -> persist (on success) -> per-job event -> aggregator update.
It waits for every job to settle before emitting the terminal event and
closing the stream. A failure inside one job is converted into that job's
error event and never reaches its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional, Set

from .aggregator import CounterSnapshot, ResultAggregator
from .events import (
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_GENERATING,
    BatchFinished,
    BatchStarted,
    JobProgress,
    NdjsonEmitter,
)
from .generation import (
    UNKNOWN_ERROR_MESSAGE,
    EmptyInput,
    Failed,
    GenerationInvoker,
    JobOutcome,
    Ok,
    outcome_error_message,
)
from .jobs import BatchRun, Job
from .limiter import DEFAULT_LIMIT, ConcurrencyLimiter
from .persistence import PersistContext, PersistenceSidecar

logger = logging.getLogger(__name__)

BACKEND_UNAVAILABLE_MESSAGE = "Missing REPLICATE_API_TOKEN environment variable."
PERSISTENCE_FAILED_MESSAGE = "Failed to save image."

POLICY_DEGRADE = "degrade"
POLICY_FAIL = "fail"

# Runs outlive the response that started them; keep them referenced.
_running_batches: Set["asyncio.Task[BatchFinished]"] = set()


def _settled_event(job: Job, outcome: JobOutcome, snapshot: CounterSnapshot) -> JobProgress:
    if isinstance(outcome, Ok):
        return JobProgress(
            job_id=job.id,
            display_name=job.display_name,
            index=job.index,
            status=STATUS_DONE,
            current=snapshot.completed,
            total=snapshot.total,
            output_url=outcome.output_url,
        )
    return JobProgress(
        job_id=job.id,
        display_name=job.display_name,
        index=job.index,
        status=STATUS_ERROR,
        current=snapshot.completed,
        total=snapshot.total,
        error=outcome_error_message(outcome),
        http_status=outcome.http_status if isinstance(outcome, Failed) else None,
    )


class BatchOrchestrator:
    def __init__(
        self,
        invoker: GenerationInvoker,
        *,
        limiter: Optional[ConcurrencyLimiter] = None,
        sidecar: Optional[PersistenceSidecar] = None,
        persist_context: Optional[PersistContext] = None,
        preserve_order: bool = True,
        backend_available: bool = True,
        persistence_policy: str = POLICY_DEGRADE,
        rng: Optional[random.Random] = None,
    ) -> None:
        if persistence_policy not in (POLICY_DEGRADE, POLICY_FAIL):
            raise ValueError(f"Unknown persistence policy: {persistence_policy}")
        self.invoker = invoker
        self.limiter = limiter or ConcurrencyLimiter(DEFAULT_LIMIT)
        self.sidecar = sidecar
        self.persist_context = persist_context
        self.preserve_order = preserve_order
        self.backend_available = backend_available
        self.persistence_policy = persistence_policy
        self.rng = rng

    async def run(self, batch: BatchRun, emitter: NdjsonEmitter) -> BatchFinished:
        aggregator = ResultAggregator()
        aggregator.start(batch.total)
        try:
            emitter.emit(BatchStarted(total=batch.total))

            if not self.backend_available:
                logger.warning("Generation backend unavailable; failing %d jobs", batch.total)
                await self._fail_all(batch, aggregator, emitter)
            else:
                jobs = batch.ordered(self.preserve_order, self.rng)
                settled = await asyncio.gather(
                    *(
                        self._run_job(job, position, aggregator, emitter)
                        for position, job in enumerate(jobs, start=1)
                    ),
                    return_exceptions=True,
                )
                for error in settled:
                    if isinstance(error, BaseException):
                        logger.error("Job task escaped its boundary: %r", error)

            finished = aggregator.finish()
            emitter.emit(finished)
            logger.info(
                "Batch %s finished total=%d succeeded=%d failed=%d peak_concurrency=%d",
                batch.batch_id,
                batch.total,
                finished.succeeded,
                finished.failed,
                self.limiter.peak,
            )
            return finished
        finally:
            emitter.close()

    def start_detached(self, batch: BatchRun, emitter: NdjsonEmitter) -> "asyncio.Task[BatchFinished]":
        """
        Run the batch as its own task, independent of whoever reads the stream.

        A client that disconnects stops receiving lines, but jobs already
        dispatched still finish and persist.
        """
        task = asyncio.get_running_loop().create_task(self.run(batch, emitter))
        _running_batches.add(task)
        task.add_done_callback(_running_batches.discard)
        return task

    async def _fail_all(self, batch: BatchRun, aggregator: ResultAggregator, emitter: NdjsonEmitter) -> None:
        outcome = Failed(message=BACKEND_UNAVAILABLE_MESSAGE, http_status=401)
        for job in batch.jobs:
            await aggregator.record(
                job,
                outcome,
                on_recorded=lambda snapshot, job=job: emitter.emit(_settled_event(job, outcome, snapshot)),
            )

    async def _run_job(
        self,
        job: Job,
        position: int,
        aggregator: ResultAggregator,
        emitter: NdjsonEmitter,
    ) -> None:
        async with self.limiter.slot():
            emitter.emit(
                JobProgress(
                    job_id=job.id,
                    display_name=job.display_name,
                    index=job.index,
                    status=STATUS_GENERATING,
                    current=position,
                    total=aggregator.total,
                )
            )
            outcome = await self._settle(job)
            await aggregator.record(
                job,
                outcome,
                on_recorded=lambda snapshot: emitter.emit(_settled_event(job, outcome, snapshot)),
            )

    async def _settle(self, job: Job) -> JobOutcome:
        if not job.has_prompt:
            return EmptyInput()
        try:
            outcome = await self.invoker.invoke(job)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Generation failed for template=%s", job.id)
            return Failed(message=str(exc) or UNKNOWN_ERROR_MESSAGE)

        if isinstance(outcome, Ok):
            logger.info("Generated template=%s url=%s", job.id, outcome.output_url)
            if self.sidecar is not None and self.persist_context is not None:
                return await self._persist(job, outcome)
        else:
            logger.warning("Template %s failed: %s", job.id, outcome_error_message(outcome))
        return outcome

    async def _persist(self, job: Job, outcome: Ok) -> JobOutcome:
        try:
            return await self.sidecar.persist(job, outcome, self.persist_context)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to save template=%s", job.id)
            if self.persistence_policy == POLICY_FAIL:
                return Failed(message=PERSISTENCE_FAILED_MESSAGE)
            return outcome

"""
Queue Backends Module
=====================

Every stage has its own queue. Two backends implement the same
enqueue interface:

- ArqQueueBackend: Redis-backed arq queues, one per stage, consumed by
  the per-stage worker processes defined in jobs.py.
- InMemoryQueueBackend: asyncio queues drained in-process by a pool of
  worker tasks per stage, used by local runs and tests.

Both deduplicate on a deterministic job id derived from the session and
the payload's job key, so re-emitting the same work is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from arq.connections import ArqRedis

from catalog_sync.core.enums import STAGE_ORDER, Stage
from catalog_sync.core.schema import JobPayload
from catalog_sync.ingestion.registry import DEFAULT_STAGE_POLICIES, StagePolicy

if TYPE_CHECKING:
    from catalog_sync.ingestion.runner import PipelineRunner

logger = logging.getLogger(__name__)


def queue_name(stage: Stage) -> str:
    """Name of the arq queue consumed by a stage's workers."""
    return f"catalog_sync:{stage.value}"


def function_name(stage: Stage) -> str:
    """Name of the arq task function that runs a stage's jobs."""
    return f"run_{stage.value}_job"


def job_id_for(payload: JobPayload) -> str:
    """Deterministic job id used for deduplication."""
    return f"{payload.session_id or 'adhoc'}:{payload.job_key()}"


class QueueBackend(Protocol):
    """Accepts jobs for a stage."""

    async def enqueue(self, stage: Stage, payload: JobPayload) -> bool:
        """Enqueue a job; returns False when an identical job already exists."""
        ...


class ArqQueueBackend:
    """Enqueues stage jobs onto per-stage arq queues."""

    def __init__(self, redis: ArqRedis) -> None:
        self.redis = redis

    async def enqueue(self, stage: Stage, payload: JobPayload) -> bool:
        job = await self.redis.enqueue_job(
            function_name(stage),
            payload.model_dump(mode="json"),
            _job_id=job_id_for(payload),
            _queue_name=queue_name(stage),
        )
        if job is None:
            logger.debug(f"Duplicate {stage.value} job ignored: {payload.job_key()}")
            return False
        return True


class InMemoryQueueBackend:
    """
    In-process stage queues with a worker pool per stage.

    Jobs are retried by re-queueing them after the delay the runner asks
    for. run_until_idle() returns once no job is queued, running or
    waiting for a retry.
    """

    def __init__(self, policies: dict[Stage, StagePolicy] | None = None) -> None:
        self.policies = policies or dict(DEFAULT_STAGE_POLICIES)
        self._queues: dict[Stage, asyncio.Queue[tuple[dict[str, Any], int]]] = {
            stage: asyncio.Queue() for stage in STAGE_ORDER
        }
        self._seen: set[str] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._retries: set[asyncio.Task[None]] = set()
        self.enqueued: dict[Stage, int] = {stage: 0 for stage in STAGE_ORDER}

    async def enqueue(self, stage: Stage, payload: JobPayload) -> bool:
        job_id = job_id_for(payload)
        if job_id in self._seen:
            logger.debug(f"Duplicate {stage.value} job ignored: {payload.job_key()}")
            return False
        self._seen.add(job_id)
        self.enqueued[stage] += 1
        self._outstanding += 1
        self._idle.clear()
        self._queues[stage].put_nowait((payload.model_dump(mode="json"), 1))
        return True

    @property
    def outstanding(self) -> int:
        return self._outstanding

    def _done(self) -> None:
        self._outstanding -= 1
        if self._outstanding == 0:
            self._idle.set()

    async def _retry_later(self, stage: Stage, data: dict[str, Any], attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queues[stage].put_nowait((data, attempt))

    async def _worker(self, stage: Stage, runner: PipelineRunner) -> None:
        queue = self._queues[stage]
        while True:
            data, attempt = await queue.get()
            try:
                outcome = await runner.execute(stage, data, attempt)
                if outcome.retry_in is not None:
                    self._outstanding += 1
                    task = asyncio.create_task(
                        self._retry_later(stage, data, attempt + 1, outcome.retry_in)
                    )
                    self._retries.add(task)
                    task.add_done_callback(self._retries.discard)
            except Exception:
                logger.exception(f"Unhandled error in {stage.value} worker")
            finally:
                queue.task_done()
                self._done()

    async def run_until_idle(self, runner: PipelineRunner) -> None:
        """Drain every stage queue with the configured per-stage concurrency."""
        workers = [
            asyncio.create_task(self._worker(stage, runner))
            for stage in STAGE_ORDER
            for _ in range(max(self.policies.get(stage, StagePolicy()).concurrency, 1))
        ]
        try:
            await self._idle.wait()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

"""
Pipeline Runner Module
======================

Supervises every stage job regardless of which queue backend delivered it.

For each job the runner:
1. Applies the stage's rate limit and timeout
2. Runs the stage handler
3. Classifies the outcome (success, skip, retry, failure, abort)
4. Enqueues next-stage jobs, then raises the downstream total, then
   accounts the job in its own stage (this order keeps a stage from
   looking complete while its upstream still has work in flight)
5. Re-evaluates stage gating for the session
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from catalog_sync.core.enums import SessionStatus, Stage
from catalog_sync.core.errors import ConsistencySkip, FatalSyncError, ItemValidationError, TransientError
from catalog_sync.core.schema import PAYLOAD_TYPES, DiffJob, JobPayload, parse_payload
from catalog_sync.ingestion.client import TokenBucket
from catalog_sync.ingestion.gating import ActionKind, next_actions
from catalog_sync.ingestion.locks import SyncLock
from catalog_sync.ingestion.queues import QueueBackend
from catalog_sync.ingestion.registry import DEFAULT_STAGE_POLICIES, StagePolicy, SupplierRegistry, get_default_registry
from catalog_sync.ingestion.session_tracker import SessionTracker
from catalog_sync.ingestion.workers import HANDLERS, PipelineContext, StageResult, fallback_jobs

logger = logging.getLogger(__name__)

STAGE_OF_PAYLOAD: dict[type[JobPayload], Stage] = {cls: stage for stage, cls in PAYLOAD_TYPES.items()}


def stage_of(payload: JobPayload) -> Stage:
    """Stage that consumes a payload type."""
    return STAGE_OF_PAYLOAD[type(payload)]


class OutcomeKind(str, Enum):
    """How a job ended."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    RETRY = "retry"
    FAILED = "failed"
    ABORTED = "aborted"
    STOPPED = "stopped"
    DISCARDED = "discarded"


@dataclass
class JobOutcome:
    """Result of supervising one job."""

    kind: OutcomeKind
    stage: Stage
    job_key: str | None = None
    retry_in: float | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "stage": self.stage.value,
            "job_key": self.job_key,
            "retry_in": self.retry_in,
            "error": self.error,
            "details": self.details,
        }


class PipelineRunner:
    """Executes stage jobs and keeps the session's counters and gating in step."""

    def __init__(
        self,
        context: PipelineContext,
        queue: QueueBackend,
        policies: dict[Stage, StagePolicy] | None = None,
    ) -> None:
        self.context = context
        self.queue = queue
        self.policies = policies or dict(DEFAULT_STAGE_POLICIES)
        self._limiters: dict[Stage, TokenBucket] = {}
        for stage, policy in self.policies.items():
            if policy.rate_limit_max:
                self._limiters[stage] = TokenBucket(
                    requests_per_second=policy.rate_limit_max / policy.rate_limit_window,
                    burst_limit=policy.rate_limit_max,
                )

    @property
    def tracker(self) -> SessionTracker:
        return self.context.tracker

    def policy(self, stage: Stage) -> StagePolicy:
        return self.policies.get(stage) or DEFAULT_STAGE_POLICIES[stage]

    async def execute(self, stage: Stage, data: dict[str, Any], attempt: int = 1) -> JobOutcome:
        """
        Run one job of a stage.

        Never raises for job-level problems: every outcome is reflected in
        the session counters and error log. A RETRY outcome carries the
        delay the caller should wait before redelivering the job.

        Args:
            stage: Stage the job belongs to
            data: Serialized job payload
            attempt: 1-based delivery attempt

        Returns:
            JobOutcome
        """
        try:
            payload = parse_payload(stage, data)
        except ValidationError as e:
            logger.error(f"Invalid {stage.value} payload: {e}")
            return JobOutcome(OutcomeKind.FAILED, stage, error=str(e))

        session_id = payload.session_id
        job_key = payload.job_key()
        if session_id is not None and not self._session_running(session_id):
            logger.info(f"Discarding {job_key}: session {session_id} is no longer running")
            return JobOutcome(OutcomeKind.DISCARDED, stage, job_key=job_key)

        policy = self.policy(stage)
        limiter = self._limiters.get(stage)
        if limiter is not None:
            await limiter.acquire()
        if session_id is not None:
            self.tracker.start_stage(session_id, stage)

        try:
            result = await asyncio.wait_for(HANDLERS[stage](self.context, payload), timeout=policy.timeout)
            await self._dispatch(session_id, result.next_jobs)
        except ConsistencySkip as e:
            logger.warning(f"Skipping {job_key}: {e}")
            result = StageResult(skipped=1, details={"reason": str(e)})
        except FatalSyncError as e:
            logger.error(f"Fatal error in {job_key}: {e}")
            await self._abort(session_id, stage, str(e), e.context)
            return JobOutcome(OutcomeKind.ABORTED, stage, job_key=job_key, error=str(e))
        except ItemValidationError as e:
            await self._fail(stage, payload, e)
            return JobOutcome(OutcomeKind.FAILED, stage, job_key=job_key, error=str(e))
        except Exception as e:
            if not isinstance(e, (TransientError, asyncio.TimeoutError)):
                logger.exception(f"Unexpected error in {job_key}")
            if attempt < policy.attempts:
                delay = policy.retry_delay(attempt)
                logger.warning(
                    f"{job_key} attempt {attempt}/{policy.attempts} failed: {e!r}; retrying in {delay:.1f}s"
                )
                return JobOutcome(OutcomeKind.RETRY, stage, job_key=job_key, retry_in=delay, error=str(e))
            await self._fail(stage, payload, e)
            return JobOutcome(OutcomeKind.FAILED, stage, job_key=job_key, error=str(e))

        return await self._record(stage, payload, result)

    # =========================================================================
    # Outcome Handling
    # =========================================================================

    def _session_running(self, session_id: str) -> bool:
        snapshot = self.tracker.snapshot(session_id, include_errors=False)
        return snapshot is not None and snapshot.status == SessionStatus.RUNNING

    async def _dispatch(self, session_id: str | None, jobs: list[JobPayload]) -> None:
        """
        Enqueue next-stage jobs, raising the downstream total after each one.

        A job the queue reports as a duplicate was counted by the attempt
        that enqueued it, so a retry after a partial dispatch neither loses
        nor double-counts totals.
        """
        if not jobs:
            return
        added: Counter[Stage] = Counter()
        for job in jobs:
            target = stage_of(job)
            if not await self.queue.enqueue(target, job):
                continue
            added[target] += 1
            if session_id is not None:
                self.tracker.increment_counter(session_id, target, "total")
        if session_id is not None:
            for target, count in added.items():
                logger.debug(f"Session {session_id}: enqueued {count} {target.value} job(s)")

    async def _record(self, stage: Stage, payload: JobPayload, result: StageResult) -> JobOutcome:
        session_id = payload.session_id
        job_key = payload.job_key()
        kind = OutcomeKind.SKIPPED if result.skipped and result.skipped >= result.units else OutcomeKind.SUCCEEDED
        if session_id is None:
            return JobOutcome(kind, stage, job_key=job_key, details=result.details)

        tracker = self.tracker
        for name, amount in result.session_counters.items():
            if amount:
                tracker.increment_session_counter(session_id, name, amount)
        if result.hash_efficiency is not None:
            tracker.set_hash_efficiency(session_id, result.hash_efficiency)
        for message in result.errors:
            tracker.add_error(session_id, message, stage=stage, context={"job": job_key})

        if result.stopped:
            await self._stop(session_id)
            return JobOutcome(OutcomeKind.STOPPED, stage, job_key=job_key)

        if result.own_total:
            tracker.increment_counter(session_id, stage, "total", result.own_total)
        if result.units:
            tracker.increment_counter(session_id, stage, "processed", result.units)
        if result.skipped:
            tracker.increment_counter(session_id, stage, "skipped", result.skipped)

        if stage == Stage.DIFF:
            logger.info(
                f"Session {session_id}: diff evaluated {result.own_total} families, "
                f"{result.details.get('needs_sync', 0)} to sync "
                f"({result.hash_efficiency or 0.0:.1f}% unchanged)"
            )
            if result.own_total == 0:
                tracker.skip_stage(session_id, Stage.DIFF)

        await self.advance(session_id)
        return JobOutcome(kind, stage, job_key=job_key, details=result.details)

    async def _fail(self, stage: Stage, payload: JobPayload, error: Exception) -> None:
        """Account a unit that failed for good and emit any work still owed downstream."""
        session_id = payload.session_id
        job_key = payload.job_key()
        logger.error(f"{job_key} failed: {error}")
        if session_id is None:
            return

        context: dict[str, Any] = {"job": job_key}
        context.update(getattr(error, "context", None) or {})
        await self._dispatch(session_id, fallback_jobs(stage, payload))
        self.tracker.add_error(session_id, f"{job_key}: {error}", stage=stage, context=context)
        self.tracker.increment_counter(session_id, stage, "failed")

        if stage == Stage.DIFF:
            await self._abort(session_id, stage, f"Diff stage failed: {error}")
            return
        await self.advance(session_id)

    async def _abort(
        self,
        session_id: str | None,
        stage: Stage,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Fail the stage and the whole session, then free the supplier."""
        if session_id is None:
            return
        self.tracker.add_error(session_id, message, stage=stage, context=context)
        self.tracker.fail_stage(session_id, stage)
        if self.tracker.fail_session(session_id, message):
            logger.error(f"Session {session_id} failed: {message}")
            await self._release(session_id)

    async def _stop(self, session_id: str) -> None:
        if self.tracker.stop_session(session_id):
            logger.info(f"Session {session_id} stopped on request")
            await self._release(session_id)

    async def _release(self, session_id: str) -> None:
        snapshot = self.tracker.snapshot(session_id, include_errors=False)
        if snapshot is not None:
            await self.context.locks.release(snapshot.supplier_code, session_id)

    async def advance(self, session_id: str) -> None:
        """Apply every stage transition that is currently due."""
        snapshot = self.tracker.snapshot(session_id, include_errors=False)
        if snapshot is None:
            return
        for action in next_actions(snapshot):
            if action.kind == ActionKind.START_STAGE:
                self.tracker.start_stage(session_id, action.stage)
            elif action.kind == ActionKind.COMPLETE_STAGE:
                self.tracker.complete_stage(session_id, action.stage)
            elif action.kind == ActionKind.SKIP_STAGE:
                self.tracker.skip_stage(session_id, action.stage)
            elif action.kind == ActionKind.COMPLETE_SESSION:
                if self.tracker.complete_session(session_id):
                    logger.info(f"Session {session_id} completed for supplier {snapshot.supplier_code}")
                    await self.context.locks.release(snapshot.supplier_code, session_id)


# ============================================================================
# Orchestration
# ============================================================================


@dataclass
class SyncStartResult:
    """Outcome of asking for a supplier sync."""

    supplier_code: str
    started: bool
    session_id: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "supplier_code": self.supplier_code,
            "started": self.started,
            "session_id": self.session_id,
            "message": self.message,
        }


async def start_supplier_sync(
    tracker: SessionTracker,
    locks: SyncLock,
    queue: QueueBackend,
    supplier_code: str,
    manual: bool = False,
    registry: SupplierRegistry | None = None,
) -> SyncStartResult:
    """
    Start a sync for one supplier.

    Acquires the supplier lock, creates the session and enqueues the diff
    job. If another run holds the lock this is a no-op and the result
    names the running session.

    Args:
        tracker: Session tracker
        locks: Supplier lock
        queue: Queue backend that receives the diff job
        supplier_code: Supplier to sync
        manual: Operator-triggered run (allowed for disabled suppliers)
        registry: Supplier registry (defaults to the global one)

    Returns:
        SyncStartResult
    """
    registry = registry or get_default_registry()
    supplier = registry.get_supplier(supplier_code)
    if supplier is None:
        return SyncStartResult(supplier_code, started=False, message=f"Supplier '{supplier_code}' not found")
    if not supplier.enabled and not manual:
        return SyncStartResult(supplier.code, started=False, message=f"Supplier '{supplier.code}' is disabled")

    lock = await locks.acquire(supplier.code)
    if lock is None:
        info = await locks.get_lock_info(supplier.code)
        logger.info(f"Sync already running for supplier {supplier.code}")
        return SyncStartResult(
            supplier.code,
            started=False,
            session_id=info.session_id if info else None,
            message="A sync is already running for this supplier",
        )

    session_id: str | None = None
    try:
        session_id = tracker.create_session(supplier.code, manual=manual)
        await locks.attach_session(supplier.code, session_id)
        await queue.enqueue(Stage.DIFF, DiffJob(session_id=session_id, supplier_code=supplier.code, manual=manual))
    except Exception as e:
        logger.exception(f"Failed to start sync for supplier {supplier.code}")
        if session_id is not None:
            tracker.fail_session(session_id, f"Failed to start: {e}")
        await locks.release(supplier.code, session_id)
        raise

    logger.info(f"Started session {session_id} for supplier {supplier.code}")
    return SyncStartResult(supplier.code, started=True, session_id=session_id, message="Sync started")


async def start_scheduled_syncs(
    tracker: SessionTracker,
    locks: SyncLock,
    queue: QueueBackend,
    registry: SupplierRegistry | None = None,
) -> list[SyncStartResult]:
    """
    Start a scheduled (non-manual) sync for every enabled supplier.

    A supplier that cannot be started is reported in its result and does
    not keep the remaining suppliers from being queued.

    Returns:
        One SyncStartResult per enabled supplier
    """
    registry = registry or get_default_registry()
    suppliers = registry.list_enabled_suppliers()
    logger.info(f"Starting scheduled sync for {len(suppliers)} enabled supplier(s)")

    results: list[SyncStartResult] = []
    for supplier in suppliers:
        try:
            result = await start_supplier_sync(tracker, locks, queue, supplier.code, manual=False, registry=registry)
        except Exception as e:
            logger.error(f"Failed to queue scheduled sync for supplier {supplier.code}: {e}")
            result = SyncStartResult(supplier.code, started=False, message=f"Failed to start: {e}")
        results.append(result)

    queued = sum(1 for r in results if r.started)
    logger.info(f"Scheduled sync queued {queued}/{len(suppliers)} supplier(s)")
    return results

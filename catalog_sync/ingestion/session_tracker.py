"""
Session Tracker Module
======================

One record per sync run with five stage records. All counters shared by
concurrent workers change only through single-statement atomic updates
(UPDATE ... SET f = f + n ... RETURNING f); status transitions are
conditional updates so concurrent callers agree on exactly one winner.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from catalog_sync.core.enums import STAGE_ORDER, SessionStatus, Stage, StageStatus
from catalog_sync.core.schema import (
    SessionError,
    SessionSnapshot,
    StageCompletion,
    StageSnapshot,
)
from catalog_sync.db.models import SyncErrorDB, SyncSessionDB, SyncStageDB

logger = logging.getLogger(__name__)

MAX_ERROR_ENTRIES = 100

STAGE_COUNTERS = ("total", "processed", "failed", "skipped")
SESSION_COUNTERS = (
    "products_found",
    "families_found",
    "families_skipped",
    "families_to_sync",
    "families_created",
    "families_updated",
    "items_dropped",
    "variants_failed",
    "assets_uploaded",
    "assets_deduplicated",
)

_OPEN_STAGE = (StageStatus.PENDING.value, StageStatus.RUNNING.value)
_OPEN_SESSION = (SessionStatus.PENDING.value, SessionStatus.RUNNING.value)


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _naive(value: datetime) -> datetime:
    return value.astimezone(UTC).replace(tzinfo=None) if value.tzinfo else value


def generate_session_id(supplier_code: str) -> str:
    """Session id of the form sess_{epoch_ms}_{supplier}_{random}."""
    return f"sess_{int(time.time() * 1000)}_{supplier_code}_{secrets.token_hex(3)}"


class SessionTracker:
    """
    Tracks sync sessions and their stage counters.

    Every method opens its own short transaction, so one tracker can be
    shared by many concurrent workers.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_errors: int = MAX_ERROR_ENTRIES,
    ) -> None:
        self.session_factory = session_factory
        self.max_errors = max_errors

    # =========================================================================
    # Session Lifecycle
    # =========================================================================

    def create_session(self, supplier_code: str, manual: bool = False) -> str:
        """
        Create a running session with its five pending stage records.

        Returns:
            The new session id
        """
        session_id = generate_session_id(supplier_code)
        with self.session_factory() as db:
            record = SyncSessionDB(
                session_id=session_id,
                supplier_code=supplier_code,
                status=SessionStatus.RUNNING.value,
                manual=manual,
                started_at=_utc_now(),
            )
            record.stages = [SyncStageDB(stage=stage.value) for stage in STAGE_ORDER]
            db.add(record)
            db.commit()
        logger.info(f"Created sync session {session_id} for supplier {supplier_code}")
        return session_id

    def _finish_session(self, session_id: str, status: SessionStatus, error: str | None = None) -> bool:
        with self.session_factory() as db:
            started_at = db.execute(
                select(SyncSessionDB.started_at).where(SyncSessionDB.session_id == session_id)
            ).scalar_one_or_none()
            now = _utc_now()
            values: dict[str, Any] = {"status": status.value, "completed_at": now}
            if started_at is not None:
                values["duration_seconds"] = (_naive(now) - _naive(started_at)).total_seconds()
            if error is not None:
                values["last_error"] = error
            result = db.execute(
                update(SyncSessionDB)
                .where(
                    SyncSessionDB.session_id == session_id,
                    SyncSessionDB.status.in_(_OPEN_SESSION),
                )
                .values(**values)
            )
            db.commit()
            changed = result.rowcount > 0
        if changed:
            logger.info(
                f"Session {session_id} {status.value}"
                + (f" in {values['duration_seconds']:.1f}s" if "duration_seconds" in values else "")
            )
        return changed

    def complete_session(self, session_id: str) -> bool:
        """
        Mark a session completed and record its duration.

        Only the final stage's completion handler calls this.

        Returns:
            True if this call performed the transition
        """
        return self._finish_session(session_id, SessionStatus.COMPLETED)

    def fail_session(self, session_id: str, error: str) -> bool:
        """Abort a session. Returns True if this call performed the transition."""
        return self._finish_session(session_id, SessionStatus.FAILED, error)

    def stop_session(self, session_id: str) -> bool:
        """Mark a session stopped by user request."""
        return self._finish_session(session_id, SessionStatus.STOPPED)

    # =========================================================================
    # Counters
    # =========================================================================

    def increment_counter(self, session_id: str, stage: Stage, field: str, amount: int = 1) -> int:
        """
        Atomically add to a stage counter.

        Args:
            session_id: Session id
            stage: Stage whose record is updated
            field: One of total, processed, failed, skipped
            amount: Value to add

        Returns:
            The counter value after the increment
        """
        if field not in STAGE_COUNTERS:
            raise ValueError(f"Unknown stage counter: {field}")
        column = getattr(SyncStageDB, field)
        with self.session_factory() as db:
            value = db.execute(
                update(SyncStageDB)
                .where(SyncStageDB.session_id == session_id, SyncStageDB.stage == stage.value)
                .values({column: column + amount})
                .returning(column)
            ).scalar_one_or_none()
            db.commit()
        if value is None:
            raise ValueError(f"No {stage.value} stage for session {session_id}")
        return value

    def increment_session_counter(self, session_id: str, field: str, amount: int = 1) -> int:
        """Atomically add to a session-level counter."""
        if field not in SESSION_COUNTERS:
            raise ValueError(f"Unknown session counter: {field}")
        column = getattr(SyncSessionDB, field)
        with self.session_factory() as db:
            value = db.execute(
                update(SyncSessionDB)
                .where(SyncSessionDB.session_id == session_id)
                .values({column: column + amount})
                .returning(column)
            ).scalar_one_or_none()
            db.commit()
        if value is None:
            raise ValueError(f"Session {session_id} not found")
        return value

    def set_hash_efficiency(self, session_id: str, efficiency: float) -> None:
        """Record the diff efficiency of the run."""
        with self.session_factory() as db:
            db.execute(
                update(SyncSessionDB)
                .where(SyncSessionDB.session_id == session_id)
                .values(hash_efficiency=efficiency)
            )
            db.commit()

    # =========================================================================
    # Stage Transitions
    # =========================================================================

    def _transition_stage(
        self,
        session_id: str,
        stage: Stage,
        to_status: StageStatus,
        from_statuses: tuple[str, ...],
        **values: Any,
    ) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(SyncStageDB)
                .where(
                    SyncStageDB.session_id == session_id,
                    SyncStageDB.stage == stage.value,
                    SyncStageDB.status.in_(from_statuses),
                )
                .values(status=to_status.value, **values)
            )
            db.commit()
            return result.rowcount > 0

    def start_stage(self, session_id: str, stage: Stage) -> bool:
        """Move a pending stage to running."""
        return self._transition_stage(
            session_id, stage, StageStatus.RUNNING, (StageStatus.PENDING.value,), started_at=_utc_now()
        )

    def complete_stage(self, session_id: str, stage: Stage) -> bool:
        """Mark a stage completed. Returns True if this call performed the transition."""
        changed = self._transition_stage(
            session_id, stage, StageStatus.COMPLETED, _OPEN_STAGE, completed_at=_utc_now()
        )
        if changed:
            logger.info(f"Session {session_id}: stage {stage.value} completed")
        return changed

    def skip_stage(self, session_id: str, stage: Stage) -> bool:
        """Mark a stage skipped because it received no work."""
        changed = self._transition_stage(
            session_id, stage, StageStatus.SKIPPED, _OPEN_STAGE, completed_at=_utc_now()
        )
        if changed:
            logger.info(f"Session {session_id}: stage {stage.value} skipped (no work)")
        return changed

    def fail_stage(self, session_id: str, stage: Stage, error: str | None = None) -> bool:
        """Mark a stage failed, optionally logging the error."""
        changed = self._transition_stage(
            session_id, stage, StageStatus.FAILED, _OPEN_STAGE, completed_at=_utc_now()
        )
        if error:
            self.add_error(session_id, error, stage=stage)
        return changed

    # =========================================================================
    # Queries
    # =========================================================================

    def is_stage_complete(self, session_id: str, stage: Stage) -> StageCompletion:
        """
        Check whether every unit of a stage is accounted for.

        Complete iff total > 0 and processed + failed >= total.
        """
        with self.session_factory() as db:
            row = db.execute(
                select(SyncStageDB.total, SyncStageDB.processed, SyncStageDB.failed).where(
                    SyncStageDB.session_id == session_id, SyncStageDB.stage == stage.value
                )
            ).one_or_none()
        if row is None:
            return StageCompletion(complete=False)
        return StageCompletion(
            complete=row.total > 0 and row.processed + row.failed >= row.total,
            processed=row.processed,
            total=row.total,
            failed=row.failed,
        )

    def snapshot(self, session_id: str, include_errors: bool = True) -> SessionSnapshot | None:
        """Read a consistent view of a session and its stages."""
        with self.session_factory() as db:
            record = db.get(SyncSessionDB, session_id)
            if record is None:
                return None
            return self._to_snapshot(db, record, include_errors)

    def list_sessions(self, supplier_code: str | None = None, limit: int = 20) -> list[SessionSnapshot]:
        """List the most recent sessions, newest first."""
        with self.session_factory() as db:
            stmt = select(SyncSessionDB).order_by(SyncSessionDB.created_at.desc()).limit(limit)
            if supplier_code:
                stmt = stmt.where(SyncSessionDB.supplier_code == supplier_code)
            records = db.execute(stmt).scalars().all()
            return [self._to_snapshot(db, r, include_errors=False) for r in records]

    def get_active_session(self, supplier_code: str) -> SessionSnapshot | None:
        """The most recent running session of a supplier, if any."""
        with self.session_factory() as db:
            record = db.execute(
                select(SyncSessionDB)
                .where(
                    SyncSessionDB.supplier_code == supplier_code,
                    SyncSessionDB.status.in_(_OPEN_SESSION),
                )
                .order_by(SyncSessionDB.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._to_snapshot(db, record, include_errors=False) if record else None

    def _to_snapshot(self, db: Session, record: SyncSessionDB, include_errors: bool) -> SessionSnapshot:
        stages = {
            Stage(s.stage): StageSnapshot(
                stage=Stage(s.stage),
                status=StageStatus(s.status),
                total=s.total,
                processed=s.processed,
                failed=s.failed,
                skipped=s.skipped,
                started_at=s.started_at,
                completed_at=s.completed_at,
            )
            for s in db.execute(
                select(SyncStageDB).where(SyncStageDB.session_id == record.session_id)
            ).scalars()
        }
        stages = {stage: stages[stage] for stage in STAGE_ORDER if stage in stages}
        errors = self.get_errors(record.session_id, db=db) if include_errors else []
        return SessionSnapshot(
            session_id=record.session_id,
            supplier_code=record.supplier_code,
            status=SessionStatus(record.status),
            manual=record.manual,
            stages=stages,
            counters={name: getattr(record, name) or 0 for name in SESSION_COUNTERS},
            hash_efficiency=record.hash_efficiency,
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_seconds=record.duration_seconds,
            error_count=record.error_count,
            last_error=record.last_error,
            errors=errors,
        )

    # =========================================================================
    # Error Log
    # =========================================================================

    def add_error(
        self,
        session_id: str,
        message: str,
        stage: Stage | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """
        Append to the session error log, keeping only the newest entries.

        Inserts never conflict with each other; pruning deletes everything
        older than the newest max_errors rows.
        """
        with self.session_factory() as db:
            db.add(
                SyncErrorDB(
                    session_id=session_id,
                    stage=stage.value if stage else None,
                    message=message,
                    context_json=json.dumps(context or {}, default=str),
                )
            )
            db.flush()
            db.execute(
                update(SyncSessionDB)
                .where(SyncSessionDB.session_id == session_id)
                .values(error_count=SyncSessionDB.error_count + 1, last_error=message)
            )
            keep = (
                select(SyncErrorDB.id)
                .where(SyncErrorDB.session_id == session_id)
                .order_by(SyncErrorDB.id.desc())
                .limit(self.max_errors)
            )
            db.execute(
                delete(SyncErrorDB).where(
                    SyncErrorDB.session_id == session_id,
                    SyncErrorDB.id.not_in(keep),
                )
            )
            db.commit()

    def get_errors(self, session_id: str, db: Session | None = None) -> list[SessionError]:
        """Error log entries, oldest first."""
        stmt = select(SyncErrorDB).where(SyncErrorDB.session_id == session_id).order_by(SyncErrorDB.id)
        if db is None:
            with self.session_factory() as own:
                rows = own.execute(stmt).scalars().all()
                return [self._to_error(r) for r in rows]
        return [self._to_error(r) for r in db.execute(stmt).scalars().all()]

    @staticmethod
    def _to_error(row: SyncErrorDB) -> SessionError:
        return SessionError(
            timestamp=row.created_at,
            stage=Stage(row.stage) if row.stage else None,
            message=row.message,
            context=json.loads(row.context_json or "{}"),
        )

    def count_errors(self, session_id: str) -> int:
        """Entries currently retained in the error log."""
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(SyncErrorDB).where(SyncErrorDB.session_id == session_id)
            ).scalar() or 0

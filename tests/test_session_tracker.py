"""Tests for sync session tracking."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from catalog_sync.core.enums import SessionStatus, Stage, StageStatus
from catalog_sync.ingestion.session_tracker import SessionTracker, generate_session_id


@pytest.fixture
def tracker(session_factory) -> SessionTracker:
    return SessionTracker(session_factory, max_errors=5)


class TestSessionLifecycle:
    """Tests for session creation and terminal transitions."""

    def test_session_id_format(self) -> None:
        """Test sess_{epoch_ms}_{supplier}_{random} ids."""
        parts = generate_session_id("A113").split("_")
        assert parts[0] == "sess"
        assert parts[1].isdigit()
        assert parts[2] == "A113"
        assert len(parts[3]) == 6

    def test_create_session(self, tracker: SessionTracker) -> None:
        """Test that a new session is running with five pending stages."""
        session_id = tracker.create_session("A113", manual=True)
        snapshot = tracker.snapshot(session_id)

        assert snapshot is not None
        assert snapshot.status == SessionStatus.RUNNING
        assert snapshot.manual is True
        assert snapshot.started_at is not None
        assert [s.value for s in snapshot.stages] == ["diff", "materialize", "assets", "search", "semantic"]
        assert all(s.status == StageStatus.PENDING for s in snapshot.stages.values())

    def test_complete_session_once(self, tracker: SessionTracker) -> None:
        """Test that completion happens exactly once and records duration."""
        session_id = tracker.create_session("A113")
        assert tracker.complete_session(session_id) is True
        assert tracker.complete_session(session_id) is False

        snapshot = tracker.snapshot(session_id)
        assert snapshot.status == SessionStatus.COMPLETED
        assert snapshot.completed_at is not None
        assert snapshot.duration_seconds is not None and snapshot.duration_seconds >= 0

    def test_fail_session(self, tracker: SessionTracker) -> None:
        """Test that a failed session keeps its last error."""
        session_id = tracker.create_session("A113")
        assert tracker.fail_session(session_id, "Manifest unreachable") is True
        snapshot = tracker.snapshot(session_id)
        assert snapshot.status == SessionStatus.FAILED
        assert snapshot.last_error == "Manifest unreachable"

    def test_terminal_session_cannot_be_stopped(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        tracker.complete_session(session_id)
        assert tracker.stop_session(session_id) is False

    def test_get_active_session(self, tracker: SessionTracker) -> None:
        """Test finding the running session of a supplier."""
        assert tracker.get_active_session("A113") is None
        session_id = tracker.create_session("A113")
        active = tracker.get_active_session("A113")
        assert active is not None and active.session_id == session_id

        tracker.stop_session(session_id)
        assert tracker.get_active_session("A113") is None

    def test_list_sessions(self, tracker: SessionTracker) -> None:
        """Test listing filtered by supplier."""
        tracker.create_session("A113")
        tracker.create_session("A58")
        tracker.create_session("A113")
        assert len(tracker.list_sessions()) == 3
        assert len(tracker.list_sessions("A113")) == 2
        assert len(tracker.list_sessions(limit=1)) == 1

    def test_unknown_session(self, tracker: SessionTracker) -> None:
        assert tracker.snapshot("sess_missing") is None


class TestCounters:
    """Tests for atomic counters."""

    def test_increment_counter(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        assert tracker.increment_counter(session_id, Stage.ASSETS, "total", 3) == 3
        assert tracker.increment_counter(session_id, Stage.ASSETS, "processed") == 1
        assert tracker.increment_counter(session_id, Stage.ASSETS, "processed") == 2

        completion = tracker.is_stage_complete(session_id, Stage.ASSETS)
        assert completion.complete is False
        assert completion.processed == 2 and completion.total == 3

        tracker.increment_counter(session_id, Stage.ASSETS, "failed")
        assert tracker.is_stage_complete(session_id, Stage.ASSETS).complete is True

    def test_zero_total_is_never_complete(self, tracker: SessionTracker) -> None:
        """Test that a stage with no registered work is not complete."""
        session_id = tracker.create_session("A113")
        assert tracker.is_stage_complete(session_id, Stage.SEARCH).complete is False

    def test_unknown_counter_rejected(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        with pytest.raises(ValueError):
            tracker.increment_counter(session_id, Stage.DIFF, "bogus")
        with pytest.raises(ValueError):
            tracker.increment_session_counter(session_id, "bogus")

    def test_missing_stage_record(self, tracker: SessionTracker) -> None:
        with pytest.raises(ValueError):
            tracker.increment_counter("sess_missing", Stage.DIFF, "total")

    def test_concurrent_increments(self, tracker: SessionTracker) -> None:
        """Test that concurrent increments are never lost."""
        session_id = tracker.create_session("A113")

        def bump(_: int) -> None:
            tracker.increment_counter(session_id, Stage.MATERIALIZE, "processed")
            tracker.increment_session_counter(session_id, "assets_uploaded")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(bump, range(50)))

        snapshot = tracker.snapshot(session_id)
        assert snapshot.stage(Stage.MATERIALIZE).processed == 50
        assert snapshot.counters["assets_uploaded"] == 50

    def test_hash_efficiency(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        tracker.set_hash_efficiency(session_id, 80.0)
        assert tracker.snapshot(session_id).hash_efficiency == 80.0


class TestStageTransitions:
    """Tests for conditional stage transitions."""

    def test_start_then_complete(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        assert tracker.start_stage(session_id, Stage.DIFF) is True
        assert tracker.start_stage(session_id, Stage.DIFF) is False
        assert tracker.complete_stage(session_id, Stage.DIFF) is True
        assert tracker.complete_stage(session_id, Stage.DIFF) is False

        stage = tracker.snapshot(session_id).stage(Stage.DIFF)
        assert stage.status == StageStatus.COMPLETED
        assert stage.started_at is not None and stage.completed_at is not None

    def test_skip_pending_stage(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        assert tracker.skip_stage(session_id, Stage.ASSETS) is True
        assert tracker.snapshot(session_id).stage(Stage.ASSETS).status == StageStatus.SKIPPED

    def test_fail_stage_logs_error(self, tracker: SessionTracker) -> None:
        session_id = tracker.create_session("A113")
        assert tracker.fail_stage(session_id, Stage.DIFF, "boom") is True
        snapshot = tracker.snapshot(session_id)
        assert snapshot.stage(Stage.DIFF).status == StageStatus.FAILED
        assert snapshot.errors[-1].message == "boom"
        assert snapshot.errors[-1].stage == Stage.DIFF


class TestErrorLog:
    """Tests for the bounded error log."""

    def test_error_log_is_bounded(self, tracker: SessionTracker) -> None:
        """Test that only the newest entries are kept but all are counted."""
        session_id = tracker.create_session("A113")
        for i in range(8):
            tracker.add_error(session_id, f"error {i}", stage=Stage.ASSETS, context={"i": i})

        snapshot = tracker.snapshot(session_id)
        assert snapshot.error_count == 8
        assert snapshot.last_error == "error 7"
        assert [e.message for e in snapshot.errors] == [f"error {i}" for i in range(3, 8)]
        assert snapshot.errors[0].context == {"i": 3}
        assert tracker.count_errors(session_id) == 5

"""Tests for stage gating rules."""

from catalog_sync.core.enums import STAGE_ORDER, SessionStatus, Stage, StageStatus
from catalog_sync.core.schema import SessionSnapshot, StageSnapshot
from catalog_sync.ingestion.gating import Action, ActionKind, next_actions, upstream_of


def make_snapshot(status: SessionStatus = SessionStatus.RUNNING, **stages: tuple) -> SessionSnapshot:
    """Build a snapshot; each stage kwarg is (status, total, processed, failed)."""
    records = {}
    for stage in STAGE_ORDER:
        stage_status, total, processed, failed = stages.get(stage.value, (StageStatus.PENDING, 0, 0, 0))
        records[stage] = StageSnapshot(
            stage=stage, status=stage_status, total=total, processed=processed, failed=failed
        )
    return SessionSnapshot(session_id="sess_1", supplier_code="A113", status=status, stages=records)


class TestUpstream:
    def test_upstream_of(self) -> None:
        assert upstream_of(Stage.DIFF) is None
        assert upstream_of(Stage.MATERIALIZE) == Stage.DIFF
        assert upstream_of(Stage.SEMANTIC) == Stage.SEARCH


class TestNextActions:
    """Tests for next_actions()."""

    def test_fresh_session_has_no_actions(self) -> None:
        """Test that the root stage is never auto-skipped."""
        assert next_actions(make_snapshot()) == []

    def test_inactive_session_has_no_actions(self) -> None:
        snapshot = make_snapshot(SessionStatus.STOPPED, diff=(StageStatus.RUNNING, 10, 10, 0))
        assert next_actions(snapshot) == []

    def test_downstream_waits_for_upstream(self) -> None:
        """Test that a fully processed stage stays open while upstream runs."""
        snapshot = make_snapshot(
            diff=(StageStatus.RUNNING, 10, 9, 0),
            materialize=(StageStatus.RUNNING, 2, 2, 0),
        )
        assert next_actions(snapshot) == []

    def test_pending_stage_with_work_starts(self) -> None:
        snapshot = make_snapshot(
            diff=(StageStatus.RUNNING, 10, 5, 0),
            materialize=(StageStatus.PENDING, 2, 0, 0),
        )
        assert next_actions(snapshot) == [Action(ActionKind.START_STAGE, Stage.MATERIALIZE)]

    def test_completion_counts_failures(self) -> None:
        """Test that processed + failed >= total completes a stage."""
        snapshot = make_snapshot(
            diff=(StageStatus.COMPLETED, 10, 10, 0),
            materialize=(StageStatus.RUNNING, 3, 2, 1),
            assets=(StageStatus.RUNNING, 4, 1, 0),
        )
        assert next_actions(snapshot) == [Action(ActionKind.COMPLETE_STAGE, Stage.MATERIALIZE)]

    def test_cascade_to_session_completion(self) -> None:
        """Test that completion cascades through every finished stage."""
        snapshot = make_snapshot(
            diff=(StageStatus.RUNNING, 10, 10, 0),
            materialize=(StageStatus.RUNNING, 2, 2, 0),
            assets=(StageStatus.RUNNING, 2, 1, 1),
            search=(StageStatus.RUNNING, 2, 2, 0),
            semantic=(StageStatus.RUNNING, 2, 2, 0),
        )
        assert next_actions(snapshot) == [
            Action(ActionKind.COMPLETE_STAGE, Stage.DIFF),
            Action(ActionKind.COMPLETE_STAGE, Stage.MATERIALIZE),
            Action(ActionKind.COMPLETE_STAGE, Stage.ASSETS),
            Action(ActionKind.COMPLETE_STAGE, Stage.SEARCH),
            Action(ActionKind.COMPLETE_STAGE, Stage.SEMANTIC),
            Action(ActionKind.COMPLETE_SESSION),
        ]

    def test_empty_downstream_stages_skip(self) -> None:
        """Test that stages without work are skipped once upstream finishes."""
        snapshot = make_snapshot(diff=(StageStatus.RUNNING, 10, 10, 0))
        assert next_actions(snapshot) == [
            Action(ActionKind.COMPLETE_STAGE, Stage.DIFF),
            Action(ActionKind.SKIP_STAGE, Stage.MATERIALIZE),
            Action(ActionKind.SKIP_STAGE, Stage.ASSETS),
            Action(ActionKind.SKIP_STAGE, Stage.SEARCH),
            Action(ActionKind.SKIP_STAGE, Stage.SEMANTIC),
            Action(ActionKind.COMPLETE_SESSION),
        ]

    def test_assets_skipped_but_search_runs(self) -> None:
        """Test families without images: assets skip, search still completes."""
        snapshot = make_snapshot(
            diff=(StageStatus.COMPLETED, 1, 1, 0),
            materialize=(StageStatus.COMPLETED, 1, 1, 0),
            search=(StageStatus.RUNNING, 1, 1, 0),
            semantic=(StageStatus.RUNNING, 1, 1, 0),
        )
        assert next_actions(snapshot) == [
            Action(ActionKind.SKIP_STAGE, Stage.ASSETS),
            Action(ActionKind.COMPLETE_STAGE, Stage.SEARCH),
            Action(ActionKind.COMPLETE_STAGE, Stage.SEMANTIC),
            Action(ActionKind.COMPLETE_SESSION),
        ]

    def test_failed_upstream_blocks(self) -> None:
        """Test that nothing completes behind a failed stage."""
        snapshot = make_snapshot(
            diff=(StageStatus.FAILED, 0, 0, 1),
            materialize=(StageStatus.PENDING, 0, 0, 0),
        )
        assert next_actions(snapshot) == []

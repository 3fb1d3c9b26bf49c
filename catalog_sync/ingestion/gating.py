"""
Stage Gating Module
===================

Pure transition rules for a session's stages. next_actions() looks at a
snapshot and returns every transition that is due, including cascades
(a completed stage can unblock the next one in the same pass). The caller
applies them with the tracker's conditional updates.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from catalog_sync.core.enums import STAGE_ORDER, SessionStatus, Stage, StageStatus
from catalog_sync.core.schema import SessionSnapshot

FINISHED_OK = (StageStatus.COMPLETED, StageStatus.SKIPPED)
FINAL_STAGE = STAGE_ORDER[-1]


class ActionKind(str, Enum):
    """Transition kinds the supervisor can apply."""

    START_STAGE = "start_stage"
    COMPLETE_STAGE = "complete_stage"
    SKIP_STAGE = "skip_stage"
    COMPLETE_SESSION = "complete_session"


@dataclass(frozen=True)
class Action:
    """One transition to apply."""

    kind: ActionKind
    stage: Stage | None = None


def upstream_of(stage: Stage) -> Stage | None:
    """The stage that must finish before this one may complete."""
    index = STAGE_ORDER.index(stage)
    return STAGE_ORDER[index - 1] if index > 0 else None


def next_actions(snapshot: SessionSnapshot) -> list[Action]:
    """
    Compute the transitions due for a session.

    Rules:
    - Only running sessions transition.
    - A pending stage that has received work starts.
    - A stage completes when its upstream is completed or skipped and
      total > 0 and processed + failed >= total.
    - A non-root stage whose upstream finished without giving it any work
      is skipped.
    - The session completes once the final stage is completed or skipped.
    """
    if snapshot.status != SessionStatus.RUNNING:
        return []

    actions: list[Action] = []
    effective: dict[Stage, StageStatus] = {}

    for index, stage in enumerate(STAGE_ORDER):
        record = snapshot.stage(stage)
        status = record.status
        effective[stage] = status
        if status in (StageStatus.COMPLETED, StageStatus.SKIPPED, StageStatus.FAILED):
            continue

        if status == StageStatus.PENDING and (record.total > 0 or record.accounted > 0):
            actions.append(Action(ActionKind.START_STAGE, stage))

        upstream = upstream_of(stage)
        if upstream is not None and effective[upstream] not in FINISHED_OK:
            continue

        if record.is_complete:
            actions.append(Action(ActionKind.COMPLETE_STAGE, stage))
            effective[stage] = StageStatus.COMPLETED
        elif index > 0 and record.total == 0 and record.accounted == 0:
            actions.append(Action(ActionKind.SKIP_STAGE, stage))
            effective[stage] = StageStatus.SKIPPED

    if effective[FINAL_STAGE] in FINISHED_OK:
        actions.append(Action(ActionKind.COMPLETE_SESSION))
    return actions

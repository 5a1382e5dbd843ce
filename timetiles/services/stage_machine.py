"""
Import job state machine.

The transition table is pure data: given the current stage and the outcome
of running it, `next_stage` returns where the job goes. Services never set
`ImportJob.stage` directly; they go through this table so illegal moves are
rejected in one place.
"""

from __future__ import annotations

from timetiles.schemas.enums import ImportStage, StageOutcome
from timetiles.services.exceptions import InvalidStateTransitionError

# Ordered processing stages (await-approval is a gate, not a work stage)
STAGE_ORDER: list[ImportStage] = [
    ImportStage.ANALYZE_DUPLICATES,
    ImportStage.DETECT_SCHEMA,
    ImportStage.VALIDATE_SCHEMA,
    ImportStage.CREATE_SCHEMA_VERSION,
    ImportStage.GEOCODE_BATCH,
    ImportStage.CREATE_EVENTS,
]

# Relative cost of each stage, used for the overall percentage
STAGE_WEIGHTS: dict[ImportStage, int] = {
    ImportStage.ANALYZE_DUPLICATES: 10,
    ImportStage.DETECT_SCHEMA: 10,
    ImportStage.VALIDATE_SCHEMA: 5,
    ImportStage.CREATE_SCHEMA_VERSION: 5,
    ImportStage.GEOCODE_BATCH: 40,
    ImportStage.CREATE_EVENTS: 30,
}

TERMINAL_STAGES = frozenset({ImportStage.COMPLETED, ImportStage.FAILED})

TRANSITIONS: dict[tuple[ImportStage, StageOutcome], ImportStage] = {
    (ImportStage.ANALYZE_DUPLICATES, StageOutcome.SUCCESS): ImportStage.DETECT_SCHEMA,
    (ImportStage.DETECT_SCHEMA, StageOutcome.SUCCESS): ImportStage.VALIDATE_SCHEMA,
    (ImportStage.VALIDATE_SCHEMA, StageOutcome.SUCCESS): ImportStage.CREATE_SCHEMA_VERSION,
    (ImportStage.VALIDATE_SCHEMA, StageOutcome.NEEDS_APPROVAL): ImportStage.AWAIT_APPROVAL,
    (ImportStage.AWAIT_APPROVAL, StageOutcome.APPROVED): ImportStage.CREATE_SCHEMA_VERSION,
    (ImportStage.AWAIT_APPROVAL, StageOutcome.REJECTED): ImportStage.FAILED,
    (ImportStage.CREATE_SCHEMA_VERSION, StageOutcome.SUCCESS): ImportStage.GEOCODE_BATCH,
    # Lineage moved under a validated job and the new diff needs review
    (ImportStage.CREATE_SCHEMA_VERSION, StageOutcome.NEEDS_APPROVAL): ImportStage.AWAIT_APPROVAL,
    (ImportStage.GEOCODE_BATCH, StageOutcome.SUCCESS): ImportStage.CREATE_EVENTS,
    (ImportStage.CREATE_EVENTS, StageOutcome.SUCCESS): ImportStage.COMPLETED,
}


def next_stage(current: ImportStage | str, outcome: StageOutcome) -> ImportStage:
    """
    Resolve the stage that follows `current` for `outcome`.

    Any non-terminal stage may fail. Terminal stages accept nothing.
    """
    current = ImportStage(current)
    if current in TERMINAL_STAGES:
        raise InvalidStateTransitionError("ImportJob", current, outcome)
    if outcome == StageOutcome.FAILED:
        return ImportStage.FAILED

    target = TRANSITIONS.get((current, outcome))
    if target is None:
        raise InvalidStateTransitionError("ImportJob", current, outcome)
    return target


def is_work_stage(stage: ImportStage | str) -> bool:
    """Stages a worker can execute (not the approval gate, not terminal)."""
    return ImportStage(stage) in STAGE_ORDER


def completed_weight(stage: ImportStage | str) -> int:
    """Percentage of total work finished before `stage` starts."""
    stage = ImportStage(stage)
    if stage == ImportStage.COMPLETED:
        return 100
    if stage == ImportStage.AWAIT_APPROVAL:
        stage = ImportStage.CREATE_SCHEMA_VERSION
    if stage not in STAGE_ORDER:
        return 0
    total = sum(STAGE_WEIGHTS.values())
    done = sum(STAGE_WEIGHTS[s] for s in STAGE_ORDER[: STAGE_ORDER.index(stage)])
    return int(done * 100 / total)

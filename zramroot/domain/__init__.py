"""Domain models for RAM root migration.

Value objects passed between the boot stages, replacing shell-style
globals with explicit, mostly immutable records.
"""

from __future__ import annotations

from .models import (
    MIB,
    ROOT_FILES_UNIT,
    CapacityPlan,
    ContainerKind,
    CopyAttempt,
    CopyReport,
    HandoffRecord,
    JobBin,
    MigrationStage,
    MigrationState,
    OutcomeStatus,
    PlanMode,
    RamDevice,
    ResolvedDevice,
    RootSpec,
    RootSpecKind,
    StageOutcome,
    WorkUnit,
)


__all__ = [
    "MIB",
    "ROOT_FILES_UNIT",
    "CapacityPlan",
    "ContainerKind",
    "CopyAttempt",
    "CopyReport",
    "HandoffRecord",
    "JobBin",
    "MigrationStage",
    "MigrationState",
    "OutcomeStatus",
    "PlanMode",
    "RamDevice",
    "ResolvedDevice",
    "RootSpec",
    "RootSpecKind",
    "StageOutcome",
    "WorkUnit",
]

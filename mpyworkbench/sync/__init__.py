"""Snapshot, diff and sync planning for MicroPython WorkBench.

The orchestrator lives in :mod:`mpyworkbench.sync.engine`; it is not imported
here because it depends on the board client, which depends on these models.
"""

from .comparator import SnapshotComparator, diff
from .models import (
    ActionKind,
    CancellationToken,
    DiffEntry,
    DiffKind,
    DirEntry,
    EqualityPolicy,
    FileResult,
    OperationState,
    Outcome,
    PlanAction,
    Snapshot,
    SyncDirection,
    SyncResult,
)
from .operations import BoardTarget, LocalTarget, SyncTarget
from .plan import SyncPlan, build_plan, plan_baseline, plan_delete_all
from .scanner import LocalScanner, is_ignored

__all__ = [
    "ActionKind",
    "BoardTarget",
    "CancellationToken",
    "DiffEntry",
    "DiffKind",
    "DirEntry",
    "EqualityPolicy",
    "FileResult",
    "LocalScanner",
    "LocalTarget",
    "OperationState",
    "Outcome",
    "PlanAction",
    "Snapshot",
    "SnapshotComparator",
    "SyncDirection",
    "SyncPlan",
    "SyncResult",
    "SyncTarget",
    "build_plan",
    "diff",
    "is_ignored",
    "plan_baseline",
    "plan_delete_all",
]

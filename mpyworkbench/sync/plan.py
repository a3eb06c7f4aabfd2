"""Derivation of ordered sync plans from diffs and snapshots."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from ..utils import parent_paths, path_depth
from .models import ActionKind, DiffEntry, DiffKind, PlanAction, Snapshot

logger = logging.getLogger(__name__)


def _sort_key(action: PlanAction) -> tuple:
    """Mkdirs shallowest first, then writes, file deletes, dir deletes deepest first."""
    depth = path_depth(action.path)
    if action.kind is ActionKind.MKDIR:
        return (0, depth, action.path)
    if action.kind in (ActionKind.WRITE, ActionKind.CONFLICT):
        return (1, 0, action.path)
    if action.kind is ActionKind.DELETE_FILE:
        return (2, 0, action.path)
    return (3, -depth, action.path)


@dataclass
class SyncPlan:
    """Ordered actions applied to one target without re-diffing."""

    actions: list[PlanAction] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.actions = sorted(self.actions, key=_sort_key)

    def __iter__(self) -> Iterator[PlanAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def count(self, kind: ActionKind) -> int:
        return sum(1 for a in self.actions if a.kind is kind)

    @property
    def is_empty(self) -> bool:
        return not self.actions


def _mkdirs_for(paths: Iterable[str], existing: set[str]) -> list[PlanAction]:
    return [
        PlanAction(ActionKind.MKDIR, path)
        for path in sorted(set(paths) - existing)
    ]


def build_plan(diff: list[DiffEntry], include_deletes: bool = False) -> SyncPlan:
    """Turn a diff into the actions that make the target match the source.

    Added and modified entries become writes (files) or mkdirs (directories).
    Removed entries become deletions only when ``include_deletes`` is set.
    Paths that are a file on one side and a directory on the other become
    conflict actions and are never applied.

    Args:
        diff: Result of comparing source against target
        include_deletes: Delete target paths missing from the source

    Returns:
        Ordered SyncPlan
    """
    target_dirs = {d.path for d in diff if d.target is not None and d.target.is_dir}
    dirs: set[str] = set()
    actions: list[PlanAction] = []

    for entry in diff:
        if entry.type_conflict:
            source_kind = "directory" if entry.source.is_dir else "file"
            target_kind = "directory" if entry.target.is_dir else "file"
            actions.append(
                PlanAction(
                    ActionKind.CONFLICT,
                    entry.path,
                    entry.source,
                    reason=f"{source_kind} in source but {target_kind} in target",
                )
            )
        elif entry.kind in (DiffKind.ADDED, DiffKind.MODIFIED):
            if entry.source.is_dir:
                dirs.add(entry.path)
            else:
                actions.append(PlanAction(ActionKind.WRITE, entry.path, entry.source))
            dirs.update(parent_paths(entry.path))
        elif entry.kind is DiffKind.REMOVED and include_deletes:
            if entry.target.is_dir:
                kind = ActionKind.DELETE_DIR
            else:
                kind = ActionKind.DELETE_FILE
            actions.append(PlanAction(kind, entry.path, entry.target))

    actions.extend(_mkdirs_for(dirs, target_dirs))
    plan = SyncPlan(actions)
    logger.debug(
        f"Plan: {plan.count(ActionKind.MKDIR)} mkdir, "
        f"{plan.count(ActionKind.WRITE)} write, "
        f"{plan.count(ActionKind.DELETE_FILE) + plan.count(ActionKind.DELETE_DIR)} "
        f"delete, {plan.count(ActionKind.CONFLICT)} conflict"
    )
    return plan


def plan_baseline(source: Snapshot) -> SyncPlan:
    """Plan a full, non-diffed copy of every entry of ``source``.

    Never deletes anything on the target.
    """
    dirs: set[str] = set()
    actions: list[PlanAction] = []
    for entry in source:
        if entry.is_dir:
            dirs.add(entry.path)
        else:
            actions.append(PlanAction(ActionKind.WRITE, entry.path, entry))
        dirs.update(parent_paths(entry.path))
    actions.extend(_mkdirs_for(dirs, set()))
    return SyncPlan(actions)


def plan_delete_all(target: Snapshot) -> SyncPlan:
    """Plan the deletion of every entry of ``target``, children before parents."""
    return SyncPlan(
        [
            PlanAction(
                ActionKind.DELETE_DIR if entry.is_dir else ActionKind.DELETE_FILE,
                entry.path,
                entry,
            )
            for entry in target
        ]
    )

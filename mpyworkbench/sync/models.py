"""Value objects shared by the snapshot, diff and sync modules."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from ..utils import normalize_path


class EqualityPolicy(str, Enum):
    """How two files at the same path are judged equal."""

    HASH = "hash"
    """SHA-256 of the content, computed on each side"""

    SIZE = "size"
    """Size in bytes only"""


@dataclass(frozen=True)
class DirEntry:
    """One filesystem node, local or on the board."""

    path: str
    """Relative path, forward slashes, no leading slash"""

    is_dir: bool

    size: Optional[int] = None
    """Size in bytes (files only)"""

    hash: Optional[str] = None
    """Hex SHA-256 digest (files only, None if unknown)"""

    mtime: Optional[int] = None

    def __post_init__(self) -> None:
        normalized = normalize_path(self.path)
        if not normalized:
            raise ValueError(f"Entry path must not be empty: {self.path!r}")
        object.__setattr__(self, "path", normalized)
        if self.is_dir and (self.size is not None or self.hash is not None):
            raise ValueError(f"Directory entry {normalized} cannot carry size/hash")


class Snapshot:
    """Mapping of relative path to DirEntry for one root at one time.

    Iteration is always in lexicographic path order.

    Examples:
        >>> snap = Snapshot("local", EqualityPolicy.HASH)
        >>> snap.add(DirEntry("main.py", is_dir=False, size=10, hash="ab"))
        >>> "main.py" in snap
        True
    """

    def __init__(
        self,
        root: str,
        policy: EqualityPolicy,
        entries: Optional[list[DirEntry]] = None,
    ):
        """Initialize snapshot.

        Args:
            root: Label of the root ("local" or "board")
            policy: Equality policy the file entries were built for
            entries: Initial entries

        Raises:
            ValueError: If two entries share a path
        """
        self.root = root
        self.policy = EqualityPolicy(policy)
        self._entries: dict[str, DirEntry] = {}
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: DirEntry) -> None:
        if entry.path in self._entries:
            raise ValueError(f"Duplicate path in {self.root} snapshot: {entry.path}")
        self._entries[entry.path] = entry

    def get(self, path: str) -> Optional[DirEntry]:
        return self._entries.get(normalize_path(path))

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_path(path) in self._entries

    def __iter__(self) -> Iterator[DirEntry]:
        for path in sorted(self._entries):
            yield self._entries[path]

    def __len__(self) -> int:
        return len(self._entries)

    def paths(self) -> list[str]:
        return sorted(self._entries)

    def files(self) -> list[DirEntry]:
        return [e for e in self if not e.is_dir]

    def dirs(self) -> list[DirEntry]:
        return [e for e in self if e.is_dir]

    def __repr__(self) -> str:
        return (
            f"Snapshot(root={self.root!r}, policy={self.policy.value}, "
            f"entries={len(self)})"
        )


class DiffKind(str, Enum):
    """Classification of one path when comparing two snapshots."""

    ADDED = "added"
    """In source, not in target"""

    REMOVED = "removed"
    """In target, not in source"""

    MODIFIED = "modified"
    """In both, content differs (or file on one side, directory on the other)"""

    UNCHANGED = "unchanged"
    """In both and equal"""


@dataclass(frozen=True)
class DiffEntry:
    """Result of comparing one path."""

    path: str
    kind: DiffKind
    source: Optional[DirEntry] = None
    target: Optional[DirEntry] = None

    @property
    def is_dir(self) -> bool:
        entry = self.source or self.target
        return bool(entry and entry.is_dir)

    @property
    def type_conflict(self) -> bool:
        """True if the path is a file on one side and a directory on the other."""
        return (
            self.source is not None
            and self.target is not None
            and self.source.is_dir != self.target.is_dir
        )


class SyncDirection(str, Enum):
    """Which side a sync writes to."""

    LOCAL_TO_BOARD = "local-to-board"
    BOARD_TO_LOCAL = "board-to-local"


class ActionKind(str, Enum):
    """Kinds of plan actions."""

    MKDIR = "mkdir"
    WRITE = "write"
    DELETE_FILE = "delete_file"
    DELETE_DIR = "delete_dir"
    CONFLICT = "conflict"
    """Path that cannot be synced; recorded as a failure"""


@dataclass(frozen=True)
class PlanAction:
    """One step of a sync plan, applied to the target side."""

    kind: ActionKind
    path: str
    entry: Optional[DirEntry] = None
    """Source entry for writes, target entry for deletions"""

    reason: str = ""


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class FileResult:
    """Outcome of one plan action."""

    path: str
    action: ActionKind
    outcome: Outcome
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


class OperationState(str, Enum):
    """Lifecycle of one orchestrated operation.

    idle -> acquiring_link -> executing -> releasing -> done | failed
    """

    IDLE = "idle"
    ACQUIRING_LINK = "acquiring_link"
    EXECUTING = "executing"
    RELEASING = "releasing"
    DONE = "done"
    FAILED = "failed"


# Actions that count as "files synced" in summaries
FILE_ACTIONS = (ActionKind.WRITE, ActionKind.DELETE_FILE, ActionKind.CONFLICT)


@dataclass
class SyncResult:
    """Per-path results of one orchestrated operation."""

    operation: str
    results: list[FileResult] = field(default_factory=list)
    diff: list[DiffEntry] = field(default_factory=list)
    """Diff the plan was derived from (empty for baselines and delete-all)"""

    cancelled: bool = False
    state: OperationState = OperationState.IDLE

    def record(
        self, path: str, action: ActionKind, error: Optional[str] = None
    ) -> FileResult:
        """Append the outcome of one action; ``error`` marks it failed."""
        outcome = Outcome.SUCCESS if error is None else Outcome.FAILED
        result = FileResult(path, action, outcome, error or "")
        self.results.append(result)
        return result

    @property
    def succeeded(self) -> list[FileResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[FileResult]:
        return [r for r in self.results if not r.ok]

    @property
    def success(self) -> bool:
        """True only if every action succeeded and nothing was cancelled."""
        return not self.failed and not self.cancelled

    def summary(self) -> str:
        """One-line summary, e.g. ``2 of 3 files synced, failures: x.py (ENOSPC)``."""
        files = [r for r in self.results if r.action in FILE_ACTIONS]
        done = sum(1 for r in files if r.ok)
        text = f"{done} of {len(files)} files synced"
        if self.failed:
            failures = ", ".join(f"{r.path} ({r.reason})" for r in self.failed)
            text += f", failures: {failures}"
        if self.cancelled:
            text += " (cancelled)"
        return text

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "success": self.success,
            "cancelled": self.cancelled,
            "state": self.state.value,
            "results": [
                {
                    "path": r.path,
                    "action": r.action.value,
                    "outcome": r.outcome.value,
                    "reason": r.reason,
                }
                for r in self.results
            ],
            "diff": [{"path": d.path, "kind": d.kind.value} for d in self.diff],
        }


class CancellationToken:
    """Cooperative cancellation checked between plan actions."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

"""Snapshot comparison."""

from typing import Optional

from .models import DiffEntry, DiffKind, DirEntry, EqualityPolicy, Snapshot


class SnapshotComparator:
    """Classifies every path of two snapshots as added/removed/modified/unchanged."""

    def __init__(self, policy: EqualityPolicy):
        """Initialize comparator.

        Args:
            policy: Equality policy both snapshots must have been built with
        """
        self.policy = EqualityPolicy(policy)

    def files_equal(self, a: DirEntry, b: DirEntry) -> bool:
        """Compare two file entries under the comparator's policy.

        A file without a hash is never equal under the hash policy: equality
        has to be proven, not assumed.
        """
        if self.policy is EqualityPolicy.HASH:
            return a.hash is not None and b.hash is not None and a.hash == b.hash
        return a.size is not None and a.size == b.size

    def classify(
        self, path: str, source: Optional[DirEntry], target: Optional[DirEntry]
    ) -> DiffEntry:
        # Case 1: only in source
        if target is None:
            return DiffEntry(path, DiffKind.ADDED, source, None)

        # Case 2: only in target
        if source is None:
            return DiffEntry(path, DiffKind.REMOVED, None, target)

        # Case 3: file on one side, directory on the other
        if source.is_dir != target.is_dir:
            return DiffEntry(path, DiffKind.MODIFIED, source, target)

        # Case 4: both directories
        if source.is_dir:
            return DiffEntry(path, DiffKind.UNCHANGED, source, target)

        if self.files_equal(source, target):
            return DiffEntry(path, DiffKind.UNCHANGED, source, target)
        return DiffEntry(path, DiffKind.MODIFIED, source, target)

    def compare(self, source: Snapshot, target: Snapshot) -> list[DiffEntry]:
        """Compare two snapshots.

        Args:
            source: Side whose state should be propagated
            target: Side that would receive changes

        Returns:
            One DiffEntry per path present in either snapshot, sorted by path

        Raises:
            ValueError: If the snapshots use a different equality policy
        """
        for snap in (source, target):
            if snap.policy is not self.policy:
                raise ValueError(
                    f"Cannot compare {snap.root} snapshot built with "
                    f"'{snap.policy.value}' equality under '{self.policy.value}'"
                )

        all_paths = set(source.paths()) | set(target.paths())
        return [
            self.classify(path, source.get(path), target.get(path))
            for path in sorted(all_paths)
        ]


def diff(source: Snapshot, target: Snapshot) -> list[DiffEntry]:
    """Diff two snapshots built with the same equality policy.

    Raises:
        ValueError: If the policies differ
    """
    if source.policy is not target.policy:
        raise ValueError(
            f"Snapshots use different equality policies "
            f"({source.policy.value} vs {target.policy.value})"
        )
    return SnapshotComparator(source.policy).compare(source, target)

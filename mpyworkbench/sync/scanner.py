"""Local directory scanning and ignore rules."""

import logging
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, Optional

from ..utils import normalize_path, sha256_file
from .models import DirEntry, EqualityPolicy, Snapshot

logger = logging.getLogger(__name__)


def is_ignored(relative_path: str, patterns: Iterable[str]) -> bool:
    """Check a relative path against fnmatch-style ignore patterns.

    A pattern matches if it matches the whole path or any single segment,
    so ``__pycache__`` also hides everything below such a directory.

    Examples:
        >>> is_ignored("lib/__pycache__/x.pyc", ["__pycache__"])
        True
        >>> is_ignored("lib/util.py", ["*.pyc"])
        False
    """
    path = normalize_path(relative_path)
    segments = path.split("/")
    for pattern in patterns:
        if fnmatchcase(path, pattern):
            return True
        if any(fnmatchcase(segment, pattern) for segment in segments):
            return True
    return False


class LocalScanner:
    """Builds snapshots of a local directory tree.

    Examples:
        >>> scanner = LocalScanner(ignore_patterns=["*.tmp"])
        >>> scanner.ignore_patterns
        ['*.tmp']
        >>> scanner.snapshot(Path("src"), EqualityPolicy.HASH)  # doctest: +SKIP
    """

    def __init__(self, ignore_patterns: Optional[Iterable[str]] = None):
        """Initialize local scanner.

        Args:
            ignore_patterns: fnmatch patterns of paths to leave out
        """
        self.ignore_patterns = list(ignore_patterns or [])

    def entry_for(
        self, path: Path, base_path: Path, policy: EqualityPolicy
    ) -> DirEntry:
        """Create a DirEntry for one local file or directory.

        Args:
            path: Absolute path of the node
            base_path: Root the relative path is computed from
            policy: Equality policy deciding whether the file is hashed

        Returns:
            DirEntry for the node
        """
        relative_path = path.relative_to(base_path).as_posix()
        stat = path.stat()
        if path.is_dir():
            return DirEntry(relative_path, is_dir=True, mtime=int(stat.st_mtime))
        return DirEntry(
            relative_path,
            is_dir=False,
            size=stat.st_size,
            hash=sha256_file(path) if policy is EqualityPolicy.HASH else None,
            mtime=int(stat.st_mtime),
        )

    def snapshot(
        self, root: Path, policy: EqualityPolicy = EqualityPolicy.HASH
    ) -> Snapshot:
        """Recursively snapshot a local directory.

        Args:
            root: Directory mirrored to the board root
            policy: Equality policy for file entries

        Returns:
            Snapshot labelled "local"

        Raises:
            ValueError: If root does not exist or is not a directory
        """
        if not root.exists():
            raise ValueError(f"Local directory does not exist: {root}")
        if not root.is_dir():
            raise ValueError(f"Local path is not a directory: {root}")

        snapshot = Snapshot("local", policy)
        self._scan(root, root, policy, snapshot)
        logger.debug(f"Local snapshot of {root}: {len(snapshot)} entries")
        return snapshot

    def _scan(
        self, directory: Path, base_path: Path, policy: EqualityPolicy, snap: Snapshot
    ) -> None:
        try:
            items = sorted(directory.iterdir())
        except PermissionError:
            logger.warning(f"Skipping unreadable directory {directory}")
            return

        for item in items:
            relative_path = item.relative_to(base_path).as_posix()
            if is_ignored(relative_path, self.ignore_patterns):
                logger.debug(f"Ignoring: {relative_path}")
                continue
            if item.is_symlink() and item.is_dir():
                # symlinked directories may loop
                continue
            try:
                snap.add(self.entry_for(item, base_path, policy))
            except OSError as e:
                logger.warning(f"Skipping {relative_path}: {e}")
                continue
            if item.is_dir():
                self._scan(item, base_path, policy, snap)

"""Tests for snapshot comparison."""

import pytest

from mpyworkbench.sync import (
    DiffKind,
    DirEntry,
    EqualityPolicy,
    Snapshot,
    SnapshotComparator,
    diff,
)


def file_entry(path, digest="h", size=10):
    return DirEntry(path, is_dir=False, size=size, hash=digest)


def dir_entry(path):
    return DirEntry(path, is_dir=True)


def snapshot(root, *entries, policy=EqualityPolicy.HASH):
    return Snapshot(root, policy, list(entries))


def kinds(entries):
    return {e.path: e.kind for e in entries}


class TestDirEntry:
    """Tests for DirEntry validation."""

    def test_path_is_normalized(self):
        """Test leading slashes and backslashes are normalized."""
        assert file_entry("/lib\\util.py").path == "lib/util.py"

    def test_directory_cannot_carry_size(self):
        """Test directory entries reject size and hash."""
        with pytest.raises(ValueError, match="cannot carry"):
            DirEntry("lib", is_dir=True, size=3)
        with pytest.raises(ValueError, match="cannot carry"):
            DirEntry("lib", is_dir=True, hash="abc")

    def test_empty_path_rejected(self):
        """Test the root itself is not an entry."""
        with pytest.raises(ValueError, match="empty"):
            DirEntry("/", is_dir=True)


class TestSnapshot:
    """Tests for the Snapshot container."""

    def test_duplicate_path_rejected(self):
        """Test a path can appear only once."""
        snap = snapshot("local", file_entry("main.py"))
        with pytest.raises(ValueError, match="Duplicate"):
            snap.add(file_entry("/main.py"))

    def test_iteration_is_sorted(self):
        """Test entries come out in path order regardless of insertion."""
        snap = snapshot("board", file_entry("z.py"), dir_entry("a"), file_entry("m.py"))
        assert [e.path for e in snap] == ["a", "m.py", "z.py"]

    def test_paths_are_case_sensitive(self):
        """Test Main.py and main.py are different paths."""
        snap = snapshot("local", file_entry("Main.py"), file_entry("main.py"))
        assert len(snap) == 2


class TestDiff:
    """Tests for diff classification."""

    def test_scenario_local_against_board(self):
        """Test unchanged, added and removed classification."""
        local = snapshot(
            "local",
            file_entry("main.py", "H1"),
            dir_entry("lib"),
            file_entry("lib/util.py", "H2"),
        )
        board = snapshot(
            "board", file_entry("main.py", "H1"), file_entry("old.py", "H3")
        )

        result = diff(local, board)

        assert kinds(result) == {
            "lib": DiffKind.ADDED,
            "lib/util.py": DiffKind.ADDED,
            "main.py": DiffKind.UNCHANGED,
            "old.py": DiffKind.REMOVED,
        }

    def test_modified_when_hash_differs(self):
        """Test files with different hashes are modified."""
        result = diff(
            snapshot("local", file_entry("a.py", "1")),
            snapshot("board", file_entry("a.py", "2")),
        )
        assert result[0].kind is DiffKind.MODIFIED

    def test_missing_hash_is_modified(self):
        """Test equality is never assumed without both hashes."""
        result = diff(
            snapshot("local", file_entry("a.py", "1")),
            snapshot("board", file_entry("a.py", None)),
        )
        assert result[0].kind is DiffKind.MODIFIED

    def test_size_policy_ignores_content(self):
        """Test the size policy compares sizes only."""
        local = snapshot(
            "local", file_entry("a.py", None, 5), policy=EqualityPolicy.SIZE
        )
        board = snapshot(
            "board", file_entry("a.py", None, 5), policy=EqualityPolicy.SIZE
        )
        assert diff(local, board)[0].kind is DiffKind.UNCHANGED

    def test_directories_never_modified(self):
        """Test two directories at the same path are unchanged."""
        result = diff(
            snapshot("local", dir_entry("lib")), snapshot("board", dir_entry("lib"))
        )
        assert result[0].kind is DiffKind.UNCHANGED

    def test_type_conflict(self):
        """Test a file on one side and a directory on the other."""
        result = diff(
            snapshot("local", file_entry("lib")),
            snapshot("board", dir_entry("lib")),
        )
        assert result[0].kind is DiffKind.MODIFIED
        assert result[0].type_conflict

    def test_mismatched_policies_rejected(self):
        """Test snapshots built with different policies cannot be compared."""
        with pytest.raises(ValueError, match="different equality policies"):
            diff(
                snapshot("local", policy=EqualityPolicy.HASH),
                snapshot("board", policy=EqualityPolicy.SIZE),
            )

    def test_comparator_rejects_other_policy(self):
        """Test the comparator checks both snapshots against its own policy."""
        comparator = SnapshotComparator(EqualityPolicy.SIZE)
        with pytest.raises(ValueError, match="Cannot compare"):
            comparator.compare(snapshot("local"), snapshot("board"))


class TestDiffProperties:
    """Tests for symmetry, idempotence and determinism."""

    @pytest.fixture
    def pair(self):
        a = snapshot(
            "local",
            file_entry("main.py", "1"),
            file_entry("boot.py", "2"),
            dir_entry("lib"),
            file_entry("lib/a.py", "3"),
            file_entry("x", "4"),
        )
        b = snapshot(
            "board",
            file_entry("main.py", "1"),
            file_entry("boot.py", "9"),
            dir_entry("data"),
            file_entry("data/log.txt", "5"),
            dir_entry("x"),
        )
        return a, b

    def test_symmetry(self, pair):
        """Test diff(A, B) and diff(B, A) swap added and removed."""
        a, b = pair
        forward = kinds(diff(a, b))
        backward = kinds(diff(b, a))
        swap = {DiffKind.ADDED: DiffKind.REMOVED, DiffKind.REMOVED: DiffKind.ADDED}

        assert forward.keys() == backward.keys()
        for path, kind in forward.items():
            assert backward[path] is swap.get(kind, kind)

    def test_idempotence(self, pair):
        """Test diff(A, A) is unchanged everywhere."""
        for snap in pair:
            assert all(e.kind is DiffKind.UNCHANGED for e in diff(snap, snap))

    def test_determinism(self, pair):
        """Test repeated diffs are identical and sorted."""
        a, b = pair
        first = diff(a, b)
        assert first == diff(a, b)
        assert [e.path for e in first] == sorted(e.path for e in first)

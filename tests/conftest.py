"""Shared fixtures: an in-memory board and engine wiring."""

import hashlib
from pathlib import Path
from typing import Optional

import pytest

from mpyworkbench.config import Settings
from mpyworkbench.link import DeviceLink
from mpyworkbench.output import OutputFormatter
from mpyworkbench.sync.engine import SyncEngine
from mpyworkbench.sync.models import DirEntry, EqualityPolicy, Snapshot
from mpyworkbench.toolchain import Toolchain

PORT = "/dev/ttyUSB0"


class FakeBoard:
    """In-memory stand-in for BoardFilesystem.

    ``files`` maps relative paths to bytes, ``dirs`` holds directory paths.
    ``fail`` maps a path to the exception its next mutation raises.
    """

    def __init__(self, files=None, dirs=None):
        self.files: dict[str, bytes] = dict(files or {})
        self.dirs: set[str] = set(dirs or ())
        self.fail: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.snapshot_calls: list[dict] = []
        self.link: Optional[DeviceLink] = None
        self.token = None
        self.on_call = None

    def _check(self, op: str, path: str) -> None:
        if self.link is not None:
            self.link.ensure_held(self.token)
        self.calls.append((op, path))
        if self.on_call is not None:
            self.on_call(op, path)
        if path in self.fail:
            raise self.fail[path]

    def snapshot(self, policy, ignore=(), strict=False):
        self.snapshot_calls.append({"policy": policy, "strict": strict})
        snap = Snapshot("board", policy)
        for path in self.dirs:
            snap.add(DirEntry(path, is_dir=True))
        for path, data in self.files.items():
            digest = hashlib.sha256(data).hexdigest()
            snap.add(
                DirEntry(
                    path,
                    is_dir=False,
                    size=len(data),
                    hash=digest if policy is EqualityPolicy.HASH else None,
                )
            )
        return snap

    def upload(self, source: Path, path: str) -> None:
        self._check("upload", path)
        self.files[path] = Path(source).read_bytes()

    def read(self, path: str) -> bytes:
        self._check("read", path)
        return self.files[path]

    def mkdir(self, path: str) -> None:
        self._check("mkdir", path)
        self.dirs.add(path)

    def delete(self, path: str) -> None:
        self._check("delete", path)
        if path in self.files:
            del self.files[path]
        else:
            self.dirs.discard(path)


@pytest.fixture(autouse=True)
def port_lock_dir(tmp_path, monkeypatch):
    """Keep per-port lock files out of the user's cache directory."""
    cache = tmp_path / "cache"
    monkeypatch.setenv("XDG_CACHE_HOME", str(cache))
    return cache / "mpyworkbench" / "locks"


@pytest.fixture
def board():
    return FakeBoard()


@pytest.fixture
def link():
    return DeviceLink(PORT, default_timeout=1.0)


@pytest.fixture
def toolchain():
    return Toolchain(python="python3", tool=("python3", "-m", "mpyworkbench.boardtool"))


@pytest.fixture
def settings(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return Settings(workspace=root, connect=PORT, link_timeout=1.0)


@pytest.fixture
def make_engine(link, toolchain, board):
    """Build a SyncEngine whose board client is the fake board."""

    def factory(settings):
        def board_factory(link_, token, toolchain_, settings_):
            board.link = link_
            board.token = token
            return board

        return SyncEngine(
            link,
            toolchain,
            settings,
            output=OutputFormatter(quiet=True),
            board_factory=board_factory,
        )

    return factory

"""Targets that apply plan actions to the board or to the local tree."""

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from .models import ActionKind, PlanAction

if TYPE_CHECKING:
    from ..boardfs import BoardFilesystem

logger = logging.getLogger(__name__)


class SyncTarget:
    """Common dispatch of plan actions; subclasses implement the primitives."""

    name = "target"

    def apply(self, action: PlanAction) -> None:
        """Apply one action.

        Raises:
            ValueError: For conflict actions, which cannot be applied
        """
        if action.kind is ActionKind.MKDIR:
            self.mkdir(action.path)
        elif action.kind is ActionKind.WRITE:
            self.write(action.path)
        elif action.kind is ActionKind.DELETE_FILE:
            self.delete_file(action.path)
        elif action.kind is ActionKind.DELETE_DIR:
            self.delete_dir(action.path)
        else:
            raise ValueError(action.reason or f"Cannot apply {action.kind.value}")

    def mkdir(self, path: str) -> None:
        raise NotImplementedError

    def write(self, path: str) -> None:
        raise NotImplementedError

    def delete_file(self, path: str) -> None:
        raise NotImplementedError

    def delete_dir(self, path: str) -> None:
        raise NotImplementedError


class BoardTarget(SyncTarget):
    """Writes local files to the board."""

    name = "board"

    def __init__(self, board: "BoardFilesystem", local_root: Path):
        """Initialize board target.

        Args:
            board: Client for the board filesystem
            local_root: Local directory file contents are read from
        """
        self.board = board
        self.local_root = local_root

    def mkdir(self, path: str) -> None:
        self.board.mkdir(path)

    def write(self, path: str) -> None:
        logger.debug(f"Uploading {path}...")
        self.board.upload(self.local_root / path, path)

    def delete_file(self, path: str) -> None:
        self.board.delete(path)

    def delete_dir(self, path: str) -> None:
        self.board.delete(path)


class LocalTarget(SyncTarget):
    """Writes board files to the local tree."""

    name = "local"

    def __init__(self, board: "BoardFilesystem", local_root: Path):
        """Initialize local target.

        Args:
            board: Client file contents are read from
            local_root: Local directory that receives the files
        """
        self.board = board
        self.local_root = local_root

    def mkdir(self, path: str) -> None:
        (self.local_root / path).mkdir(parents=True, exist_ok=True)

    def write(self, path: str) -> None:
        logger.debug(f"Downloading {path}...")
        data = self.board.read(path)
        local_path = self.local_root / path
        # Ensure parent directory exists
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(data)

    def delete_file(self, path: str) -> None:
        (self.local_root / path).unlink()

    def delete_dir(self, path: str) -> None:
        (self.local_root / path).rmdir()

"""Board filesystem client.

Every call runs the device-control tool as a subprocess::

    <tool> <subcommand> --port <device> --baudrate <rate> [--path <path>] [...]

and must be made while the caller holds exclusive access to the link.
"""

import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional

from .config import Settings
from .exceptions import LinkUnavailableError, ProtocolError, ToolInvocationError
from .link import DeviceLink, ReleaseToken
from .sync.models import DirEntry, EqualityPolicy, Snapshot
from .sync.scanner import is_ignored
from .toolchain import Toolchain, install_hint
from .utils import board_path, normalize_path

logger = logging.getLogger(__name__)

CONTROL_SEQUENCES = ("interrupt", "stop", "soft-reset")


class BoardFilesystem:
    """Listing, read, write, delete and mkdir on the board's filesystem."""

    def __init__(
        self,
        link: DeviceLink,
        token: ReleaseToken,
        toolchain: Toolchain,
        settings: Settings,
    ):
        """Initialize the client for one operation.

        Args:
            link: Link of the board's port
            token: Exclusive access token held by the calling operation
            toolchain: Resolved interpreter and tool command
            settings: Settings of the calling operation (baud rate, timeouts)
        """
        self.link = link
        self.token = token
        self.toolchain = toolchain
        self.settings = settings

    def _invoke(
        self, subcommand: str, *args: str, timeout: Optional[float] = None
    ) -> str:
        """Run one tool subcommand and return its stdout.

        Raises:
            LinkUnavailableError: If the link has no port
            ExclusiveAccessError: If the token no longer holds the link
            ToolInvocationError: If the tool cannot run, times out or fails
        """
        if not self.link.port:
            raise LinkUnavailableError("No fixed serial port selected")
        self.link.ensure_held(self.token)

        timeout = self.settings.tool_timeout if timeout is None else timeout
        command = self.toolchain.tool_command(
            subcommand,
            "--port",
            self.link.port,
            "--baudrate",
            str(self.settings.baudrate),
            *args,
        )
        logger.debug(f"Running: {' '.join(command)}")
        try:
            # Own session, so a terminal Ctrl-C never reaches the tool
            result = subprocess.run(
                command,
                capture_output=True,
                timeout=timeout,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ToolInvocationError(
                f"Device-control tool could not be started ({e}). "
                f"Install the requirements with: {install_hint(self.toolchain.python)}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ToolInvocationError(
                f"'{subcommand}' on {self.link.port} timed out after {timeout:.0f}s"
            ) from e

        stdout = (result.stdout or b"").decode("utf-8", errors="replace")
        stderr = (result.stderr or b"").decode("utf-8", errors="replace")
        if result.returncode != 0:
            raise ToolInvocationError(
                stderr.strip()
                or f"'{subcommand}' failed with exit status {result.returncode}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return stdout

    def _parse_listing(self, data: Any) -> list[DirEntry]:
        if not isinstance(data, list):
            raise ValueError("listing is not a JSON array")
        entries = []
        for item in data:
            if not isinstance(item, dict) or "path" not in item:
                raise ValueError(f"malformed listing item: {item!r}")
            path = normalize_path(str(item["path"]))
            if not path:
                continue
            if item.get("isDir"):
                entries.append(DirEntry(path, is_dir=True, mtime=item.get("mtime")))
            else:
                entries.append(
                    DirEntry(
                        path,
                        is_dir=False,
                        size=item.get("size"),
                        hash=item.get("hash"),
                        mtime=item.get("mtime"),
                    )
                )
        return entries

    def list(
        self,
        path: str = "/",
        recursive: bool = True,
        with_hash: bool = True,
        strict: bool = False,
    ) -> list[DirEntry]:
        """List a board directory.

        Empty output is an empty listing. Output that is not a JSON listing
        also yields an empty listing with a warning, unless ``strict`` is set.

        Args:
            path: Board directory to list
            recursive: Include everything below ``path``
            with_hash: Ask the board for SHA-256 digests of files
            strict: Raise instead of degrading on unparseable output

        Returns:
            Entries with paths relative to the board root

        Raises:
            ProtocolError: If strict and the output cannot be parsed
            ToolInvocationError: If the tool fails or times out
        """
        args = ["--path", board_path(path)]
        if recursive:
            args.append("--recursive")
        if with_hash:
            args.append("--hash")
        text = self._invoke("ls", *args).strip()
        if not text:
            return []
        try:
            return self._parse_listing(json.loads(text))
        except ValueError as e:
            if strict:
                raise ProtocolError(f"Unreadable board listing of {path}: {e}") from e
            logger.warning(f"Ignoring unreadable board listing of {path}: {e}")
            return []

    def read(self, path: str) -> bytes:
        """Read a board file.

        Raises:
            ProtocolError: If the tool output is not hex
        """
        text = self._invoke(
            "read", "--path", board_path(path), timeout=self.settings.transfer_timeout
        )
        try:
            return bytes.fromhex("".join(text.split()))
        except ValueError as e:
            raise ProtocolError(f"Unreadable content for {path}: {e}") from e

    def upload(self, source: Path, path: str) -> None:
        """Copy a local file to ``path`` on the board."""
        self._invoke(
            "write",
            "--path",
            board_path(path),
            "--source",
            str(source),
            timeout=self.settings.transfer_timeout,
        )

    def write(self, path: str, data: bytes) -> None:
        """Write ``data`` to ``path`` on the board."""
        fd, tmp_name = tempfile.mkstemp(prefix="mpywb-", suffix=".bin")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            self.upload(Path(tmp_name), path)
        finally:
            os.unlink(tmp_name)

    def delete(self, path: str) -> None:
        """Delete a file or an empty directory."""
        self._invoke("rm", "--path", board_path(path))

    def mkdir(self, path: str) -> None:
        """Create a directory; an existing directory is not an error."""
        self._invoke("mkdir", "--path", board_path(path))

    def send_control(self, sequence: str) -> None:
        """Send a control sequence: ``interrupt``, ``stop`` or ``soft-reset``."""
        if sequence not in CONTROL_SEQUENCES:
            raise ValueError(f"Unknown control sequence: {sequence}")
        self._invoke(sequence)

    def snapshot(
        self,
        policy: EqualityPolicy = EqualityPolicy.HASH,
        ignore: Iterable[str] = (),
        strict: bool = False,
    ) -> Snapshot:
        """Snapshot the whole board filesystem.

        Args:
            policy: Equality policy; hashes are only requested for ``hash``
            ignore: fnmatch patterns of paths to leave out
            strict: Fail instead of treating unreadable output as empty

        Returns:
            Snapshot labelled "board"
        """
        patterns = list(ignore)
        with_hash = policy is EqualityPolicy.HASH
        snapshot = Snapshot("board", policy)
        for entry in self.list("/", recursive=True, with_hash=with_hash, strict=strict):
            if is_ignored(entry.path, patterns):
                continue
            snapshot.add(entry)
        logger.debug(f"Board snapshot on {self.link.port}: {len(snapshot)} entries")
        return snapshot

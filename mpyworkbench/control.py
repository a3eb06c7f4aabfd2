"""Board control: running files, the REPL terminal and control sequences."""

import logging
import subprocess
from pathlib import Path

from .boardfs import BoardFilesystem
from .config import Settings
from .exceptions import ToolInvocationError, WorkbenchError
from .link import DeviceLink, new_operation_id
from .toolchain import Toolchain, install_hint

logger = logging.getLogger(__name__)


class BoardControl:
    """Interactive board commands, each run under exclusive link access."""

    def __init__(self, link: DeviceLink, toolchain: Toolchain, settings: Settings):
        self.link = link
        self.toolchain = toolchain
        self.settings = settings

    def _mpremote(self, operation: str, *args: str) -> int:
        """Run mpremote attached to the terminal until it exits.

        Raises:
            ToolInvocationError: If mpremote cannot be started or fails
        """
        command = self.toolchain.mpremote_command("connect", self.link.port, *args)
        with self.link.exclusive(
            new_operation_id(operation), timeout=self.settings.link_timeout
        ):
            logger.debug(f"Running: {' '.join(command)}")
            try:
                result = subprocess.run(command)
            except FileNotFoundError as e:
                raise ToolInvocationError(
                    f"mpremote could not be started ({e}). "
                    f"Install it with: {install_hint(self.toolchain.python)}"
                ) from e
        if result.returncode != 0:
            raise ToolInvocationError(
                f"mpremote exited with status {result.returncode}",
                returncode=result.returncode,
            )
        return result.returncode

    def run_file(self, path: Path) -> int:
        """Run a local file on the board without copying it.

        Raises:
            WorkbenchError: If the file does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise WorkbenchError(f"File not found: {path}")
        return self._mpremote("run-file", "run", str(path))

    def open_repl(self) -> int:
        return self._mpremote("repl", "repl")

    def _send(self, sequence: str) -> None:
        with self.link.exclusive(
            new_operation_id(sequence), timeout=self.settings.link_timeout
        ) as token:
            board = BoardFilesystem(self.link, token, self.toolchain, self.settings)
            board.send_control(sequence)

    def stop(self) -> None:
        """Interrupt the running program and leave the raw REPL."""
        self._send("stop")

    def soft_reset(self) -> None:
        self._send("soft-reset")

    def send_ctrl_c(self) -> None:
        self._send("interrupt")

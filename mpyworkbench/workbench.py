"""Command surface of MicroPython WorkBench.

:class:`Workbench` maps every command ID onto one core operation. Settings,
the port and the toolchain are resolved again at the start of every
operation, so configuration changes apply to the next command.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .config import Config, Settings, WorkspaceState, config, resolve_device
from .control import BoardControl
from .exceptions import WorkbenchError
from .link import DeviceLink, LinkManager
from .monitor import SerialMonitor, miniterm_poller
from .output import OutputFormatter
from .sync.engine import SyncEngine
from .sync.models import CancellationToken, SyncDirection, SyncResult
from .toolchain import Toolchain, ToolchainResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandSpec:
    """One entry of the command table."""

    command_id: str
    label: str
    method: str
    """Name of the Workbench method implementing the command"""

    kind: str = "action"
    """``action`` (board or file operation) or ``setting`` (workspace flag)"""


COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec("runActiveFile", "Run File on Board", "run_active_file"),
    CommandSpec("openRepl", "Open REPL", "open_repl"),
    CommandSpec("stop", "Stop Program", "stop"),
    CommandSpec("softReset", "Soft Reset", "soft_reset"),
    CommandSpec("serialSendCtrlC", "Send Ctrl-C", "serial_send_ctrl_c"),
    CommandSpec("syncBaseline", "Upload All Files to Board", "sync_baseline"),
    CommandSpec(
        "syncBaselineFromBoard",
        "Download All Files from Board",
        "sync_baseline_from_board",
    ),
    CommandSpec("checkDiffs", "Check Differences", "check_diffs"),
    CommandSpec(
        "syncDiffsLocalToBoard",
        "Sync Changed Files Local → Board",
        "sync_diffs_local_to_board",
    ),
    CommandSpec(
        "syncDiffsBoardToLocal",
        "Sync Changed Files Board → Local",
        "sync_diffs_board_to_local",
    ),
    CommandSpec("deleteAllBoard", "Delete All Files on Board", "delete_all_board"),
    CommandSpec(
        "toggleWorkspaceAutoSync",
        "Toggle Auto-Sync on Save",
        "toggle_workspace_auto_sync",
        kind="setting",
    ),
)

_COMMANDS_BY_ID = {spec.command_id: spec for spec in COMMANDS}


def get_command(command_id: str) -> CommandSpec:
    """Look up a command by ID.

    Raises:
        WorkbenchError: If the ID is unknown
    """
    try:
        return _COMMANDS_BY_ID[command_id]
    except KeyError:
        known = ", ".join(_COMMANDS_BY_ID)
        raise WorkbenchError(
            f"Unknown command '{command_id}' (available: {known})"
        ) from None


class Workbench:
    """Facade running workbench operations for one workspace."""

    def __init__(
        self,
        workspace: Optional[Path] = None,
        overrides: Optional[dict[str, Any]] = None,
        output: Optional[OutputFormatter] = None,
        config_loader: Optional[Config] = None,
        links: Optional[LinkManager] = None,
        resolver: Optional[ToolchainResolver] = None,
    ):
        """Initialize workbench.

        Args:
            workspace: Workspace directory (defaults to the current directory)
            overrides: Settings values that win over files and environment
            output: Output formatter handed to the sync engine
            config_loader: Settings loader (defaults to the module config)
            links: Link registry (one per process)
            resolver: Toolchain resolver (owned by this workbench)
        """
        self.workspace = Path(workspace) if workspace is not None else Path.cwd()
        self.overrides = dict(overrides or {})
        self.output = output or OutputFormatter()
        self.config = config_loader or config
        self.links = links or LinkManager()
        self.resolver = resolver or ToolchainResolver()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def settings(self) -> Settings:
        return self.config.load_settings(self.workspace, self.overrides)

    def invalidate_toolchain(self) -> None:
        """Forget the resolved interpreter, e.g. after changing environments."""
        self.resolver.invalidate()

    def _connect(self) -> tuple[Settings, DeviceLink, Toolchain]:
        settings = self.settings()
        device = resolve_device(settings.connect)
        link = self.links.get(device, default_timeout=settings.link_timeout)
        toolchain = self.resolver.resolve(settings)
        return settings, link, toolchain

    def engine(self) -> SyncEngine:
        settings, link, toolchain = self._connect()
        return SyncEngine(link, toolchain, settings, output=self.output)

    def control(self) -> BoardControl:
        settings, link, toolchain = self._connect()
        return BoardControl(link, toolchain, settings)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def run_active_file(self, path: Optional[Path] = None) -> int:
        if path is None:
            raise WorkbenchError("No file given to run")
        return self.control().run_file(Path(path))

    def open_repl(self) -> int:
        return self.control().open_repl()

    def stop(self) -> None:
        self.control().stop()

    def soft_reset(self) -> None:
        self.control().soft_reset()

    def serial_send_ctrl_c(self) -> None:
        self.control().send_ctrl_c()

    def sync_baseline(self, cancel: Optional[CancellationToken] = None) -> SyncResult:
        return self.engine().baseline_upload(cancel=cancel)

    def sync_baseline_from_board(
        self, cancel: Optional[CancellationToken] = None
    ) -> SyncResult:
        return self.engine().baseline_download(cancel=cancel)

    def check_diffs(self) -> SyncResult:
        return self.engine().check_diffs()

    def sync_diffs(
        self,
        direction: SyncDirection = SyncDirection.LOCAL_TO_BOARD,
        include_deletes: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> SyncResult:
        return self.engine().sync_diffs(
            direction, include_deletes=include_deletes, cancel=cancel
        )

    def sync_diffs_local_to_board(
        self, include_deletes: bool = False, cancel: Optional[CancellationToken] = None
    ) -> SyncResult:
        return self.sync_diffs(SyncDirection.LOCAL_TO_BOARD, include_deletes, cancel)

    def sync_diffs_board_to_local(
        self, include_deletes: bool = False, cancel: Optional[CancellationToken] = None
    ) -> SyncResult:
        return self.sync_diffs(SyncDirection.BOARD_TO_LOCAL, include_deletes, cancel)

    def delete_all_board(
        self, cancel: Optional[CancellationToken] = None
    ) -> SyncResult:
        return self.engine().delete_all_board(cancel=cancel)

    def toggle_workspace_auto_sync(self) -> bool:
        """Flip the workspace auto-sync-on-save flag and return the new value."""
        settings = self.settings()
        return WorkspaceState(self.workspace).toggle_auto_sync(
            default=settings.auto_sync_on_save
        )

    def on_save(self, path: Path) -> Optional[SyncResult]:
        """Upload a saved file if auto-sync is enabled for the workspace.

        Returns:
            The sync result, or None if auto-sync is off
        """
        settings = self.settings()
        state = WorkspaceState(self.workspace)
        if not state.auto_sync_enabled(default=settings.auto_sync_on_save):
            logger.debug(f"Auto-sync disabled, not uploading {path}")
            return None
        return self.engine().sync_file(Path(path))

    def start_monitor(
        self,
        on_output: Optional[Callable[[str], None]] = None,
        background: bool = True,
    ) -> SerialMonitor:
        """Start the passive serial monitor on the configured port."""
        settings, link, toolchain = self._connect()
        monitor = link.monitor
        if not isinstance(monitor, SerialMonitor):
            monitor = SerialMonitor(
                link,
                miniterm_poller(toolchain.python, settings.baudrate),
                interval=settings.monitor_interval,
                window=settings.monitor_window,
                on_output=on_output,
            )
        monitor.start(background=background)
        return monitor

    def dispatch(self, command_id: str, **kwargs: Any) -> Any:
        """Run the operation registered for ``command_id``."""
        spec = get_command(command_id)
        logger.debug(f"Dispatching {command_id} -> {spec.method}")
        return getattr(self, spec.method)(**kwargs)

    def close(self) -> None:
        """Tear down the link and stop the monitor."""
        self.links.close()

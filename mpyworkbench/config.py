"""Configuration management for MicroPython WorkBench.

Settings are layered, lowest precedence first:

1. built-in defaults
2. user file ``~/.config/mpyworkbench/config.json``
3. workspace file ``<workspace>/.mpy-workbench/config.json``
4. environment variables (``MPYWB_*``)
5. explicit overrides (CLI options)

Nothing is cached: every board operation calls :meth:`Config.load_settings`
again so that a changed port or interpreter takes effect on the next call.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import serial.tools.list_ports

from .exceptions import LinkUnavailableError, WorkbenchConfigError
from .utils import (
    DEFAULT_BAUDRATE,
    DEFAULT_LINK_TIMEOUT,
    DEFAULT_MONITOR_INTERVAL,
    DEFAULT_MONITOR_WINDOW,
    DEFAULT_TOOL_TIMEOUT,
    DEFAULT_TRANSFER_TIMEOUT,
)

logger = logging.getLogger(__name__)

WORKSPACE_DIR_NAME = ".mpy-workbench"
WORKSPACE_CONFIG_NAME = "config.json"

DEFAULT_IGNORE: tuple[str, ...] = (
    WORKSPACE_DIR_NAME,
    ".git",
    ".vscode",
    "__pycache__",
    "*.pyc",
    ".DS_Store",
)

EQUALITY_POLICIES = ("hash", "size")

# JSON key -> Settings attribute
_FILE_KEYS = {
    "connect": "connect",
    "baudrate": "baudrate",
    "syncRoot": "sync_root",
    "pythonPath": "python_path",
    "toolPath": "tool_path",
    "autoSyncOnSave": "auto_sync_on_save",
    "ignore": "ignore",
    "equality": "equality",
    "toolTimeout": "tool_timeout",
    "transferTimeout": "transfer_timeout",
    "linkTimeout": "link_timeout",
    "monitorInterval": "monitor_interval",
    "monitorWindow": "monitor_window",
}

_ENV_KEYS = {
    "MPYWB_CONNECT": "connect",
    "MPYWB_BAUDRATE": "baudrate",
    "MPYWB_PYTHON": "python_path",
    "MPYWB_TOOL": "tool_path",
    "MPYWB_SYNC_ROOT": "sync_root",
}


@dataclass(frozen=True)
class Settings:
    """Resolved settings for one operation."""

    workspace: Path
    """Workspace directory (holds .mpy-workbench/)"""

    connect: str = "auto"
    """Port identifier, ``serial:///dev/ttyUSB0`` style URI or ``auto``"""

    baudrate: int = DEFAULT_BAUDRATE

    sync_root: Optional[Path] = None
    """Local directory mirrored to the board root (defaults to the workspace)"""

    python_path: Optional[str] = None
    """Interpreter override used to run the device-control tool"""

    tool_path: Optional[str] = None
    """Device-control tool override (command line, split shell-style)"""

    auto_sync_on_save: bool = False

    ignore: tuple[str, ...] = field(default=DEFAULT_IGNORE)

    equality: str = "hash"
    """File equality policy shared by both snapshots: ``hash`` or ``size``"""

    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    transfer_timeout: float = DEFAULT_TRANSFER_TIMEOUT
    link_timeout: float = DEFAULT_LINK_TIMEOUT
    monitor_interval: float = DEFAULT_MONITOR_INTERVAL
    monitor_window: float = DEFAULT_MONITOR_WINDOW

    @property
    def local_root(self) -> Path:
        """Local directory that is synced with the board root."""
        if self.sync_root is None:
            return self.workspace
        if self.sync_root.is_absolute():
            return self.sync_root
        return self.workspace / self.sync_root

    @property
    def toolchain_key(self) -> tuple[Optional[str], Optional[str]]:
        """Settings that invalidate a resolved toolchain when they change."""
        return (self.python_path, self.tool_path)


def _coerce(attr: str, value: Any) -> Any:
    """Convert a raw file/env value to the type of a Settings attribute."""
    try:
        if attr == "baudrate":
            return int(value)
        if attr in (
            "tool_timeout",
            "transfer_timeout",
            "link_timeout",
            "monitor_interval",
            "monitor_window",
        ):
            return float(value)
        if attr == "sync_root":
            return Path(value) if value else None
        if attr == "auto_sync_on_save":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if attr == "ignore":
            if isinstance(value, str):
                value = [p.strip() for p in value.split(",")]
            return tuple(p for p in value if p)
        if attr == "equality":
            value = str(value).lower()
            if value not in EQUALITY_POLICIES:
                raise WorkbenchConfigError(
                    f"Unknown equality policy '{value}' "
                    f"(expected one of: {', '.join(EQUALITY_POLICIES)})"
                )
            return value
        if value is None:
            return None
        return str(value)
    except (TypeError, ValueError) as e:
        raise WorkbenchConfigError(f"Invalid value for {attr}: {value!r}") from e


def _read_json(path: Path) -> dict[str, Any]:
    """Read a JSON object from disk, ignoring missing or corrupt files."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return data


class WorkspaceState:
    """Per-workspace persisted record (``.mpy-workbench/config.json``).

    Every access reads the file again; the record is never held in memory
    across operations.
    """

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace)

    @property
    def path(self) -> Path:
        return self.workspace / WORKSPACE_DIR_NAME / WORKSPACE_CONFIG_NAME

    def load(self) -> dict[str, Any]:
        return _read_json(self.path)

    def save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def auto_sync_enabled(self, default: bool = False) -> bool:
        value = self.load().get("autoSyncOnSave")
        if isinstance(value, bool):
            return value
        return default

    def toggle_auto_sync(self, default: bool = False) -> bool:
        """Flip the auto-sync-on-save flag.

        Returns:
            The new value of the flag
        """
        data = self.load()
        current = data.get("autoSyncOnSave")
        if not isinstance(current, bool):
            current = default
        data["autoSyncOnSave"] = not current
        self.save(data)
        logger.debug(f"autoSyncOnSave set to {data['autoSyncOnSave']} in {self.path}")
        return data["autoSyncOnSave"]


class Config:
    """Loads layered settings for MicroPython WorkBench."""

    def __init__(self, user_config_dir: Optional[Path] = None):
        self._user_config_dir = user_config_dir

    def get_config_dir(self) -> Path:
        if self._user_config_dir is not None:
            return self._user_config_dir
        base = os.environ.get("XDG_CONFIG_HOME")
        if base:
            return Path(base) / "mpyworkbench"
        return Path.home() / ".config" / "mpyworkbench"

    def get_config_path(self) -> Path:
        return self.get_config_dir() / "config.json"

    def load_settings(
        self,
        workspace: Optional[Path] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> Settings:
        """Build settings for one operation.

        Args:
            workspace: Workspace directory (defaults to the current directory)
            overrides: Settings attribute values that win over everything else;
                None values are ignored

        Returns:
            Resolved Settings

        Raises:
            WorkbenchConfigError: If a value has the wrong type
        """
        workspace = Path(workspace) if workspace is not None else Path.cwd()
        values: dict[str, Any] = {}

        for source in (
            _read_json(self.get_config_path()),
            WorkspaceState(workspace).load(),
        ):
            for key, attr in _FILE_KEYS.items():
                if key in source and source[key] is not None:
                    values[attr] = _coerce(attr, source[key])

        for env_key, attr in _ENV_KEYS.items():
            env_value = os.environ.get(env_key)
            if env_value:
                values[attr] = _coerce(attr, env_value)

        for attr, value in (overrides or {}).items():
            if value is not None:
                values[attr] = _coerce(attr, value)

        settings = replace(Settings(workspace=workspace), **values)
        logger.debug(
            f"Loaded settings: connect={settings.connect} "
            f"baudrate={settings.baudrate} root={settings.local_root}"
        )
        return settings


def strip_serial_scheme(connect: str) -> str:
    """Remove ``serial://`` / ``serial:/`` prefixes from a port identifier.

    Examples:
        >>> strip_serial_scheme("serial:///dev/ttyUSB0")
        '/dev/ttyUSB0'
        >>> strip_serial_scheme("COM3")
        'COM3'
    """
    connect = connect.strip()
    for prefix in ("serial://", "serial:/"):
        if connect.startswith(prefix):
            return connect[len(prefix) :]
    return connect


def list_serial_ports() -> list[Any]:
    """List serial ports known to pyserial."""
    return list(serial.tools.list_ports.comports())


def resolve_device(connect: Optional[str]) -> str:
    """Resolve the configured port identifier into a device path.

    ``auto`` selects the only USB serial port present.

    Raises:
        LinkUnavailableError: If no port is configured, or ``auto`` finds
            zero or several candidate ports
    """
    device = strip_serial_scheme(connect or "")
    if device and device.lower() != "auto":
        return device

    candidates = [p for p in list_serial_ports() if getattr(p, "vid", None)]
    if len(candidates) == 1:
        logger.debug(f"Auto-selected serial port {candidates[0].device}")
        return candidates[0].device
    if not candidates:
        raise LinkUnavailableError(
            "No serial port selected and no USB serial device found. "
            "Connect the board or set a port with --port."
        )
    names = ", ".join(p.device for p in candidates)
    raise LinkUnavailableError(
        f"No fixed serial port selected and several candidates exist ({names}). "
        "Choose one with --port."
    )


config = Config()

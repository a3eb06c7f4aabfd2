"""Exceptions raised by MicroPython WorkBench."""

from typing import Optional


class WorkbenchError(Exception):
    """Base exception for all workbench errors."""


class WorkbenchConfigError(WorkbenchError):
    """Configuration is missing or invalid."""


class LinkUnavailableError(WorkbenchError):
    """No usable serial port is configured or selected."""


class ExclusiveAccessError(WorkbenchError):
    """Exclusive access to the board link could not be obtained or was misused."""


class ToolInvocationError(WorkbenchError):
    """The device-control tool could not be run or reported a failure."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ProtocolError(WorkbenchError):
    """The device-control tool returned output that could not be understood."""


class RawReplError(WorkbenchError):
    """The board did not follow the raw REPL protocol."""

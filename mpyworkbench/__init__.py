"""MicroPython WorkBench - run, sync and monitor MicroPython boards over serial."""

from .exceptions import (
    ExclusiveAccessError,
    LinkUnavailableError,
    ProtocolError,
    RawReplError,
    ToolInvocationError,
    WorkbenchConfigError,
    WorkbenchError,
)
from .link import DeviceLink, LinkManager
from .workbench import COMMANDS, Workbench

__all__ = [
    "COMMANDS",
    "DeviceLink",
    "ExclusiveAccessError",
    "LinkManager",
    "LinkUnavailableError",
    "ProtocolError",
    "RawReplError",
    "ToolInvocationError",
    "Workbench",
    "WorkbenchConfigError",
    "WorkbenchError",
]

"""Resolution of the interpreter and device-control tool used for board calls."""

import logging
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings
from .exceptions import ToolInvocationError

logger = logging.getLogger(__name__)

TOOL_MODULE = "mpyworkbench.boardtool"
REQUIRED_MODULES = ("serial", "mpremote")
VALIDATION_TIMEOUT = 15.0


@dataclass(frozen=True)
class Toolchain:
    """Commands used to reach the board."""

    python: str
    """Interpreter running the device-control tool, the monitor and mpremote"""

    tool: tuple[str, ...]
    """Command prefix of the device-control tool"""

    def tool_command(self, *args: str) -> list[str]:
        return [*self.tool, *args]

    def mpremote_command(self, *args: str) -> list[str]:
        return [self.python, "-m", "mpremote", *args]


def install_hint(python: str) -> str:
    return f"{python} -m pip install pyserial mpremote"


def validate_python(python: str, timeout: float = VALIDATION_TIMEOUT) -> None:
    """Check that ``python`` runs and can import pyserial and mpremote.

    Raises:
        ToolInvocationError: With install instructions if it cannot
    """
    args = [python, "-c", f"import {', '.join(REQUIRED_MODULES)}"]
    logger.debug(f"Validating interpreter: {' '.join(args)}")
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise ToolInvocationError(
            f"Python interpreter not found: {python}. "
            "Set pythonPath in .mpy-workbench/config.json or MPYWB_PYTHON."
        ) from e
    except subprocess.TimeoutExpired as e:
        raise ToolInvocationError(
            f"Python interpreter {python} did not respond within {timeout:.0f}s"
        ) from e
    if result.returncode != 0:
        raise ToolInvocationError(
            f"Interpreter {python} is missing pyserial or mpremote. "
            f"Install them with: {install_hint(python)}",
            returncode=result.returncode,
            stderr=result.stderr,
        )


class ToolchainResolver:
    """Resolves and caches the toolchain for the current settings.

    The cached value is dropped by :meth:`invalidate`, and automatically when
    the interpreter or tool settings differ from the ones it was resolved
    from.
    """

    def __init__(self, validator: Optional[Callable[[str], None]] = validate_python):
        """Initialize resolver.

        Args:
            validator: Checks an interpreter before first use (None skips it)
        """
        self.validator = validator
        self._key: Optional[tuple[Optional[str], Optional[str]]] = None
        self._toolchain: Optional[Toolchain] = None

    def invalidate(self) -> None:
        if self._toolchain is not None:
            logger.debug("Toolchain cache invalidated")
        self._key = None
        self._toolchain = None

    def resolve(self, settings: Settings) -> Toolchain:
        """Return the toolchain for ``settings``.

        Raises:
            ToolInvocationError: If the interpreter or tool cannot be used
        """
        if self._toolchain is not None and self._key == settings.toolchain_key:
            return self._toolchain
        self.invalidate()

        python = settings.python_path or sys.executable
        if settings.tool_path:
            tool = tuple(shlex.split(settings.tool_path))
            if not tool or shutil.which(tool[0]) is None:
                raise ToolInvocationError(
                    f"Device-control tool not found: {settings.tool_path}"
                )
        else:
            tool = (python, "-m", TOOL_MODULE)

        if self.validator is not None:
            self.validator(python)

        self._toolchain = Toolchain(python=python, tool=tool)
        self._key = settings.toolchain_key
        logger.debug(f"Resolved toolchain: python={python} tool={' '.join(tool)}")
        return self._toolchain

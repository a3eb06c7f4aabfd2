"""Passive serial monitor.

Every ``interval`` seconds the monitor opens the port for a short ``window``
with pyserial's miniterm and forwards whatever the board printed. It only
touches the port through :meth:`DeviceLink.try_acquire`, so a board operation
holding the link makes the cycle a no-op instead of a queued backlog.

States::

    STOPPED --start()--> IDLE --tick()--> POLLING --> IDLE
                          |  ^
             suspend()    v  |   resume()
                        SUSPENDED
"""

import logging
import subprocess
import threading
from enum import Enum
from typing import Callable, Optional

from .exceptions import LinkUnavailableError
from .link import DeviceLink
from .utils import DEFAULT_MONITOR_INTERVAL, DEFAULT_MONITOR_WINDOW

logger = logging.getLogger(__name__)

MONITOR_OPERATION_ID = "serial-monitor"

Poller = Callable[[str, float], str]
"""Reads pending output from a port for at most ``window`` seconds."""


class MonitorState(str, Enum):
    """States of the serial monitor."""

    STOPPED = "stopped"
    IDLE = "idle"
    POLLING = "polling"
    SUSPENDED = "suspended"


def miniterm_poller(python: str, baudrate: int) -> Poller:
    """Build a poller that runs ``python -m serial.tools.miniterm``.

    The miniterm process is killed when the window expires.
    """

    def poll(device: str, window: float) -> str:
        args = [
            python,
            "-m",
            "serial.tools.miniterm",
            device,
            str(baudrate),
            "--eol",
            "LF",
            "--quiet",
        ]
        proc = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        try:
            out, err = proc.communicate(timeout=window)
        except subprocess.TimeoutExpired:
            proc.kill()
            out, err = proc.communicate()
        text = (out or err or b"").decode("utf-8", errors="replace")
        return text.strip()

    return poll


class SerialMonitor:
    """Polls a board's serial output between board operations."""

    def __init__(
        self,
        link: DeviceLink,
        poller: Poller,
        interval: float = DEFAULT_MONITOR_INTERVAL,
        window: float = DEFAULT_MONITOR_WINDOW,
        on_output: Optional[Callable[[str], None]] = None,
    ):
        """Initialize the monitor and attach it to the link.

        Args:
            link: Link of the port to watch
            poller: Function reading pending output for one window
            interval: Seconds between poll cycles
            window: Seconds a poll may hold the port
            on_output: Receives non-empty output (defaults to logging)
        """
        self.link = link
        self.poller = poller
        self.interval = interval
        self.window = window
        self.on_output = on_output or (lambda text: logger.info(text))
        self.polls = 0
        self._lock = threading.Lock()
        self._state = MonitorState.STOPPED
        self._was_running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        link.attach_monitor(self)

    @property
    def state(self) -> MonitorState:
        with self._lock:
            return self._state

    @property
    def suspended(self) -> bool:
        return self.state is MonitorState.SUSPENDED

    def is_running(self) -> bool:
        return self.state is not MonitorState.STOPPED

    def start(self, background: bool = True) -> None:
        """Start polling; does nothing if already running."""
        held = self.link.is_held()
        with self._lock:
            if self._state is not MonitorState.STOPPED:
                return
            # started while an operation holds the link: wait for its release
            self._state = MonitorState.SUSPENDED if held else MonitorState.IDLE
            self._was_running = True
            self._stop_event.clear()
        logger.debug(f"Serial monitor on {self.link.port} started")
        if background:
            self._thread = threading.Thread(
                target=self.run_forever, name="serial-monitor", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            self._state = MonitorState.STOPPED
            self._was_running = False
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.window + 1)
        self._thread = None
        logger.debug(f"Serial monitor on {self.link.port} stopped")

    def suspend(self) -> None:
        """Pause scheduling while a board operation holds the link."""
        with self._lock:
            if self._state in (MonitorState.IDLE, MonitorState.POLLING):
                self._was_running = True
                self._state = MonitorState.SUSPENDED
                logger.debug("Serial monitor suspended")

    def resume(self) -> None:
        """Return to polling if the monitor was running before suspension."""
        with self._lock:
            if self._state is not MonitorState.SUSPENDED:
                return
            self._state = (
                MonitorState.IDLE if self._was_running else MonitorState.STOPPED
            )
            logger.debug(f"Serial monitor resumed ({self._state.value})")

    def tick(self) -> bool:
        """Run one poll cycle if possible.

        Returns:
            True if the port was polled, False if the cycle was skipped
        """
        with self._lock:
            if self._state is not MonitorState.IDLE:
                return False
        try:
            token = self.link.try_acquire(MONITOR_OPERATION_ID)
        except LinkUnavailableError as e:
            logger.warning(f"Serial poll on {self.link.port} skipped: {e}")
            return False
        if token is None:
            return False
        try:
            with self._lock:
                if self._state is not MonitorState.IDLE:
                    return False
                self._state = MonitorState.POLLING
                self.polls += 1
            text = self.poller(self.link.port, self.window)
        except OSError as e:
            logger.warning(f"Serial poll on {self.link.port} failed: {e}")
            text = ""
        finally:
            with self._lock:
                if self._state is MonitorState.POLLING:
                    self._state = MonitorState.IDLE
            self.link.release(token)
        if text:
            self.on_output(text)
        return True

    def run_forever(self) -> None:
        """Poll every ``interval`` seconds until stopped."""
        while not self._stop_event.wait(self.interval):
            if self.state is MonitorState.STOPPED:
                break
            self.tick()

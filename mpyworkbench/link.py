"""Exclusive access to the serial link of a board.

The serial link is half-duplex: two tool invocations talking to the board at
the same time corrupt each other's framing. A :class:`DeviceLink` is the one
place that decides who may talk to the board. Board operations take it with
:meth:`DeviceLink.acquire_exclusive` (which also suspends the passive serial
monitor) and the monitor takes it per poll with :meth:`DeviceLink.try_acquire`.

Holding a link also holds a :class:`PortLock`, a lock file shared by every
process on the machine, so two workbench processes never use one port at once.
"""

import fcntl
import logging
import os
import re
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional, Protocol

from .exceptions import ExclusiveAccessError, LinkUnavailableError

logger = logging.getLogger(__name__)

# Interval between attempts on a lock file held by another process
LOCK_POLL_INTERVAL = 0.05


class MonitorHooks(Protocol):
    """What the link needs from an attached serial monitor."""

    def suspend(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    @property
    def suspended(self) -> bool: ...


@dataclass(frozen=True)
class ReleaseToken:
    """Proof of exclusive access, returned by an acquire call."""

    operation_id: str
    port: str
    nonce: str


@dataclass(frozen=True)
class ConnectionState:
    """Read-only view of a link."""

    port_identifier: str
    exclusive_holder: Optional[str]
    monitor_suspended: bool


def new_operation_id(name: str) -> str:
    """Build a unique operation id such as ``sync-diffs-1a2b3c4d``."""
    return f"{name}-{uuid.uuid4().hex[:8]}"


def default_lock_dir() -> Path:
    """Directory holding the per-port lock files.

    Uses ``$XDG_CACHE_HOME/mpyworkbench/locks``, falling back to
    ``~/.cache/mpyworkbench/locks``.
    """
    cache = os.environ.get("XDG_CACHE_HOME")
    base = Path(cache) if cache else Path.home() / ".cache"
    return base / "mpyworkbench" / "locks"


class PortLock:
    """Advisory ``flock`` on a file named after the port.

    Every process that talks to the same port opens the same lock file, so
    a second workbench instance (or a second CLI run) cannot use the board
    while this one holds the lock.
    """

    def __init__(self, port: str, lock_dir: Optional[Path] = None):
        name = re.sub(r"[^A-Za-z0-9_.-]", "_", port.strip("/")) or "port"
        self.path = (lock_dir or default_lock_dir()) / f"{name}.lock"
        self._file: Optional[IO[str]] = None
        self.locked = False

    def try_lock(self) -> bool:
        """Take the lock without blocking; False if another holder has it."""
        if self.locked:
            return True
        if self._file is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._file = open(self.path, "a")
            except OSError as e:
                raise LinkUnavailableError(
                    f"Cannot open lock file {self.path}: {e}"
                ) from e
        try:
            fcntl.flock(self._file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        self.locked = True
        return True

    def unlock(self) -> None:
        if self._file is not None and self.locked:
            fcntl.flock(self._file, fcntl.LOCK_UN)
        self.locked = False

    def close(self) -> None:
        self.unlock()
        if self._file is not None:
            self._file.close()
            self._file = None


class DeviceLink:
    """Mutual exclusion over the single serial connection to one port."""

    def __init__(
        self,
        port: str,
        default_timeout: Optional[float] = None,
        lock_dir: Optional[Path] = None,
    ):
        """Initialize the link.

        Args:
            port: Device path of the serial port
            default_timeout: Seconds to wait for the link when an acquire
                call gives no timeout (None waits forever)
            lock_dir: Directory of the per-port lock files
                (defaults to :func:`default_lock_dir`)
        """
        self.port = port
        self.default_timeout = default_timeout
        self._port_lock = PortLock(port, lock_dir)
        self._cond = threading.Condition()
        self._holder: Optional[ReleaseToken] = None
        self._monitor: Optional[MonitorHooks] = None
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        with self._cond:
            holder = self._holder.operation_id if self._holder else None
            monitor = self._monitor
        suspended = bool(monitor and monitor.suspended)
        return ConnectionState(
            port_identifier=self.port,
            exclusive_holder=holder,
            monitor_suspended=suspended,
        )

    @property
    def monitor(self) -> Optional[MonitorHooks]:
        return self._monitor

    def attach_monitor(self, monitor: MonitorHooks) -> None:
        """Attach the passive serial monitor for this port."""
        with self._cond:
            self._monitor = monitor

    def is_held(self) -> bool:
        with self._cond:
            return self._holder is not None

    def _take(self, operation_id: str) -> ReleaseToken:
        token = ReleaseToken(
            operation_id=operation_id, port=self.port, nonce=uuid.uuid4().hex
        )
        self._holder = token
        return token

    def acquire_exclusive(
        self, operation_id: str, timeout: Optional[float] = None
    ) -> ReleaseToken:
        """Wait for the link and take it for a board operation.

        The attached monitor is suspended before this returns, so no poll
        cycle can start until :meth:`release` is called.

        Args:
            operation_id: Identifier of the operation taking the link
            timeout: Seconds to wait (defaults to ``default_timeout``)

        Returns:
            Token to pass to :meth:`release`

        Raises:
            ExclusiveAccessError: If the link stays busy past the timeout or
                the link has been closed
            LinkUnavailableError: If the port lock file cannot be opened
        """
        if timeout is None:
            timeout = self.default_timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while True:
                if self._closed:
                    raise ExclusiveAccessError(f"Board link on {self.port} is closed")
                if self._holder is None and self._port_lock.try_lock():
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    holder = (
                        self._holder.operation_id
                        if self._holder
                        else "another process"
                    )
                    raise ExclusiveAccessError(
                        f"Board link on {self.port} is busy "
                        f"(held by {holder}); gave up after {timeout:.1f}s"
                    )
                if self._holder is not None:
                    self._cond.wait(remaining)
                else:
                    # Lock files give no wakeup; poll them
                    wait = LOCK_POLL_INTERVAL
                    self._cond.wait(wait if remaining is None else min(wait, remaining))
            token = self._take(operation_id)
            monitor = self._monitor

        if monitor is not None:
            monitor.suspend()
        logger.debug(f"Link {self.port} acquired by {operation_id}")
        return token

    def try_acquire(self, operation_id: str) -> Optional[ReleaseToken]:
        """Take the link only if it is free right now.

        Used by the serial monitor for a single poll cycle; never suspends
        the monitor.
        """
        with self._cond:
            if self._holder is not None or self._closed:
                return None
            if not self._port_lock.try_lock():
                return None
            return self._take(operation_id)

    def release(self, token: ReleaseToken) -> None:
        """Give the link back and resume the monitor if it was running.

        Raises:
            ExclusiveAccessError: If the token does not hold the link
        """
        with self._cond:
            if self._holder != token:
                raise ExclusiveAccessError(
                    f"Operation {token.operation_id} does not hold the link on "
                    f"{self.port}"
                )
            self._holder = None
            self._port_lock.unlock()
            monitor = self._monitor
            self._cond.notify_all()

        if monitor is not None:
            monitor.resume()
        logger.debug(f"Link {self.port} released by {token.operation_id}")

    def ensure_held(self, token: ReleaseToken) -> None:
        """Check that ``token`` currently holds the link.

        Raises:
            ExclusiveAccessError: If it does not
        """
        with self._cond:
            if self._holder != token:
                raise ExclusiveAccessError(
                    f"Board call on {self.port} attempted without exclusive access "
                    f"(operation {token.operation_id})"
                )

    @contextmanager
    def exclusive(
        self, operation_id: str, timeout: Optional[float] = None
    ) -> Iterator[ReleaseToken]:
        """Hold the link for the duration of a ``with`` block."""
        token = self.acquire_exclusive(operation_id, timeout=timeout)
        try:
            yield token
        finally:
            self.release(token)

    def close(self) -> None:
        """Tear the link down and stop its monitor."""
        with self._cond:
            self._closed = True
            self._port_lock.close()
            monitor = self._monitor
            self._monitor = None
            self._cond.notify_all()
        if monitor is not None:
            monitor.stop()
        logger.debug(f"Link {self.port} closed")


class LinkManager:
    """Keeps the link of the currently configured port.

    A new port tears the previous link down, so changing the configured port
    takes effect on the next operation without restarting.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._link: Optional[DeviceLink] = None

    @property
    def current(self) -> Optional[DeviceLink]:
        return self._link

    def get(self, port: str, default_timeout: Optional[float] = None) -> DeviceLink:
        with self._lock:
            if self._link is not None and self._link.port == port:
                self._link.default_timeout = default_timeout
                return self._link
            previous = self._link
            self._link = DeviceLink(port, default_timeout=default_timeout)
            link = self._link
        if previous is not None:
            logger.debug(f"Port changed from {previous.port} to {port}")
            previous.close()
        return link

    def close(self) -> None:
        with self._lock:
            link = self._link
            self._link = None
        if link is not None:
            link.close()

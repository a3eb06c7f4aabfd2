"""Raw REPL session with a MicroPython board over pyserial.

Protocol summary: Ctrl-C interrupts the running program, Ctrl-A enters raw
mode, each command is sent followed by Ctrl-D and answered with ``OK``, then
the board streams stdout up to a Ctrl-D, stderr up to a second Ctrl-D, and
prints ``>`` when ready for the next command. Ctrl-B returns to the friendly
REPL.
"""

import logging
import time
from typing import Optional

import serial

from .exceptions import RawReplError

logger = logging.getLogger(__name__)

CTRL_A = b"\x01"
CTRL_B = b"\x02"
CTRL_C = b"\x03"
CTRL_D = b"\x04"

RAW_REPL_BANNER = b"raw REPL; CTRL-B to exit\r\n"
WRITE_CHUNK = 256


class RawRepl:
    """One raw REPL session on an open serial port."""

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        timeout: float = 10.0,
        connection: Optional[serial.Serial] = None,
    ):
        """Open the port.

        Args:
            port: Device path of the serial port
            baudrate: Serial speed
            timeout: Seconds to wait for any single response
            connection: Already opened serial object (used by tests)
        """
        self.port = port
        self.timeout = timeout
        self.serial = connection or serial.Serial(
            port=port,
            baudrate=baudrate,
            timeout=0.1,
            write_timeout=timeout,
            exclusive=True,
        )
        self.in_raw_repl = False
        self._buffer = b""

    def __enter__(self) -> "RawRepl":
        self.enter_raw_repl()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if self.in_raw_repl:
                self.exit_raw_repl()
        finally:
            self.close()

    def close(self) -> None:
        if self.serial.is_open:
            self.serial.close()

    def write(self, data: bytes) -> None:
        self.serial.write(data)
        self.serial.flush()

    def read_until(self, ending: bytes, timeout: Optional[float] = None) -> bytes:
        """Read until ``ending`` is received.

        Raises:
            RawReplError: If ``ending`` does not arrive in time
        """
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while ending not in self._buffer:
            chunk = self.serial.read(max(1, self.serial.in_waiting))
            if chunk:
                self._buffer += chunk
                deadline = time.monotonic() + timeout
            elif time.monotonic() > deadline:
                raise RawReplError(
                    f"Timed out waiting for {ending!r} from {self.port} "
                    f"(received {self._buffer[-80:]!r})"
                )
        end = self._buffer.index(ending) + len(ending)
        data, self._buffer = self._buffer[:end], self._buffer[end:]
        return data

    def read_exact(self, size: int, timeout: Optional[float] = None) -> bytes:
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while len(self._buffer) < size and time.monotonic() <= deadline:
            self._buffer += self.serial.read(size - len(self._buffer))
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def _flush_input(self) -> None:
        self._buffer = b""
        while self.serial.in_waiting:
            self.serial.read(self.serial.in_waiting)

    def interrupt(self) -> None:
        """Send Ctrl-C twice to stop any running program."""
        self.write(b"\r" + CTRL_C + CTRL_C)
        time.sleep(0.1)
        self._flush_input()

    def enter_raw_repl(self) -> None:
        self.interrupt()
        self.write(b"\r" + CTRL_A)
        data = self.read_until(RAW_REPL_BANNER)
        if not data.endswith(RAW_REPL_BANNER):
            raise RawReplError(f"Could not enter raw REPL on {self.port}")
        self.in_raw_repl = True
        logger.debug(f"Entered raw REPL on {self.port}")

    def exit_raw_repl(self) -> None:
        self.write(b"\r" + CTRL_B)
        self.in_raw_repl = False

    def soft_reset(self) -> None:
        """Soft-reset the board from the friendly REPL."""
        self.interrupt()
        self.write(CTRL_D)

    def exec(self, code: str, timeout: Optional[float] = None) -> bytes:
        """Execute code in the raw REPL and return its stdout.

        Raises:
            RawReplError: If the board rejects the command or the code raises
        """
        if not self.in_raw_repl:
            raise RawReplError("exec called outside the raw REPL")

        prompt = self.read_until(b">", timeout=timeout)
        if not prompt.endswith(b">"):
            raise RawReplError(f"No raw REPL prompt from {self.port}")

        payload = code.encode("utf-8")
        for i in range(0, len(payload), WRITE_CHUNK):
            self.serial.write(payload[i : i + WRITE_CHUNK])
            time.sleep(0.01)
        self.write(CTRL_D)

        status = self.read_exact(2, timeout=timeout)
        if status != b"OK":
            raise RawReplError(f"Board refused command (response: {status!r})")

        out = self.read_until(CTRL_D, timeout=timeout)[:-1]
        err = self.read_until(CTRL_D, timeout=timeout)[:-1]
        if err:
            message = err.decode("utf-8", errors="replace").strip()
            # last traceback line holds the exception, e.g. "OSError: ENOENT"
            raise RawReplError(message.splitlines()[-1] if message else "error")
        return out

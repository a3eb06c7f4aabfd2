"""Device-control tool invoked as a subprocess by the board filesystem client.

Usage::

    python -m mpyworkbench.boardtool <subcommand> --port DEV --baudrate N \\
        [--path PATH] [payload options]

Listing prints JSON on stdout, ``read`` prints the file content as hex, every
other subcommand reports success through its exit code. Failures are written
to stderr and exit with status 1.
"""

import sys
from pathlib import Path
from typing import Any, Callable

import click
import serial

from .exceptions import RawReplError
from .rawrepl import RawRepl

TRANSFER_CHUNK = 256

_IMPORTS = """\
import os
try:
    import binascii
except ImportError:
    import ubinascii as binascii
"""

_LIST_FUNCS = """\
import json
try:
    import hashlib
except ImportError:
    try:
        import uhashlib as hashlib
    except ImportError:
        hashlib = None

def _hash(p):
    if hashlib is None or not hasattr(hashlib, 'sha256'):
        return None
    h = hashlib.sha256()
    with open(p, 'rb') as f:
        while True:
            b = f.read(512)
            if not b:
                break
            h.update(b)
    return binascii.hexlify(h.digest()).decode()

def _join(d, n):
    return d + n if d.endswith('/') else d + '/' + n

def _walk(d, rec, with_hash, out):
    for item in os.ilistdir(d):
        p = _join(d, item[0])
        if item[1] & 0x4000:
            out.append({'path': p, 'isDir': True})
            if rec:
                _walk(p, rec, with_hash, out)
        else:
            st = os.stat(p)
            e = {'path': p, 'isDir': False, 'size': st[6], 'mtime': st[8]}
            if with_hash:
                e['hash'] = _hash(p)
            out.append(e)
"""


def list_script(path: str, recursive: bool, with_hash: bool) -> str:
    """Board code printing a JSON listing of ``path``."""
    return (
        _IMPORTS
        + _LIST_FUNCS
        + f"_out = []\n_walk({path!r}, {recursive}, {with_hash}, _out)\n"
        + "print(json.dumps(_out))\n"
    )


def read_script(path: str) -> str:
    """Board code printing the content of ``path`` as hex lines."""
    return (
        _IMPORTS
        + f"with open({path!r}, 'rb') as f:\n"
        + "    while True:\n"
        + f"        b = f.read({TRANSFER_CHUNK})\n"
        + "        if not b:\n"
        + "            break\n"
        + "        print(binascii.hexlify(b).decode())\n"
    )


def mkdir_script(path: str) -> str:
    """Board code creating ``path``; an existing directory is not an error."""
    return (
        "import os\n"
        "try:\n"
        f"    os.mkdir({path!r})\n"
        "except OSError as e:\n"
        "    if e.args[0] != 17:\n"
        "        raise\n"
    )


def rm_script(path: str) -> str:
    """Board code removing a file or an empty directory."""
    return (
        "import os\n"
        f"if os.stat({path!r})[0] & 0x4000:\n"
        f"    os.rmdir({path!r})\n"
        "else:\n"
        f"    os.remove({path!r})\n"
    )


def write_file(repl: RawRepl, path: str, data: bytes) -> None:
    """Stream ``data`` into ``path`` on the board."""
    repl.exec(f"f = open({path!r}, 'wb')\nw = f.write\n")
    try:
        for i in range(0, len(data), TRANSFER_CHUNK):
            repl.exec(f"w({data[i : i + TRANSFER_CHUNK]!r})\n")
    finally:
        repl.exec("f.close()\n")


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _session(
    port: str, baudrate: int, timeout: float, action: Callable[[RawRepl], Any]
) -> Any:
    """Run ``action`` inside a raw REPL session, mapping errors to exit 1."""
    try:
        with RawRepl(port, baudrate=baudrate, timeout=timeout) as repl:
            return action(repl)
    except serial.SerialException as e:
        _fail(f"Could not open {port}: {e}")
    except RawReplError as e:
        _fail(str(e))


def device_options(func: Callable) -> Callable:
    """Options shared by every subcommand."""
    func = click.option(
        "--timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for each board response (default: 10)",
    )(func)
    func = click.option(
        "--baudrate", "-b", type=int, default=115200, help="Serial speed"
    )(func)
    func = click.option(
        "--port", "-p", required=True, help="Serial device, e.g. /dev/ttyUSB0"
    )(func)
    return func


@click.group()
def main() -> None:
    """Low-level MicroPython board access over the raw REPL."""


@main.command("ls")
@device_options
@click.option("--path", default="/", help="Directory to list (default: /)")
@click.option("--recursive", "-r", is_flag=True, help="Descend into directories")
@click.option("--hash", "with_hash", is_flag=True, help="Include SHA-256 digests")
def ls_command(
    port: str,
    baudrate: int,
    timeout: float,
    path: str,
    recursive: bool,
    with_hash: bool,
) -> None:
    """Print a JSON listing of PATH."""
    out = _session(
        port,
        baudrate,
        timeout,
        lambda repl: repl.exec(list_script(path, recursive, with_hash)),
    )
    click.echo(out.decode("utf-8", errors="replace").strip())


@main.command("read")
@device_options
@click.option("--path", required=True, help="File to read")
def read_command(port: str, baudrate: int, timeout: float, path: str) -> None:
    """Print the content of PATH as hex."""
    out = _session(port, baudrate, timeout, lambda repl: repl.exec(read_script(path)))
    click.echo("".join(out.decode("ascii", errors="replace").split()))


@main.command("write")
@device_options
@click.option("--path", required=True, help="Destination on the board")
@click.option(
    "--source",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Local file whose content is written",
)
def write_command(
    port: str, baudrate: int, timeout: float, path: str, source: Path
) -> None:
    """Write the content of SOURCE to PATH."""
    data = source.read_bytes()
    _session(port, baudrate, timeout, lambda repl: write_file(repl, path, data))


@main.command("mkdir")
@device_options
@click.option("--path", required=True, help="Directory to create")
def mkdir_command(port: str, baudrate: int, timeout: float, path: str) -> None:
    """Create directory PATH (no error if it exists)."""
    _session(port, baudrate, timeout, lambda repl: repl.exec(mkdir_script(path)))


@main.command("rm")
@device_options
@click.option("--path", required=True, help="File or empty directory to remove")
def rm_command(port: str, baudrate: int, timeout: float, path: str) -> None:
    """Remove a file or an empty directory."""
    _session(port, baudrate, timeout, lambda repl: repl.exec(rm_script(path)))


def _control(port: str, baudrate: int, timeout: float, sequence: str) -> None:
    try:
        repl = RawRepl(port, baudrate=baudrate, timeout=timeout)
    except serial.SerialException as e:
        _fail(f"Could not open {port}: {e}")
        return
    try:
        if sequence == "interrupt":
            repl.write(b"\x03")
        elif sequence == "stop":
            repl.interrupt()
            repl.exit_raw_repl()
        elif sequence == "soft-reset":
            repl.soft_reset()
    except serial.SerialException as e:
        _fail(f"Could not write to {port}: {e}")
    finally:
        repl.close()


@main.command("interrupt")
@device_options
def interrupt_command(port: str, baudrate: int, timeout: float) -> None:
    """Send a single Ctrl-C."""
    _control(port, baudrate, timeout, "interrupt")


@main.command("stop")
@device_options
def stop_command(port: str, baudrate: int, timeout: float) -> None:
    """Stop the running program and return to the friendly REPL."""
    _control(port, baudrate, timeout, "stop")


@main.command("soft-reset")
@device_options
def soft_reset_command(port: str, baudrate: int, timeout: float) -> None:
    """Interrupt the running program and soft-reset the board."""
    _control(port, baudrate, timeout, "soft-reset")


if __name__ == "__main__":
    main()

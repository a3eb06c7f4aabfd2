"""CLI interface for MicroPython WorkBench."""

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import click

from .config import list_serial_ports
from .exceptions import WorkbenchError
from .output import OutputFormatter
from .sync.models import (
    CancellationToken,
    DiffEntry,
    DiffKind,
    SyncDirection,
    SyncResult,
)
from .workbench import COMMANDS, Workbench, get_command

logger = logging.getLogger(__name__)


@contextmanager
def cancel_on_sigint(
    cancel: CancellationToken, out: OutputFormatter
) -> Iterator[CancellationToken]:
    """Turn the first Ctrl-C into a cancellation request.

    The operation stops after the current file; a second Ctrl-C interrupts
    immediately.
    """
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        if cancel.cancelled:
            raise KeyboardInterrupt
        cancel.cancel()
        out.warning("Cancelling after the current file (Ctrl-C again to abort)")

    signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def report_result(ctx: Any, title: str, result: SyncResult) -> None:
    """Print the outcome of a sync operation and set the exit code."""
    out: OutputFormatter = ctx.obj["out"]
    if out.json_output:
        out.output_json(result.to_dict())
    elif result.cancelled:
        out.warning(result.summary())
    elif result.success:
        out.success(f"{title}: {result.summary()}")
    else:
        out.error(f"{title}: {result.summary()}")

    if result.cancelled:
        ctx.exit(130)
    if not result.success:
        ctx.exit(1)


def run_sync(
    ctx: Any,
    title: str,
    operation: Callable[[CancellationToken], SyncResult],
) -> None:
    """Run a cancellable sync operation with the CLI's error handling."""
    out: OutputFormatter = ctx.obj["out"]
    cancel = CancellationToken()
    try:
        with cancel_on_sigint(cancel, out):
            result = operation(cancel)
    except KeyboardInterrupt:
        out.warning("\nOperation cancelled by user")
        ctx.exit(130)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)
    report_result(ctx, title, result)


def run_control(ctx: Any, message: str, operation: Callable[[], Any]) -> None:
    out: OutputFormatter = ctx.obj["out"]
    try:
        operation()
    except KeyboardInterrupt:
        ctx.exit(130)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)
    if out.json_output:
        out.output_json({"success": True})
    else:
        out.success(message)


@click.group()
@click.option(
    "--workspace",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace directory (default: current directory)",
)
@click.option("--port", "-p", help="Serial port, e.g. /dev/ttyUSB0 or 'auto'")
@click.option("--baudrate", "-b", type=int, help="Serial speed (default: 115200)")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="mpyworkbench")
@click.pass_context
def main(
    ctx: Any,
    workspace: Optional[Path],
    port: Optional[str],
    baudrate: Optional[int],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """MicroPython WorkBench - run, sync and monitor a MicroPython board."""
    ctx.ensure_object(dict)
    out = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["out"] = out
    ctx.obj["workbench"] = Workbench(
        workspace=workspace,
        overrides={"connect": port, "baudrate": baudrate},
        output=out,
    )
    ctx.call_on_close(ctx.obj["workbench"].close)

    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("mpyworkbench").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def run(ctx: Any, file: Path) -> None:
    """Run FILE on the board without copying it (runActiveFile)."""
    wb: Workbench = ctx.obj["workbench"]
    run_control(ctx, f"Finished running {file.name}", lambda: wb.run_active_file(file))


@main.command()
@click.pass_context
def repl(ctx: Any) -> None:
    """Open an interactive REPL on the board (openRepl)."""
    wb: Workbench = ctx.obj["workbench"]
    run_control(ctx, "REPL closed", wb.open_repl)


@main.command()
@click.pass_context
def stop(ctx: Any) -> None:
    """Stop the running program (stop)."""
    wb: Workbench = ctx.obj["workbench"]
    run_control(ctx, "Program stopped", wb.stop)


@main.command("soft-reset")
@click.pass_context
def soft_reset(ctx: Any) -> None:
    """Soft-reset the board (softReset)."""
    wb: Workbench = ctx.obj["workbench"]
    run_control(ctx, "Board soft-reset", wb.soft_reset)


@main.command()
@click.pass_context
def interrupt(ctx: Any) -> None:
    """Send Ctrl-C to the board (serialSendCtrlC)."""
    wb: Workbench = ctx.obj["workbench"]
    run_control(ctx, "Ctrl-C sent", wb.serial_send_ctrl_c)


@main.command("upload-all")
@click.pass_context
def upload_all(ctx: Any) -> None:
    """Upload every local file to the board (syncBaseline).

    Files that exist only on the board are left alone.
    """
    wb: Workbench = ctx.obj["workbench"]
    run_sync(ctx, "Upload complete", lambda cancel: wb.sync_baseline(cancel=cancel))


@main.command("download-all")
@click.pass_context
def download_all(ctx: Any) -> None:
    """Download every board file (syncBaselineFromBoard).

    Files that exist only locally are left alone.
    """
    wb: Workbench = ctx.obj["workbench"]
    run_sync(
        ctx,
        "Download complete",
        lambda cancel: wb.sync_baseline_from_board(cancel=cancel),
    )


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Also list unchanged paths")
@click.pass_context
def diff(ctx: Any, show_all: bool) -> None:
    """Show differences between the local tree and the board (checkDiffs)."""
    out: OutputFormatter = ctx.obj["out"]
    wb: Workbench = ctx.obj["workbench"]
    try:
        result = wb.check_diffs()
    except KeyboardInterrupt:
        out.warning("\nOperation cancelled by user")
        ctx.exit(130)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)

    def size_of(entry: DiffEntry) -> str:
        info = entry.source or entry.target
        if info is None or info.size is None:
            return ""
        return out.format_size(info.size)

    entries = [d for d in result.diff if show_all or d.kind is not DiffKind.UNCHANGED]
    table_data = [
        {
            "path": d.path + ("/" if d.is_dir else ""),
            "kind": d.kind.value,
            "size": size_of(d),
            "note": "file/directory conflict" if d.type_conflict else "",
        }
        for d in entries
    ]
    if out.json_output:
        out.output_json(table_data)
        return
    if not table_data:
        out.success("No differences - local tree and board are in sync")
        return
    out.output_table(
        table_data,
        ["kind", "path", "size", "note"],
        {"kind": "Change", "path": "Path", "size": "Size"},
    )


@main.command()
@click.option(
    "--direction",
    "-d",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.LOCAL_TO_BOARD.value,
    show_default=True,
    help="Side that receives the changes",
)
@click.option(
    "--delete",
    "include_deletes",
    is_flag=True,
    help="Also delete paths that do not exist on the source side",
)
@click.pass_context
def sync(ctx: Any, direction: str, include_deletes: bool) -> None:
    """Sync changed files (syncDiffsLocalToBoard / syncDiffsBoardToLocal).

    Without --delete nothing is ever deleted on the receiving side.
    """
    wb: Workbench = ctx.obj["workbench"]
    run_sync(
        ctx,
        "Sync complete",
        lambda cancel: wb.sync_diffs(
            SyncDirection(direction), include_deletes=include_deletes, cancel=cancel
        ),
    )


@main.command("delete-all")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def delete_all(ctx: Any, yes: bool) -> None:
    """Delete every file and directory on the board (deleteAllBoard)."""
    out: OutputFormatter = ctx.obj["out"]
    wb: Workbench = ctx.obj["workbench"]
    if not yes and not click.confirm(
        "Delete ALL files on the board? This cannot be undone", default=False
    ):
        out.info("Aborted")
        return
    run_sync(ctx, "Board wiped", lambda cancel: wb.delete_all_board(cancel=cancel))


@main.command()
@click.pass_context
def autosync(ctx: Any) -> None:
    """Toggle auto-sync on save for this workspace (toggleWorkspaceAutoSync)."""
    out: OutputFormatter = ctx.obj["out"]
    wb: Workbench = ctx.obj["workbench"]
    try:
        enabled = wb.toggle_workspace_auto_sync()
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)
    if out.json_output:
        out.output_json({"autoSyncOnSave": enabled})
    else:
        out.success(f"Auto-sync on save {'enabled' if enabled else 'disabled'}")


@main.command("on-save")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def on_save(ctx: Any, path: Path) -> None:
    """Upload PATH if auto-sync on save is enabled (for editor save hooks)."""
    out: OutputFormatter = ctx.obj["out"]
    wb: Workbench = ctx.obj["workbench"]
    try:
        result = wb.on_save(path)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)
    if result is None:
        out.info("Auto-sync on save is disabled for this workspace")
        return
    report_result(ctx, f"Synced {path.name}", result)


@main.command()
@click.pass_context
def ports(ctx: Any) -> None:
    """List serial ports."""
    out: OutputFormatter = ctx.obj["out"]
    table_data = [
        {
            "device": p.device,
            "description": p.description or "",
            "usb": (
                f"{p.vid:04x}:{p.pid:04x}"
                if p.vid is not None and p.pid is not None
                else ""
            ),
        }
        for p in list_serial_ports()
    ]
    if not table_data and not out.json_output:
        out.warning("No serial ports found")
        return
    out.output_table(
        table_data,
        ["device", "description", "usb"],
        {"device": "Device", "description": "Description", "usb": "USB ID"},
    )


@main.command()
@click.pass_context
def monitor(ctx: Any) -> None:
    """Print the board's serial output until Ctrl-C."""
    out: OutputFormatter = ctx.obj["out"]
    wb: Workbench = ctx.obj["workbench"]
    try:
        serial_monitor = wb.start_monitor(on_output=click.echo, background=False)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)
    out.info(f"Monitoring {serial_monitor.link.port} (Ctrl-C to quit)")
    try:
        serial_monitor.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        serial_monitor.stop()


@main.command()
@click.pass_context
def actions(ctx: Any) -> None:
    """List the available command IDs."""
    out: OutputFormatter = ctx.obj["out"]
    out.output_table(
        [
            {"id": spec.command_id, "label": spec.label, "kind": spec.kind}
            for spec in COMMANDS
        ],
        ["id", "label", "kind"],
        {"id": "Command", "label": "Label", "kind": "Kind"},
    )


@main.command()
@click.argument("command_id")
@click.option(
    "--file",
    "file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File for runActiveFile",
)
@click.option("--delete", "include_deletes", is_flag=True, help="Delete-inclusive sync")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation for deleteAllBoard")
@click.pass_context
def command(
    ctx: Any,
    command_id: str,
    file: Optional[Path],
    include_deletes: bool,
    yes: bool,
) -> None:
    """Run a workbench command by ID (see 'actions')."""
    out: OutputFormatter = ctx.obj["out"]
    wb: Workbench = ctx.obj["workbench"]
    try:
        spec = get_command(command_id)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(2)

    if spec.command_id == "checkDiffs":
        ctx.invoke(diff)
        return
    if spec.command_id == "deleteAllBoard":
        ctx.invoke(delete_all, yes=yes)
        return

    kwargs: dict[str, Any] = {}
    if spec.command_id == "runActiveFile":
        kwargs["path"] = file
    if spec.command_id.startswith("syncDiffs"):
        kwargs["include_deletes"] = include_deletes

    if spec.method.startswith(("sync", "delete")):
        run_sync(
            ctx,
            spec.label,
            lambda cancel: wb.dispatch(command_id, cancel=cancel, **kwargs),
        )
        return

    try:
        value = wb.dispatch(command_id, **kwargs)
    except KeyboardInterrupt:
        ctx.exit(130)
    except WorkbenchError as e:
        out.error(str(e))
        ctx.exit(1)

    if isinstance(value, SyncResult):
        report_result(ctx, spec.label, value)
    elif isinstance(value, bool):
        state = "enabled" if value else "disabled"
        if out.json_output:
            out.output_json({"command": command_id, "value": value})
        else:
            out.success(f"{spec.label}: {state}")
    elif out.json_output:
        out.output_json({"command": command_id, "success": True})
    else:
        out.success(f"{spec.label}: done")


if __name__ == "__main__":
    main()

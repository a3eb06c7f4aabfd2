"""Sync orchestrator: baselines, diffs, selective sync and delete-all."""

import logging
from pathlib import Path
from typing import Callable, Optional

from rich.progress import Progress, SpinnerColumn, TextColumn

from ..boardfs import BoardFilesystem
from ..config import Settings
from ..exceptions import (
    ExclusiveAccessError,
    LinkUnavailableError,
    ToolInvocationError,
    WorkbenchConfigError,
    WorkbenchError,
)
from ..link import DeviceLink, new_operation_id
from ..output import OutputFormatter
from ..toolchain import Toolchain
from ..utils import normalize_path, parent_paths
from .comparator import diff
from .models import (
    ActionKind,
    CancellationToken,
    EqualityPolicy,
    OperationState,
    PlanAction,
    Snapshot,
    SyncDirection,
    SyncResult,
)
from .operations import BoardTarget, LocalTarget, SyncTarget
from .plan import SyncPlan, build_plan, plan_baseline, plan_delete_all
from .scanner import LocalScanner, is_ignored

logger = logging.getLogger(__name__)

BoardFactory = Callable[..., BoardFilesystem]


def is_fatal(error: Exception) -> bool:
    """Whether an error during one action must abort the whole operation.

    A tool that exited with a status reported a per-file failure; a tool that
    could not be run or timed out means the board cannot be reached at all.
    """
    if isinstance(error, ToolInvocationError):
        return error.returncode is None
    if isinstance(error, (ExclusiveAccessError, LinkUnavailableError)):
        return True
    return not isinstance(error, (WorkbenchError, OSError))


class SyncEngine:
    """Runs sync operations against one board under exclusive link access."""

    def __init__(
        self,
        link: DeviceLink,
        toolchain: Toolchain,
        settings: Settings,
        output: Optional[OutputFormatter] = None,
        board_factory: Optional[BoardFactory] = None,
    ):
        """Initialize sync engine.

        Args:
            link: Link of the board's port
            toolchain: Resolved interpreter and tool command
            settings: Settings read at the start of the operation
            output: Output formatter for progress and status
            board_factory: Builds the board client for an acquired token
        """
        self.link = link
        self.toolchain = toolchain
        self.settings = settings
        self.output = output or OutputFormatter()
        self.board_factory = board_factory or BoardFilesystem
        self.policy = EqualityPolicy(settings.equality)
        self.scanner = LocalScanner(ignore_patterns=settings.ignore)

    @property
    def local_root(self) -> Path:
        return self.settings.local_root

    @property
    def _show_progress(self) -> bool:
        return not (self.output.quiet or self.output.json_output)

    def _set_state(self, result: SyncResult, state: OperationState) -> None:
        result.state = state
        logger.debug(f"{result.operation}: {state.value}")

    def _run(
        self,
        operation: str,
        body: Callable[[BoardFilesystem, SyncResult], None],
    ) -> SyncResult:
        """Run ``body`` while holding exclusive access to the link.

        The link is released, and the serial monitor resumed, whatever
        happens inside ``body``.
        """
        result = SyncResult(operation)
        self._set_state(result, OperationState.ACQUIRING_LINK)
        try:
            token = self.link.acquire_exclusive(
                new_operation_id(operation), timeout=self.settings.link_timeout
            )
        except WorkbenchError:
            self._set_state(result, OperationState.FAILED)
            raise

        failed = True
        try:
            self._set_state(result, OperationState.EXECUTING)
            board = self.board_factory(self.link, token, self.toolchain, self.settings)
            body(board, result)
            failed = False
        finally:
            self._set_state(result, OperationState.RELEASING)
            self.link.release(token)
            self._set_state(
                result, OperationState.FAILED if failed else OperationState.DONE
            )
        return result

    def _snapshot_local(self) -> Snapshot:
        try:
            return self.scanner.snapshot(self.local_root, self.policy)
        except ValueError as e:
            raise WorkbenchConfigError(f"Cannot sync: {e}") from e

    def _snapshot_board(
        self,
        board: BoardFilesystem,
        strict: bool,
        policy: Optional[EqualityPolicy] = None,
    ) -> Snapshot:
        policy = policy or self.policy
        if not self._show_progress:
            return board.snapshot(policy, self.settings.ignore, strict=strict)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            progress.add_task(f"Listing board on {self.link.port}...", total=None)
            return board.snapshot(policy, self.settings.ignore, strict=strict)

    def _apply_action(
        self, action: PlanAction, target: SyncTarget, result: SyncResult
    ) -> None:
        """Apply one action and record its outcome; only fatal errors propagate."""
        if action.kind is ActionKind.CONFLICT:
            result.record(action.path, action.kind, action.reason)
            if not self.output.quiet:
                self.output.warning(f"Conflict at {action.path}: {action.reason}")
            return
        try:
            target.apply(action)
        except Exception as e:
            if is_fatal(e):
                raise
            logger.debug(f"{action.kind.value} {action.path} failed: {e}")
            result.record(action.path, action.kind, str(e))
            if not self.output.quiet:
                self.output.error(f"Error syncing {action.path}: {e}")
        else:
            result.record(action.path, action.kind)

    def apply_plan(
        self,
        plan: SyncPlan,
        target: SyncTarget,
        result: SyncResult,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Apply every action of ``plan`` in order.

        A failed action is recorded and the rest of the plan continues.
        Cancellation is checked between actions.
        """
        if plan.is_empty:
            return

        def run(advance: Callable[[], None]) -> None:
            for action in plan:
                if cancel is not None and cancel.cancelled:
                    result.cancelled = True
                    logger.info(f"{result.operation} cancelled before {action.path}")
                    return
                self._apply_action(action, target, result)
                advance()

        if not self._show_progress:
            run(lambda: None)
            return
        with Progress() as progress:
            task = progress.add_task(
                f"Syncing to {target.name}...", total=len(plan.actions)
            )
            run(lambda: progress.update(task, advance=1))
        self._display_summary(result)

    def _display_summary(self, result: SyncResult) -> None:
        counts: dict[ActionKind, int] = {}
        for item in result.succeeded:
            counts[item.action] = counts.get(item.action, 0) + 1
        self.output.print_summary(
            "Sync Summary",
            [
                ("Directories created", str(counts.get(ActionKind.MKDIR, 0))),
                ("Files written", str(counts.get(ActionKind.WRITE, 0))),
                ("Files deleted", str(counts.get(ActionKind.DELETE_FILE, 0))),
                ("Directories deleted", str(counts.get(ActionKind.DELETE_DIR, 0))),
                ("Failed", str(len(result.failed))),
            ],
        )

    def _display_plan(self, plan: SyncPlan) -> None:
        if not self._show_progress:
            return
        writes = plan.count(ActionKind.WRITE)
        deletes = plan.count(ActionKind.DELETE_FILE)
        deletes += plan.count(ActionKind.DELETE_DIR)
        conflicts = plan.count(ActionKind.CONFLICT)
        if plan.is_empty:
            self.output.info("No changes needed - everything is in sync!")
            return
        if writes:
            self.output.info(f"  ↑ Write: {writes} file(s)")
        if deletes:
            self.output.info(f"  ✗ Delete: {deletes} entry(ies)")
        if conflicts:
            self.output.warning(f"  ⚠ Conflicts: {conflicts} path(s)")

    def baseline_upload(self, cancel: Optional[CancellationToken] = None) -> SyncResult:
        """Write every local file to the board; never deletes board files."""

        def body(board: BoardFilesystem, result: SyncResult) -> None:
            plan = plan_baseline(self._snapshot_local())
            self._display_plan(plan)
            self.apply_plan(plan, BoardTarget(board, self.local_root), result, cancel)

        return self._run("sync-baseline", body)

    def baseline_download(
        self, cancel: Optional[CancellationToken] = None
    ) -> SyncResult:
        """Copy every board file to the local tree; never deletes local files."""

        def body(board: BoardFilesystem, result: SyncResult) -> None:
            self.local_root.mkdir(parents=True, exist_ok=True)
            # Baselines compare nothing and need no board hashes
            listing = self._snapshot_board(board, False, EqualityPolicy.SIZE)
            plan = plan_baseline(listing)
            self._display_plan(plan)
            self.apply_plan(plan, LocalTarget(board, self.local_root), result, cancel)

        return self._run("sync-baseline-from-board", body)

    def check_diffs(self) -> SyncResult:
        """Diff local (source) against board (target) without applying anything."""

        def body(board: BoardFilesystem, result: SyncResult) -> None:
            local = self._snapshot_local()
            remote = self._snapshot_board(board, strict=False)
            result.diff = diff(local, remote)

        return self._run("check-diffs", body)

    def sync_diffs(
        self,
        direction: SyncDirection,
        include_deletes: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> SyncResult:
        """Apply added and modified paths in ``direction``.

        Paths missing from the source are deleted on the target only when
        ``include_deletes`` is set. Such a sync refuses to run on an
        unreadable board listing instead of treating it as empty.

        Args:
            direction: Which side receives the changes
            include_deletes: Delete target paths that the source does not have
            cancel: Checked between actions

        Returns:
            SyncResult with the diff and one FileResult per applied action
        """
        direction = SyncDirection(direction)

        def body(board: BoardFilesystem, result: SyncResult) -> None:
            local = self._snapshot_local()
            remote = self._snapshot_board(board, strict=include_deletes)
            target: SyncTarget
            if direction is SyncDirection.LOCAL_TO_BOARD:
                result.diff = diff(local, remote)
                target = BoardTarget(board, self.local_root)
            else:
                result.diff = diff(remote, local)
                target = LocalTarget(board, self.local_root)
            plan = build_plan(result.diff, include_deletes=include_deletes)
            self._display_plan(plan)
            self.apply_plan(plan, target, result, cancel)

        name = f"sync-diffs-{direction.value}"
        return self._run(name, body)

    def delete_all_board(
        self, cancel: Optional[CancellationToken] = None
    ) -> SyncResult:
        """Delete every file and directory on the board, children first."""

        def body(board: BoardFilesystem, result: SyncResult) -> None:
            listing = board.snapshot(EqualityPolicy.SIZE, ignore=(), strict=True)
            plan = plan_delete_all(listing)
            self._display_plan(plan)
            self.apply_plan(plan, BoardTarget(board, self.local_root), result, cancel)

        return self._run("delete-all-board", body)

    def sync_file(self, path: Path) -> SyncResult:
        """Upload one local file, creating its parent directories on the board.

        Files outside the sync root or matching an ignore pattern are skipped
        and yield an empty result.
        """
        path = Path(path)
        if not path.is_absolute():
            path = self.local_root / path
        try:
            relative = normalize_path(
                path.resolve().relative_to(self.local_root.resolve()).as_posix()
            )
        except ValueError:
            logger.debug(f"{path} is outside {self.local_root}, not syncing")
            return SyncResult("sync-file", state=OperationState.DONE)
        if (
            not relative
            or not path.is_file()
            or is_ignored(relative, self.settings.ignore)
        ):
            return SyncResult("sync-file", state=OperationState.DONE)

        def body(board: BoardFilesystem, result: SyncResult) -> None:
            actions = [PlanAction(ActionKind.MKDIR, p) for p in parent_paths(relative)]
            actions.append(PlanAction(ActionKind.WRITE, relative))
            target = BoardTarget(board, self.local_root)
            for action in SyncPlan(actions):
                self._apply_action(action, target, result)

        return self._run("sync-file", body)

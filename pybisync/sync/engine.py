"""Run coordinator: the bisync state machine."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, TypeVar

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..config import BisyncOptions, CheckSyncMode
from ..exceptions import BisyncError, CriticalError, EmptyListingError, SafetyAbort
from ..output import OutputFormatter
from ..utils import default_workdir, session_name
from .delta import Change, DeltaClassifier
from .filters import FilterSet
from .listing import PathListing, Side
from .operations import Backend, LocalBackend, SyncOperations
from .propagator import ActionPropagator, PropagationReport, PropagationResult
from .resolver import ConflictResolver, SyncPlan
from .safety import SafetyGate, SafetyReport
from .state import (
    WORKING_SUFFIX,
    HistoryState,
    ListingStore,
    LockoutManager,
    RunLock,
)
from .verifier import CheckSyncReport, IntegrityVerifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunState(str, Enum):
    """States of a bisync run."""

    IDLE = "idle"
    LISTING = "listing"
    COMPARING = "comparing"
    SAFETY_CHECK = "safety_check"
    PROPAGATING = "propagating"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    LOCKED_OUT = "locked_out"


# States in which an unexpected error leaves the trees in an unknown state
CRITICAL_STATES = (RunState.LISTING, RunState.PROPAGATING, RunState.VERIFYING)


class ExitStatus(str, Enum):
    """Outcome of a run as reported to the caller."""

    SUCCESS = "success"
    ABORTED_MAX_DELETE = "aborted_max_delete"
    ABORTED_CHECK_ACCESS = "aborted_check_access"
    ABORTED_FILTERS_CHANGED = "aborted_filters_changed"
    CRITICAL_LOCKOUT = "critical_lockout"
    EMPTY_LISTING = "empty_listing"
    NO_PRIOR_LISTINGS = "no_prior_listings"
    CHECK_SYNC_FAILED = "check_sync_failed"

    @property
    def exit_code(self) -> int:
        """Process exit code: 0 success, 2 critical lockout, 1 otherwise."""
        if self is ExitStatus.SUCCESS:
            return 0
        if self is ExitStatus.CRITICAL_LOCKOUT:
            return 2
        return 1


@dataclass
class RunResult:
    """Everything a caller needs to know about a finished run."""

    status: ExitStatus
    state: RunState
    message: str = ""
    recovery_hint: Optional[str] = None
    plan: Optional[SyncPlan] = None
    propagation: Optional[PropagationReport] = None
    check_sync: Optional[CheckSyncReport] = None
    safety: Optional[SafetyReport] = None
    dry_run: bool = False
    resync: bool = False
    stats: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is ExitStatus.SUCCESS

    def to_dict(self) -> dict:
        """JSON-friendly summary."""
        data = {
            "status": self.status.value,
            "state": self.state.value,
            "message": self.message,
            "recovery_hint": self.recovery_hint,
            "dry_run": self.dry_run,
            "resync": self.resync,
            "stats": self.stats,
        }
        if self.plan is not None:
            data["actions"] = [
                {
                    "action": a.kind.value,
                    "path": a.relative_path,
                    "source": a.source_side.value if a.source_side else None,
                    "reason": a.reason,
                }
                for a in self.plan.mutating_actions
            ]
        if self.safety is not None:
            data["safety"] = self.safety.to_dict()
        if self.check_sync is not None:
            data["check_sync"] = self.check_sync.to_dict()
        return data


class BisyncEngine:
    """Coordinates one bisync run of a Path1/Path2 session.

    The phases run strictly in order: listing (both sides in parallel),
    comparing (both deltas in parallel, then conflict resolution), safety
    checks, propagation, verification and commit. Nothing is changed on
    either side before every safety check has passed.

    Examples:
        >>> options = BisyncOptions(Path("/data/a"), Path("/data/b"), resync=True)
        >>> result = BisyncEngine(options).run()
        >>> result.status
        <ExitStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        options: BisyncOptions,
        path1: Optional[Backend] = None,
        path2: Optional[Backend] = None,
        output: Optional[OutputFormatter] = None,
    ):
        """Initialize bisync engine.

        Args:
            options: Run configuration
            path1: Backend of the Path1 tree (defaults to a local directory)
            path2: Backend of the Path2 tree (defaults to a local directory)
            output: Output formatter for displaying progress/status
        """
        self.options = options
        self.path1 = path1 or LocalBackend(options.path1.resolve(), options.use_trash)
        self.path2 = path2 or LocalBackend(options.path2.resolve(), options.use_trash)
        self.output = output or OutputFormatter(quiet=True)
        self.operations = SyncOperations(self.path1, self.path2)

        self.session = session_name(self.path1.description, self.path2.description)
        self.store = ListingStore(options.workdir or default_workdir(), self.session)
        self.lockout = LockoutManager(self.store)
        self.classifier = DeltaClassifier(options.modify_window)
        self.resolver = ConflictResolver(options.conflict_suffix, options.modify_window)
        self.gate = SafetyGate(
            max_delete=options.max_delete,
            force=options.force,
            check_access=options.check_access,
            check_filename=options.check_filename,
            filters_file=options.filters_file,
        )
        self.verifier = IntegrityVerifier()
        self.state = RunState.IDLE

    @property
    def _silent(self) -> bool:
        """No progress or plan display (quiet or JSON output)."""
        return self.output.quiet or self.output.json_output

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        """Execute one run.

        Returns:
            Result of the run

        Raises:
            BisyncLockError: If another run of the same session is active
            BisyncConfigError: If the filters file can't be read
            CriticalError: If an unexpected error left the trees in an
                unknown state; the history is poisoned first
        """
        opts = self.options
        if not self._silent:
            self.output.info(f"Bisync: {self.path1.description} <-> {self.path2.description}")
            if opts.resync:
                self.output.info("Resync: both listings will be regenerated")
            if opts.dry_run:
                self.output.info("Dry run: No changes will be made")
            self.output.print("")

        start_time = time.time()
        self.store.ensure_workdir()
        with RunLock(self.store.workdir, self.session):
            try:
                result = self._run_locked()
            except Exception as e:
                if not self._poison_on_abort():
                    raise
                reason = f"Run aborted during {self.state.value}: {e!r}"
                self._lock_out(reason)
                raise CriticalError(reason) from e
            except BaseException as e:
                # Interrupted while the trees may be half-updated
                if self._poison_on_abort():
                    self._lock_out(f"Run aborted during {self.state.value}: {e!r}")
                raise
            finally:
                if not opts.retain_working_files:
                    self.store.cleanup_working_files()

        logger.debug(
            f"Run finished in {time.time() - start_time:.2f}s "
            f"with {result.status.value}"
        )
        self._display_result(result)
        return result

    def _run_locked(self) -> RunResult:
        opts = self.options
        history = self.lockout.state()
        logger.debug(f"History of {self.session}: {history.value}")

        if history == HistoryState.POISONED and not opts.resync:
            self._transition(RunState.LOCKED_OUT)
            return self._result(
                ExitStatus.CRITICAL_LOCKOUT,
                "Prior critical error: listings are poisoned and cannot be trusted.",
                recovery_hint=CriticalError.recovery_hint,
            )

        if opts.check_sync == CheckSyncMode.ONLY:
            return self._check_sync_only(history)

        if opts.resync:
            return self._run_resync()

        if history == HistoryState.MISSING:
            return self._result(
                ExitStatus.NO_PRIOR_LISTINGS,
                f"Cannot find prior listings of {self.session}.",
                recovery_hint="Run with --resync to create them",
            )
        return self._run_normal()

    # ------------------------------------------------------------------
    # Run modes
    # ------------------------------------------------------------------

    def _run_normal(self) -> RunResult:
        opts = self.options
        filters = self._load_filters()
        try:
            # Changed filters would make whole subtrees look new or deleted
            fingerprint = self.gate.check_filters()
        except SafetyAbort as e:
            return self._result(ExitStatus(e.status), str(e), recovery_hint=e.recovery_hint)

        self._transition(RunState.LISTING)
        try:
            previous = {side: self.store.load(side) for side in Side}
            current = self._list_both(filters)
        except (BisyncError, OSError) as e:
            return self._lock_out(f"Listing failed: {e}")
        self._save_working(current)

        self._transition(RunState.COMPARING)
        try:
            changes = self._classify_both(previous, current)
        except EmptyListingError as e:
            self._transition(RunState.IDLE)
            return self._result(ExitStatus.EMPTY_LISTING, str(e), recovery_hint=e.recovery_hint)
        plan = self.resolver.resolve(changes[Side.PATH1], changes[Side.PATH2])

        self._transition(RunState.SAFETY_CHECK)
        try:
            safety = self.gate.evaluate(previous, current, changes)
        except SafetyAbort as e:
            self._transition(RunState.IDLE)
            return self._result(
                ExitStatus(e.status), str(e), recovery_hint=e.recovery_hint, plan=plan
            )
        safety.filters_fingerprint = fingerprint

        self._display_plan(plan)
        if opts.dry_run:
            self._transition(RunState.IDLE)
            return self._result(
                ExitStatus.SUCCESS, "Dry run complete", plan=plan, safety=safety
            )

        return self._apply(plan, filters, current, safety)

    def _run_resync(self) -> RunResult:
        opts = self.options
        filters = self._load_filters()

        self._transition(RunState.LISTING)
        try:
            current = self._list_both(filters)
        except (BisyncError, OSError) as e:
            return self._lock_out(f"Listing failed: {e}")
        self._save_working(current)

        self._transition(RunState.COMPARING)
        plan = self.resolver.resolve_resync(current[Side.PATH1], current[Side.PATH2])

        # No baseline exists to judge deletions or access against
        self._transition(RunState.SAFETY_CHECK)
        self._display_plan(plan)
        if opts.dry_run:
            self._transition(RunState.IDLE)
            return self._result(ExitStatus.SUCCESS, "Dry run complete", plan=plan)

        return self._apply(plan, filters, current)

    def _check_sync_only(self, history: HistoryState) -> RunResult:
        if history != HistoryState.TRUSTED:
            return self._result(
                ExitStatus.NO_PRIOR_LISTINGS,
                f"Cannot find prior listings of {self.session} to check.",
                recovery_hint="Run with --resync to create them",
            )
        self._transition(RunState.VERIFYING)
        try:
            listing1 = self.store.load(Side.PATH1)
            listing2 = self.store.load(Side.PATH2)
        finally:
            # Reading the stored listings never touches the trees
            self._transition(RunState.IDLE)
        report = self.verifier.verify(listing1, listing2)
        return self._check_sync_result(report, "Check-sync only")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _apply(
        self,
        plan: SyncPlan,
        filters: FilterSet,
        current: dict[Side, PathListing],
        safety: Optional[SafetyReport] = None,
    ) -> RunResult:
        """Propagate, verify and commit an approved plan."""
        opts = self.options

        self._transition(RunState.PROPAGATING)
        report = self._propagate(plan)
        if not report.ok:
            first = report.failures[0]
            return self._lock_out(
                f"{len(report.failures)} action(s) failed, first: "
                f"{first.action.describe()}: {first.error}",
                plan=plan,
                propagation=report,
            )

        if opts.remove_empty_dirs and not plan.is_empty:
            try:
                self.operations.remove_empty_dirs()
            except BisyncError as e:
                self.output.warning(f"Could not remove empty directories: {e}")

        self._transition(RunState.VERIFYING)
        if plan.is_empty:
            final = current
        else:
            try:
                final = self._list_both(filters)
            except (BisyncError, OSError) as e:
                return self._lock_out(
                    f"Listing after sync failed: {e}", plan=plan, propagation=report
                )

        check = None
        if opts.check_sync == CheckSyncMode.ENABLED:
            check = self.verifier.verify(final[Side.PATH1], final[Side.PATH2])

        if plan.resync:
            baseline = final
            # Pinned before the commit so a failed write leaves no trusted history
            self.gate.pin_filters()
        else:
            touched = report.touched_paths()
            baseline = {
                side: merge_baseline(current[side], final[side], touched) for side in Side
            }
        self.lockout.commit(baseline[Side.PATH1], baseline[Side.PATH2])
        self._transition(RunState.COMMITTED)

        if check is not None and not check.ok:
            return self._check_sync_result(
                check, "Sync complete", plan=plan, propagation=report, safety=safety
            )
        return self._result(
            ExitStatus.SUCCESS,
            "Resync complete" if plan.resync else "Sync complete",
            plan=plan,
            propagation=report,
            check_sync=check,
            safety=safety,
        )

    def _propagate(self, plan: SyncPlan) -> PropagationReport:
        actionable = plan.mutating_actions
        if self._silent or not actionable:
            return ActionPropagator(self.operations, self.options.workers).propagate(actionable)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
        ) as progress:
            task = progress.add_task("Syncing files...", total=len(actionable))

            def advance(_result: PropagationResult) -> None:
                progress.update(task, advance=1)

            propagator = ActionPropagator(
                self.operations, self.options.workers, on_result=advance
            )
            return propagator.propagate(actionable)

    def _list_both(self, filters: FilterSet) -> dict[Side, PathListing]:
        """List both trees concurrently."""
        compute_hashes = self.options.compute_hashes
        backends = {Side.PATH1: self.path1, Side.PATH2: self.path2}

        def list_side(side: Side) -> Callable[[], PathListing]:
            return lambda: backends[side].list_files(side, filters, compute_hashes)

        if self._silent:
            return self._run_pair(list_side(Side.PATH1), list_side(Side.PATH2))

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            progress.add_task("Listing Path1 and Path2...", total=None)
            return self._run_pair(list_side(Side.PATH1), list_side(Side.PATH2))

    def _classify_both(
        self,
        previous: dict[Side, PathListing],
        current: dict[Side, PathListing],
    ) -> dict[Side, list[Change]]:
        """Compute both deltas; both finish before anything else starts."""

        def classify(side: Side) -> Callable[[], list[Change]]:
            return lambda: self.classifier.classify(previous[side], current[side])

        return self._run_pair(classify(Side.PATH1), classify(Side.PATH2))

    def _run_pair(self, task1: Callable[[], T], task2: Callable[[], T]) -> dict[Side, T]:
        with ThreadPoolExecutor(max_workers=2) as executor:
            future1 = executor.submit(task1)
            future2 = executor.submit(task2)
            # result() re-raises the task's exception in this thread
            return {Side.PATH1: future1.result(), Side.PATH2: future2.result()}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_filters(self) -> FilterSet:
        if self.options.filters_file is None:
            return FilterSet.empty()
        return FilterSet.from_file(self.options.filters_file)

    def _save_working(self, listings: dict[Side, PathListing]) -> None:
        for listing in listings.values():
            self.store.save(listing, WORKING_SUFFIX)

    def _transition(self, state: RunState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    def _poison_on_abort(self) -> bool:
        return self.state in CRITICAL_STATES and not self.options.dry_run

    def _lock_out(self, reason: str, **kwargs) -> RunResult:
        if self.options.dry_run:
            # Nothing was changed; the stored history stays trusted
            logger.error(f"Dry run of {self.session} failed: {reason}")
            self._transition(RunState.IDLE)
            return self._result(
                ExitStatus.CRITICAL_LOCKOUT,
                f"{reason} (dry run, history left untouched)",
                recovery_hint="Check both paths, then run again",
                **kwargs,
            )
        self.lockout.poison(reason)
        self._transition(RunState.LOCKED_OUT)
        return self._result(
            ExitStatus.CRITICAL_LOCKOUT,
            reason,
            recovery_hint=CriticalError.recovery_hint,
            **kwargs,
        )

    def _check_sync_result(
        self, report: CheckSyncReport, done_message: str, **kwargs
    ) -> RunResult:
        if report.ok:
            return self._result(ExitStatus.SUCCESS, done_message, check_sync=report, **kwargs)
        return self._result(
            ExitStatus.CHECK_SYNC_FAILED,
            f"Path1 and Path2 listings differ: {len(report.only_in_path1)} path(s) "
            f"only in Path1, {len(report.only_in_path2)} only in Path2",
            recovery_hint="Run with --resync to bring both paths back in line",
            check_sync=report,
            **kwargs,
        )

    def _result(self, status: ExitStatus, message: str, **kwargs) -> RunResult:
        result = RunResult(
            status=status,
            state=self.state,
            message=message,
            dry_run=self.options.dry_run,
            resync=self.options.resync,
            **kwargs,
        )
        stats: dict = {}
        if result.plan is not None:
            stats["planned"] = result.plan.stats()
        if result.propagation is not None:
            stats["applied"] = result.propagation.stats()
        result.stats = stats
        return result

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def _display_plan(self, plan: SyncPlan) -> None:
        """Display the sync plan to the user."""
        if self._silent:
            return

        stats = plan.stats()
        self.output.info("Sync plan:")
        if stats["copies_to_path2"] > 0:
            self.output.info(f"  → Copy Path1 to Path2: {stats['copies_to_path2']} file(s)")
        if stats["copies_to_path1"] > 0:
            self.output.info(f"  ← Copy Path2 to Path1: {stats['copies_to_path1']} file(s)")
        if stats["deletes_path1"] > 0:
            self.output.info(f"  ✗ Delete on Path1: {stats['deletes_path1']} file(s)")
        if stats["deletes_path2"] > 0:
            self.output.info(f"  ✗ Delete on Path2: {stats['deletes_path2']} file(s)")
        if stats["conflicts"] > 0:
            self.output.warning(f"  ⚠ Conflicts: {stats['conflicts']} file(s)")
        if plan.is_empty:
            self.output.info("  No changes needed")

        if self.options.dry_run:
            self.output.print("")
            for action in plan.mutating_actions:
                self.output.info(f"  {action.describe()}")

        for conflict in plan.conflicts:
            self.output.warning(f"  {conflict.relative_path}: {conflict.reason}")
        self.output.print("")

    def _display_result(self, result: RunResult) -> None:
        if result.status is ExitStatus.SUCCESS:
            if self._silent:
                return
            self.output.success(f"{result.message}!")
            applied = result.stats.get("applied", {})
            copied = applied.get("copied_to_path1", 0) + applied.get("copied_to_path2", 0)
            deleted = applied.get("deleted_path1", 0) + applied.get("deleted_path2", 0)
            if copied or deleted:
                self.output.info(f"  Copied: {copied}, deleted: {deleted}")
            if applied.get("conflicts_resolved"):
                self.output.info(f"  Conflicts kept as copies: {applied['conflicts_resolved']}")
            return

        if result.status is ExitStatus.CRITICAL_LOCKOUT:
            self.output.error(f"Critical error: {result.message}")
        else:
            self.output.error(result.message)
        if result.recovery_hint:
            self.output.warning(result.recovery_hint)


def merge_baseline(
    current: PathListing,
    final: PathListing,
    touched: set[str],
) -> PathListing:
    """Build the next baseline of one side.

    Paths the run did not touch keep their record from the pre-sync listing,
    so changes made to them while the run was in progress are still seen by
    the next run. Touched paths, conflict copies included, take their
    post-sync record or are dropped if the post-sync listing lacks them.
    """
    records = {r.relative_path: r for r in current if r.relative_path not in touched}
    for record in final:
        if record.relative_path in touched:
            records[record.relative_path] = record
    return PathListing.build(final.side, records.values())


__all__ = [
    "BisyncEngine",
    "ExitStatus",
    "RunResult",
    "RunState",
    "merge_baseline",
]

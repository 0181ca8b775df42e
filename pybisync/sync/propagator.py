"""Applying an approved plan to the two trees."""

import logging
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..exceptions import BisyncError
from .listing import Side
from .operations import SyncOperations
from .resolver import Action, ActionKind, Conflict

logger = logging.getLogger(__name__)


@dataclass
class PropagationResult:
    """Outcome of one action."""

    action: Action
    success: bool
    error: Optional[str] = None
    partial: bool = False
    """Conflict resolution stopped after some of its steps were applied"""

    elapsed: float = 0.0
    touched: tuple[str, ...] = ()
    """Relative paths written or removed on either side"""


@dataclass
class PropagationReport:
    results: list[PropagationResult] = field(default_factory=list)

    def touched_paths(self) -> set[str]:
        paths: set[str] = set()
        for result in self.results:
            paths.update(result.touched)
        return paths

    @property
    def failures(self) -> list[PropagationResult]:
        return [r for r in self.results if not r.success]

    @property
    def ok(self) -> bool:
        return not self.failures

    def stats(self) -> dict:
        """Count successful operations per category."""
        stats = {
            "copied_to_path1": 0,
            "copied_to_path2": 0,
            "deleted_path1": 0,
            "deleted_path2": 0,
            "conflicts_resolved": 0,
            "conflicts_partial": 0,
            "failed": 0,
        }
        for result in self.results:
            action = result.action
            if not result.success:
                stats["failed"] += 1
                if result.partial:
                    stats["conflicts_partial"] += 1
            elif action.kind == ActionKind.COPY_TO_OTHER and action.target_side:
                stats[f"copied_to_{action.target_side.value}"] += 1
            elif action.kind == ActionKind.DELETE_ON_OTHER and action.target_side:
                stats[f"deleted_{action.target_side.value}"] += 1
            elif action.kind == ActionKind.RENAME_CONFLICT_BOTH:
                stats["conflicts_resolved"] += 1
        return stats


class ActionPropagator:
    """Dispatches plan actions to the backends.

    There are no retries here: a failed call leaves the item in an unknown
    state, and the caller treats any failure as critical.
    """

    def __init__(
        self,
        operations: SyncOperations,
        max_workers: int = 1,
        on_result: Optional[Callable[[PropagationResult], None]] = None,
    ):
        """Initialize action propagator.

        Args:
            operations: Operations over both backends
            max_workers: Number of parallel workers (1 = sequential)
            on_result: Called after each action, e.g. to advance a progress bar
        """
        self.operations = operations
        self.max_workers = max_workers
        self.on_result = on_result

    def propagate(self, actions: Iterable[Action]) -> PropagationReport:
        """Apply every mutating action.

        Actions touch disjoint paths, so they can run in any order. The steps
        of a single conflict always run together in one worker.

        Args:
            actions: Plan actions; no-ops are skipped

        Returns:
            Report with one result per mutating action
        """
        actionable = [a for a in actions if a.is_mutating]
        report = PropagationReport()
        if not actionable:
            return report

        if self.max_workers > 1 and len(actionable) > 1:
            self._propagate_parallel(actionable, report)
        else:
            for action in actionable:
                self._record(report, self.apply(action))
        return report

    def _propagate_parallel(self, actions: list[Action], report: PropagationReport) -> None:
        logger.debug(f"Executing {len(actions)} actions with {self.max_workers} workers")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self.apply, action): action for action in actions}
            try:
                for future in as_completed(futures):
                    self._record(report, future.result())
            except KeyboardInterrupt:
                for future in futures:
                    future.cancel()
                raise

    def _record(self, report: PropagationReport, result: PropagationResult) -> None:
        report.results.append(result)
        if result.success:
            logger.debug(
                f"Completed {result.action.describe()} in {result.elapsed:.2f}s"
            )
        else:
            logger.error(f"Failed {result.action.describe()}: {result.error}")
        if self.on_result is not None:
            self.on_result(result)

    def apply(self, action: Action) -> PropagationResult:
        """Apply one action and capture its outcome."""
        start = time.time()
        steps_done = 0
        touched: tuple[str, ...] = (action.relative_path,)
        try:
            if isinstance(action, Conflict):
                steps, touched = self._conflict_steps(action)
                for step in steps:
                    step()
                    steps_done += 1
            elif action.kind == ActionKind.COPY_TO_OTHER and action.source_side:
                self.operations.copy_file(action.relative_path, action.source_side)
            elif action.kind == ActionKind.DELETE_ON_OTHER and action.target_side:
                self.operations.delete_file(action.relative_path, action.target_side)
            else:
                raise BisyncError(f"Cannot apply action {action.kind.value}")
        except (BisyncError, OSError) as e:
            return PropagationResult(
                action=action,
                success=False,
                error=str(e),
                partial=steps_done > 0,
                elapsed=time.time() - start,
                touched=touched,
            )
        return PropagationResult(
            action=action, success=True, elapsed=time.time() - start, touched=touched
        )

    def _conflict_steps(
        self, conflict: Conflict
    ) -> tuple[list[Callable[[], None]], tuple[str, ...]]:
        """Operations that resolve a conflict, in order, and the paths they touch."""
        ops = self.operations
        path = conflict.relative_path
        deleted_side = conflict.deleted_side

        if deleted_side is not None:
            # The changed version is the only one left; restore it on the other side
            return [lambda: ops.copy_file(path, deleted_side.other)], (path,)

        name1 = self._unused_name(conflict.name_for(Side.PATH1))
        name2 = self._unused_name(conflict.name_for(Side.PATH2))
        logger.info(f"Conflict on {path}: keeping {name1} and {name2}")
        steps = [
            lambda: ops.move_file(path, name1, Side.PATH1),
            lambda: ops.move_file(path, name2, Side.PATH2),
            lambda: ops.copy_file(name1, Side.PATH1),
            lambda: ops.copy_file(name2, Side.PATH2),
        ]
        return steps, (path, name1, name2)

    def _unused_name(self, name: str) -> str:
        """Append a counter until the name is free on both sides."""
        candidate = name
        counter = 1
        while any(
            self.operations.backend(side).exists(candidate)
            for side in (Side.PATH1, Side.PATH2)
        ):
            candidate = f"{name}{counter}"
            counter += 1
        return candidate

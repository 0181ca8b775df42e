"""Merging the two per-side deltas into one action plan."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..utils import DEFAULT_CONFLICT_SUFFIX, DEFAULT_MODIFY_WINDOW, conflict_name
from .delta import Change, ChangeKind
from .listing import FileRecord, PathListing, Side

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    """Cross-side operations of a plan."""

    COPY_TO_OTHER = "copy_to_other"
    """Copy the source side's file over the other side"""

    DELETE_ON_OTHER = "delete_on_other"
    """Item was deleted on the source side, delete it on the other side"""

    RENAME_CONFLICT_BOTH = "rename_conflict_both"
    """Both sides changed: keep every version under disambiguated names"""

    NO_OP = "no_op"
    """Nothing to do"""


@dataclass(frozen=True)
class Action:
    """One planned operation for one path."""

    kind: ActionKind
    """Action to take"""

    relative_path: str
    """Relative path of the item"""

    source_side: Optional[Side]
    """Side the change originates from (None when both sides changed)"""

    changes: tuple[Change, ...] = ()
    """Changes this action was derived from"""

    reason: str = ""
    """Human-readable reason for this action"""

    @property
    def target_side(self) -> Optional[Side]:
        """Side the action writes to."""
        return self.source_side.other if self.source_side else None

    @property
    def is_mutating(self) -> bool:
        return self.kind != ActionKind.NO_OP

    def describe(self) -> str:
        """Short one-line description for plans and logs."""
        if self.kind == ActionKind.COPY_TO_OTHER and self.source_side:
            return (
                f"copy {self.source_side.label} -> "
                f"{self.source_side.other.label}: {self.relative_path}"
            )
        if self.kind == ActionKind.DELETE_ON_OTHER and self.target_side:
            return f"delete on {self.target_side.label}: {self.relative_path}"
        if self.kind == ActionKind.RENAME_CONFLICT_BOTH:
            return f"conflict: {self.relative_path} ({self.reason})"
        return f"no-op: {self.relative_path}"


@dataclass(frozen=True)
class Conflict(Action):
    """An item changed on both sides.

    Resolved by keeping every existing version: when both versions exist
    they are renamed to ``name1``/``name2`` and copied across. When one side
    deleted the item, the changed version wins and is copied back to the
    deleting side; nothing is ever merged or dropped.
    """

    record1: Optional[FileRecord] = None
    """Current Path1 record (None if Path1 deleted the item)"""

    record2: Optional[FileRecord] = None
    """Current Path2 record (None if Path2 deleted the item)"""

    name1: str = ""
    """Name the Path1 version is kept under"""

    name2: str = ""
    """Name the Path2 version is kept under"""

    @property
    def deleted_side(self) -> Optional[Side]:
        """Side that deleted the item, for delete-vs-change conflicts."""
        if self.record1 is None:
            return Side.PATH1
        if self.record2 is None:
            return Side.PATH2
        return None

    def name_for(self, side: Side) -> str:
        return self.name1 if side is Side.PATH1 else self.name2


@dataclass
class SyncPlan:
    """Result of conflict resolution."""

    actions: list[Action] = field(default_factory=list)
    resync: bool = False

    @property
    def mutating_actions(self) -> list[Action]:
        return [a for a in self.actions if a.is_mutating]

    @property
    def conflicts(self) -> list[Conflict]:
        return [a for a in self.actions if isinstance(a, Conflict)]

    @property
    def is_empty(self) -> bool:
        """True when the plan changes nothing."""
        return not self.mutating_actions

    def stats(self) -> dict:
        """Count planned actions per category."""
        stats = {
            "copies_to_path1": 0,
            "copies_to_path2": 0,
            "deletes_path1": 0,
            "deletes_path2": 0,
            "conflicts": 0,
            "unchanged": 0,
        }
        for action in self.actions:
            if action.kind == ActionKind.COPY_TO_OTHER and action.target_side:
                stats[f"copies_to_{action.target_side.value}"] += 1
            elif action.kind == ActionKind.DELETE_ON_OTHER and action.target_side:
                stats[f"deletes_{action.target_side.value}"] += 1
            elif action.kind == ActionKind.RENAME_CONFLICT_BOTH:
                stats["conflicts"] += 1
            else:
                stats["unchanged"] += 1
        return stats


class ConflictResolver:
    """Turns the Path1 and Path2 deltas into a :class:`SyncPlan`.

    The resolver is a pure function of its inputs and keeps no state between
    runs. Renamed directories are not special-cased: they show up as a set of
    deleted and new files that are resolved one by one.
    """

    def __init__(
        self,
        conflict_suffix: str = DEFAULT_CONFLICT_SUFFIX,
        modify_window: float = DEFAULT_MODIFY_WINDOW,
    ):
        """Initialize conflict resolver.

        Args:
            conflict_suffix: Suffix template for conflict copies ({n} = side)
            modify_window: Tolerance in seconds, used by resync planning only
        """
        self.conflict_suffix = conflict_suffix
        self.modify_window = modify_window

    def resolve(self, changes1: list[Change], changes2: list[Change]) -> SyncPlan:
        """Merge both deltas into a plan.

        Args:
            changes1: Path1 changes
            changes2: Path2 changes

        Returns:
            Plan with one action per path, sorted by path
        """
        by_path1 = {c.relative_path: c for c in changes1}
        by_path2 = {c.relative_path: c for c in changes2}

        plan = SyncPlan()
        for path in sorted(by_path1.keys() | by_path2.keys()):
            action = self.resolve_path(path, by_path1.get(path), by_path2.get(path))
            plan.actions.append(action)

        logger.debug(f"Resolved plan: {plan.stats()}")
        return plan

    def resolve_path(
        self,
        path: str,
        change1: Optional[Change],
        change2: Optional[Change],
    ) -> Action:
        """Apply the rule table to one path.

        A missing change means the item is unchanged on that side.
        """
        kind1 = change1.kind if change1 else ChangeKind.UNCHANGED
        kind2 = change2.kind if change2 else ChangeKind.UNCHANGED
        changes = tuple(c for c in (change1, change2) if c is not None)

        # Case 1: nothing happened on either side
        if kind1 == ChangeKind.UNCHANGED and kind2 == ChangeKind.UNCHANGED:
            return Action(ActionKind.NO_OP, path, None, changes, "Unchanged")

        # Case 2: deleted everywhere, already consistent
        if kind1 == ChangeKind.DELETED and kind2 == ChangeKind.DELETED:
            return Action(ActionKind.NO_OP, path, None, changes, "Deleted on both sides")

        # Case 3: only one side changed
        if change2 is None or kind2 == ChangeKind.UNCHANGED:
            return self._one_sided(path, Side.PATH1, kind1, changes)
        if change1 is None or kind1 == ChangeKind.UNCHANGED:
            return self._one_sided(path, Side.PATH2, kind2, changes)

        # Case 4: both sides changed
        return self._two_sided(path, change1, change2, changes)

    def _one_sided(
        self, path: str, side: Side, kind: ChangeKind, changes: tuple[Change, ...]
    ) -> Action:
        if kind == ChangeKind.DELETED:
            return Action(
                ActionKind.DELETE_ON_OTHER,
                path,
                side,
                changes,
                f"Deleted on {side.label}",
            )
        return Action(
            ActionKind.COPY_TO_OTHER,
            path,
            side,
            changes,
            f"{kind.value.capitalize()} on {side.label}",
        )

    def _two_sided(
        self,
        path: str,
        change1: Change,
        change2: Change,
        changes: tuple[Change, ...],
    ) -> Action:
        record1 = change1.current
        record2 = change2.current

        if record1 is not None and record2 is not None:
            if (
                record1.content_hash
                and record2.content_hash
                and record1.same_content(record2)
            ):
                return Action(
                    ActionKind.NO_OP,
                    path,
                    None,
                    changes,
                    "Identical change on both sides",
                )
            reason = f"{change1.kind.value} on Path1, {change2.kind.value} on Path2"
            source_side = None
        else:
            # Delete vs change: the changed side wins presence
            source_side = Side.PATH2 if record1 is None else Side.PATH1
            reason = (
                f"Deleted on {source_side.other.label}, "
                f"changed on {source_side.label}"
            )

        return Conflict(
            kind=ActionKind.RENAME_CONFLICT_BOTH,
            relative_path=path,
            source_side=source_side,
            changes=changes,
            reason=reason,
            record1=record1,
            record2=record2,
            name1=conflict_name(path, self.conflict_suffix, Side.PATH1.number),
            name2=conflict_name(path, self.conflict_suffix, Side.PATH2.number),
        )

    def resolve_resync(self, listing1: PathListing, listing2: PathListing) -> SyncPlan:
        """Plan a resync from the two current listings alone.

        Both trees end up holding the superset of all files. Where a file
        exists on both sides with different content, the Path1 version wins.
        Nothing is ever deleted.

        Args:
            listing1: Current Path1 listing
            listing2: Current Path2 listing

        Returns:
            Resync plan
        """
        plan = SyncPlan(resync=True)
        for path in sorted(listing1.paths() | listing2.paths()):
            record1 = listing1.get(path)
            record2 = listing2.get(path)
            changes = tuple(
                Change(side=side, relative_path=path, kind=ChangeKind.NEW, current=record)
                for side, record in ((Side.PATH1, record1), (Side.PATH2, record2))
                if record is not None
            )

            if record1 is None:
                plan.actions.append(
                    Action(ActionKind.COPY_TO_OTHER, path, Side.PATH2, changes, "Only on Path2")
                )
            elif record2 is None:
                plan.actions.append(
                    Action(ActionKind.COPY_TO_OTHER, path, Side.PATH1, changes, "Only on Path1")
                )
            elif record1.same_content(record2) and (
                abs(record1.mod_time - record2.mod_time) <= self.modify_window
            ):
                plan.actions.append(
                    Action(ActionKind.NO_OP, path, None, changes, "Identical")
                )
            else:
                plan.actions.append(
                    Action(
                        ActionKind.COPY_TO_OTHER,
                        path,
                        Side.PATH1,
                        changes,
                        "Differs, Path1 version wins on resync",
                    )
                )

        logger.debug(f"Resync plan: {plan.stats()}")
        return plan

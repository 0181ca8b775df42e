"""Per-side change detection.

Each side is compared only against its own previous listing. Timestamps of
the two sides are never compared with each other, so storage systems with
different clocks or timestamp precision can still be synchronized.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..exceptions import EmptyListingError
from ..utils import DEFAULT_MODIFY_WINDOW
from .listing import FileRecord, PathListing, Side

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """How an item changed since the previous listing of its side."""

    NEW = "new"
    NEWER = "newer"
    OLDER = "older"
    DELETED = "deleted"
    UNCHANGED = "unchanged"

    @property
    def is_modification(self) -> bool:
        """True for kinds that mean the item now has new content."""
        return self in (ChangeKind.NEW, ChangeKind.NEWER, ChangeKind.OLDER)


@dataclass(frozen=True)
class Change:
    """Classification of one item on one side."""

    side: Side
    relative_path: str
    kind: ChangeKind
    previous: Optional[FileRecord] = None
    """Record from the previous listing (None for NEW)"""

    current: Optional[FileRecord] = None
    """Record from the current listing (None for DELETED)"""


class DeltaClassifier:
    """Compares two listings of the same side."""

    def __init__(self, modify_window: float = DEFAULT_MODIFY_WINDOW):
        """Initialize delta classifier.

        Args:
            modify_window: Tolerance in seconds for modification time comparison
        """
        self.modify_window = modify_window

    def classify(
        self,
        previous: PathListing,
        current: PathListing,
        allow_empty: bool = False,
    ) -> list[Change]:
        """Compute the changes of one side.

        Args:
            previous: Listing saved by the last successful run
            current: Listing taken now
            allow_empty: Accept an empty current listing (resync runs)

        Returns:
            Changes for every path of either listing, sorted by path

        Raises:
            EmptyListingError: If the current listing is empty but the
                previous one was not
        """
        if previous.side != current.side:
            raise ValueError(
                f"Cannot compare {previous.side.label} with {current.side.label}"
            )
        if current.is_empty and not previous.is_empty and not allow_empty:
            raise EmptyListingError(current.side.label, len(previous))

        changes: list[Change] = []
        for path in sorted(previous.paths() | current.paths()):
            changes.append(
                self.classify_item(
                    current.side, path, previous.lookup(path), current.lookup(path)
                )
            )

        if logger.isEnabledFor(logging.DEBUG):
            counts: dict[str, int] = {}
            for change in changes:
                counts[change.kind.value] = counts.get(change.kind.value, 0) + 1
            logger.debug(f"{current.side.label} delta: {counts}")
        return changes

    def classify_item(
        self,
        side: Side,
        path: str,
        previous: Optional[FileRecord],
        current: Optional[FileRecord],
    ) -> Change:
        """Classify a single path from its two records.

        A missing record can be given as None or as an absent placeholder
        (``present=False``); the returned change holds None for it.
        """
        if previous is not None and not previous.present:
            previous = None
        if current is not None and not current.present:
            current = None
        if previous is None and current is None:
            raise ValueError(f"No record for {path}")
        if previous is None:
            kind = ChangeKind.NEW
        elif current is None:
            kind = ChangeKind.DELETED
        elif current.mod_time > previous.mod_time + self.modify_window:
            kind = ChangeKind.NEWER
        elif current.mod_time < previous.mod_time - self.modify_window:
            kind = ChangeKind.OLDER
        elif not current.same_content(previous):
            # Same-looking timestamp but different content: content wins
            kind = ChangeKind.NEWER
        else:
            kind = ChangeKind.UNCHANGED
        return Change(side=side, relative_path=path, kind=kind, previous=previous, current=current)

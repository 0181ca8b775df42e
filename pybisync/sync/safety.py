"""Safety checks that can veto a run before anything is changed.

Every check here is an expected, recoverable refusal. A veto leaves both
trees and both listings untouched and does not poison the history.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..exceptions import CheckAccessAbort, FiltersChangedAbort, MaxDeleteAbort
from .delta import Change, ChangeKind
from .filters import compute_fingerprint, read_stored_fingerprint, store_fingerprint
from .listing import PathListing, Side

logger = logging.getLogger(__name__)


@dataclass
class SafetyReport:
    """What the gate looked at, for display and tests."""

    delete_percent: dict[Side, float] = field(default_factory=dict)
    check_files: dict[Side, set[str]] = field(default_factory=dict)
    filters_fingerprint: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "delete_percent": {side.value: p for side, p in self.delete_percent.items()},
            "check_files": {side.value: sorted(f) for side, f in self.check_files.items()},
            "filters_fingerprint": self.filters_fingerprint,
        }


class SafetyGate:
    """Runs the max-delete, check-access and filter fingerprint checks."""

    def __init__(
        self,
        max_delete: int,
        force: bool = False,
        check_access: bool = False,
        check_filename: str = "RCLONE_TEST",
        filters_file: Optional[Path] = None,
    ):
        self.max_delete = max_delete
        self.force = force
        self.check_access = check_access
        self.check_filename = check_filename
        self.filters_file = filters_file

    def evaluate(
        self,
        previous: dict[Side, PathListing],
        current: dict[Side, PathListing],
        changes: dict[Side, list[Change]],
    ) -> SafetyReport:
        """Run the checks that need both listings and deltas.

        All checks run to completion before the caller may change anything.
        The filters fingerprint is checked separately with
        :meth:`check_filters`, before anything is listed.

        Raises:
            CheckAccessAbort: If the access check files don't match
            MaxDeleteAbort: If too many files were deleted on one side
        """
        report = SafetyReport()
        if self.check_access:
            report.check_files = self.check_access_files(current)
        report.delete_percent = self.check_max_delete(previous, changes)
        return report

    def check_max_delete(
        self,
        previous: dict[Side, PathListing],
        changes: dict[Side, list[Change]],
    ) -> dict[Side, float]:
        """Compare the percentage of deleted files per side to the limit.

        Returns:
            Deleted percentage per side
        """
        percents: dict[Side, float] = {}
        for side in (Side.PATH1, Side.PATH2):
            prior_total = len(previous[side])
            deleted = sum(1 for c in changes[side] if c.kind == ChangeKind.DELETED)
            percent = deleted * 100.0 / prior_total if prior_total else 0.0
            percents[side] = percent
            logger.debug(
                f"{side.label}: {deleted} of {prior_total} file(s) deleted "
                f"({percent:.1f}%)"
            )

            if deleted and percent > self.max_delete:
                if self.force:
                    logger.warning(
                        f"{side.label}: {percent:.0f}% of files deleted, "
                        f"above the {self.max_delete}% limit; continuing (forced)"
                    )
                    continue
                raise MaxDeleteAbort(
                    f"Excessive deletes on {side.label}: {deleted} of "
                    f"{prior_total} file(s) ({percent:.0f}%) exceed the "
                    f"--max-delete limit of {self.max_delete}%. Aborting."
                )
        return percents

    def check_access_files(self, current: dict[Side, PathListing]) -> dict[Side, set[str]]:
        """Require identical, non-empty sets of check files on both sides.

        Returns:
            Check file paths found per side
        """
        found: dict[Side, set[str]] = {}
        for side, listing in current.items():
            found[side] = {
                path
                for path in listing.paths()
                if path.rsplit("/", 1)[-1] == self.check_filename
            }

        for side in (Side.PATH1, Side.PATH2):
            if not found[side]:
                raise CheckAccessAbort(
                    f"{self.check_filename} access check file not found on "
                    f"{side.label}. Aborting."
                )

        missing1 = sorted(found[Side.PATH2] - found[Side.PATH1])
        missing2 = sorted(found[Side.PATH1] - found[Side.PATH2])
        if missing1 or missing2:
            details = [f"missing on Path1: {p}" for p in missing1]
            details += [f"missing on Path2: {p}" for p in missing2]
            raise CheckAccessAbort(
                f"{self.check_filename} access check files differ between the "
                f"two paths ({'; '.join(details)}). Aborting."
            )
        logger.debug(f"Access check passed with {len(found[Side.PATH1])} file(s)")
        return found

    def check_filters(self) -> Optional[str]:
        """Compare the filters file to the fingerprint stored by the last resync.

        Returns:
            The current fingerprint, or None when no filters file is used
        """
        if self.filters_file is None:
            return None
        current = compute_fingerprint(self.filters_file)
        stored = read_stored_fingerprint(self.filters_file)
        if stored is None:
            raise FiltersChangedAbort(
                f"Filters file {self.filters_file} has no stored fingerprint. "
                "Must run --resync."
            )
        if stored != current:
            raise FiltersChangedAbort(
                f"Filters file {self.filters_file} has changed since the last "
                "resync. Must run --resync."
            )
        return current

    def pin_filters(self) -> Optional[str]:
        """Store the current filters fingerprint (resync runs)."""
        if self.filters_file is None:
            return None
        fingerprint = compute_fingerprint(self.filters_file)
        store_fingerprint(self.filters_file, fingerprint)
        return fingerprint

"""Final listings integrity check ("check-sync")."""

import logging
from dataclasses import dataclass, field

from .listing import PathListing, Side

logger = logging.getLogger(__name__)


@dataclass
class CheckSyncReport:
    """Paths that exist on only one side after a run."""

    only_in_path1: list[str] = field(default_factory=list)
    only_in_path2: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.only_in_path1 and not self.only_in_path2

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "only_in_path1": self.only_in_path1,
            "only_in_path2": self.only_in_path2,
        }


class IntegrityVerifier:
    """Checks that both listings hold the same set of paths.

    Only names are compared. Sizes and times may legitimately differ after a
    transfer, e.g. on backends with coarse timestamp precision.
    """

    def verify(self, listing1: PathListing, listing2: PathListing) -> CheckSyncReport:
        """Compare the path sets of the two listings.

        Args:
            listing1: Path1 listing
            listing2: Path2 listing

        Returns:
            Report of the differences
        """
        if listing1.side is not Side.PATH1 or listing2.side is not Side.PATH2:
            raise ValueError("verify() expects the Path1 listing first")
        paths1 = listing1.paths()
        paths2 = listing2.paths()
        report = CheckSyncReport(
            only_in_path1=sorted(paths1 - paths2),
            only_in_path2=sorted(paths2 - paths1),
        )
        if report.ok:
            logger.debug(f"Check-sync passed for {len(paths1)} path(s)")
        else:
            for path in report.only_in_path1:
                logger.warning(f"Check-sync: {path} only in Path1")
            for path in report.only_in_path2:
                logger.warning(f"Check-sync: {path} only in Path2")
        return report

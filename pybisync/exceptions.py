"""Exception classes for pybisync."""

from typing import Optional


class BisyncError(Exception):
    """Base exception for all bisync errors."""

    recovery_hint: Optional[str] = None

    def __init__(self, message: str, recovery_hint: Optional[str] = None):
        super().__init__(message)
        if recovery_hint is not None:
            self.recovery_hint = recovery_hint


class BisyncConfigError(BisyncError):
    """Invalid or inconsistent configuration."""


class BisyncLockError(BisyncError):
    """Another run already holds the lock for this session."""

    recovery_hint = "Wait for the other run to finish or remove a stale lock file"


class BackendError(BisyncError):
    """A storage backend call failed."""


class ListingFormatError(BisyncError):
    """A persisted listing file could not be parsed."""

    recovery_hint = "Run with --resync to regenerate the listings"


class SafetyAbort(BisyncError):
    """A safety check vetoed the run before any change was made.

    Safety aborts are expected refusals: the listings stay untouched and the
    history is not poisoned.
    """

    status = "aborted"


class MaxDeleteAbort(SafetyAbort):
    """Too many deletions detected on one side."""

    status = "aborted_max_delete"
    recovery_hint = "Check the deletions, then rerun with --force or a higher --max-delete"


class CheckAccessAbort(SafetyAbort):
    """Access check files do not match on both sides."""

    status = "aborted_check_access"
    recovery_hint = (
        "Make sure both paths are reachable and hold matching check files"
    )


class FiltersChangedAbort(SafetyAbort):
    """The filters file changed since the last resync."""

    status = "aborted_filters_changed"
    recovery_hint = "Run with --resync to accept the new filters"


class EmptyListingError(BisyncError):
    """The current listing of a side is empty while its history is not."""

    recovery_hint = (
        "Check that the path is reachable; run with --resync if it is "
        "really meant to be empty"
    )

    def __init__(self, side_name: str, previous_count: int):
        super().__init__(
            f"Empty current {side_name} listing, previous listing had "
            f"{previous_count} file(s). Cannot sync to an empty directory."
        )
        self.side_name = side_name
        self.previous_count = previous_count


class CriticalError(BisyncError):
    """An operation of unknown outcome happened; history can't be trusted."""

    recovery_hint = "Check both paths, then run with --resync"

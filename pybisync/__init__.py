"""pybisync - bidirectional synchronization of two file trees."""

from .config import BisyncOptions, CheckSyncMode, load_options_from_json
from .exceptions import (
    BackendError,
    BisyncConfigError,
    BisyncError,
    BisyncLockError,
    CheckAccessAbort,
    CriticalError,
    EmptyListingError,
    FiltersChangedAbort,
    ListingFormatError,
    MaxDeleteAbort,
    SafetyAbort,
)
from .sync import BisyncEngine, ExitStatus, RunResult

__version__ = "0.1.0"

__all__ = [
    "BisyncEngine",
    "BisyncOptions",
    "CheckSyncMode",
    "ExitStatus",
    "RunResult",
    "load_options_from_json",
    "BisyncError",
    "BisyncConfigError",
    "BisyncLockError",
    "BackendError",
    "ListingFormatError",
    "SafetyAbort",
    "MaxDeleteAbort",
    "CheckAccessAbort",
    "FiltersChangedAbort",
    "EmptyListingError",
    "CriticalError",
]

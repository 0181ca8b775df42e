"""Bisync engine - two-way synchronization of a Path1/Path2 pair."""

from .delta import Change, ChangeKind, DeltaClassifier
from .engine import BisyncEngine, ExitStatus, RunResult, RunState
from .filters import FilterSet
from .listing import FileRecord, PathListing, Side
from .operations import Backend, LocalBackend, SyncOperations
from .propagator import ActionPropagator, PropagationReport, PropagationResult
from .resolver import Action, ActionKind, Conflict, ConflictResolver, SyncPlan
from .safety import SafetyGate
from .scanner import DirectoryScanner
from .state import HistoryState, ListingStore, LockoutManager, RunLock
from .verifier import CheckSyncReport, IntegrityVerifier

__all__ = [
    "BisyncEngine",
    "ExitStatus",
    "RunResult",
    "RunState",
    "Side",
    "FileRecord",
    "PathListing",
    "FilterSet",
    "DirectoryScanner",
    "Backend",
    "LocalBackend",
    "SyncOperations",
    "Change",
    "ChangeKind",
    "DeltaClassifier",
    "Action",
    "ActionKind",
    "Conflict",
    "ConflictResolver",
    "SyncPlan",
    "SafetyGate",
    "ActionPropagator",
    "PropagationReport",
    "PropagationResult",
    "IntegrityVerifier",
    "CheckSyncReport",
    "HistoryState",
    "ListingStore",
    "LockoutManager",
    "RunLock",
]

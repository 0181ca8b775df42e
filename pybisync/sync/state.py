"""Persistence of sync history.

This module stores the per-side listings that serve as the baseline of the
next run, the poisoned-history marker that locks out further runs after a
critical error, and the lock file that serializes runs of one session.

Files in the working directory, for a session named ``a..b``::

    a..b.path1.lst        trusted Path1 listing
    a..b.path2.lst        trusted Path2 listing
    a..b.path1.lst-err    poisoned listing (lockout until resync)
    a..b.path1.lst-new    working copy of the current listing
    a..b.lck              run lock
"""

import logging
import os
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Optional

from ..exceptions import BisyncLockError, ListingFormatError
from .listing import PathListing, Side

logger = logging.getLogger(__name__)

LISTING_SUFFIX = ".lst"
POISONED_SUFFIX = ".lst-err"
WORKING_SUFFIX = ".lst-new"
LOCK_SUFFIX = ".lck"


class HistoryState(str, Enum):
    """Trust state of a session's history."""

    TRUSTED = "trusted"
    """Both listings exist and can be used as the baseline"""

    POISONED = "poisoned"
    """A critical error happened; only a resync may run"""

    MISSING = "missing"
    """No history yet; the first run must be a resync"""


class ListingStore:
    """Reads and writes the listing files of one session."""

    def __init__(self, workdir: Path, session: str):
        """Initialize listing store.

        Args:
            workdir: Directory holding listings and lock files
            session: Session name, see :func:`pybisync.utils.session_name`
        """
        self.workdir = Path(workdir)
        self.session = session

    def ensure_workdir(self) -> None:
        self.workdir.mkdir(parents=True, exist_ok=True)

    def listing_path(self, side: Side, suffix: str = LISTING_SUFFIX) -> Path:
        return self.workdir / f"{self.session}.{side.value}{suffix}"

    def exists(self, side: Side, suffix: str = LISTING_SUFFIX) -> bool:
        return self.listing_path(side, suffix).exists()

    def load(self, side: Side) -> PathListing:
        """Load the trusted listing of a side.

        Raises:
            ListingFormatError: If the file is missing or malformed
        """
        path = self.listing_path(side)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ListingFormatError(f"Cannot read {side.label} listing {path}: {e}") from e
        listing = PathListing.loads(side, text)
        logger.debug(f"Loaded {side.label} listing with {len(listing)} file(s) from {path}")
        return listing

    def save(self, listing: PathListing, suffix: str = LISTING_SUFFIX) -> Path:
        """Write a listing atomically.

        Returns:
            Path of the written file
        """
        self.ensure_workdir()
        path = self.listing_path(listing.side, suffix)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(listing.dumps())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        logger.debug(f"Saved {listing.side.label} listing with {len(listing)} file(s) to {path}")
        return path

    def remove(self, side: Side, suffix: str) -> bool:
        """Remove one listing file, returning True if it existed."""
        path = self.listing_path(side, suffix)
        if path.exists():
            path.unlink()
            return True
        return False

    def cleanup_working_files(self) -> None:
        for side in Side:
            self.remove(side, WORKING_SUFFIX)


class LockoutManager:
    """Owns the trust state of a session's history.

    History is either fully trusted or fully poisoned. Poisoning renames both
    listings to ``.lst-err``; only :meth:`commit` after a successful resync
    brings trusted listings back.
    """

    def __init__(self, store: ListingStore):
        self.store = store

    def state(self) -> HistoryState:
        """Read the persisted trust state."""
        if any(self.store.exists(side, POISONED_SUFFIX) for side in Side):
            return HistoryState.POISONED
        if all(self.store.exists(side) for side in Side):
            return HistoryState.TRUSTED
        return HistoryState.MISSING

    def poison(self, reason: str) -> None:
        """Mark the history as untrustworthy.

        Existing listings are renamed to ``.lst-err``. If a side has no
        listing yet, an ``.lst-err`` marker is written in its place, so the
        lockout holds even when it happens during the very first resync.
        """
        self.store.ensure_workdir()
        for side in Side:
            listing = self.store.listing_path(side)
            poisoned = self.store.listing_path(side, POISONED_SUFFIX)
            if listing.exists():
                os.replace(listing, poisoned)
            elif not poisoned.exists():
                poisoned.write_text(f"# poisoned: {reason}\n", encoding="utf-8")
        logger.error(f"History of {self.store.session} poisoned: {reason}")

    def commit(self, listing1: PathListing, listing2: PathListing) -> None:
        """Store new trusted listings and clear any lockout.

        A trusted listing whose records did not change is left as it is.
        """
        if listing1.side is not Side.PATH1 or listing2.side is not Side.PATH2:
            raise ValueError("commit() expects the Path1 listing first")
        for listing in (listing1, listing2):
            if self._unchanged(listing):
                logger.debug(f"{listing.side.label} listing unchanged")
                continue
            self.store.save(listing)
        self.clear()

    def _unchanged(self, listing: PathListing) -> bool:
        if not self.store.exists(listing.side):
            return False
        try:
            stored = self.store.load(listing.side)
        except ListingFormatError:
            return False
        return stored.same_records(listing)

    def clear(self) -> bool:
        """Remove the poisoned marker.

        Returns:
            True if a marker was removed
        """
        cleared = False
        for side in Side:
            cleared = self.store.remove(side, POISONED_SUFFIX) or cleared
        if cleared:
            logger.info(f"Lockout of {self.store.session} cleared")
        return cleared


class RunLock:
    """Exclusive lock file for one session.

    Acquiring never waits: a second run fails at once with
    :class:`BisyncLockError`. Use as a context manager so the lock is
    released on every exit path.
    """

    def __init__(self, workdir: Path, session: str):
        self.path = Path(workdir) / f"{session}{LOCK_SUFFIX}"
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            owner = self._read_owner()
            raise BisyncLockError(
                f"Session is locked by another run (lock file {self.path}"
                f"{', pid ' + owner if owner else ''})"
            ) from e
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        self._held = True
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False
        logger.debug(f"Released lock {self.path}")

    def _read_owner(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.release()

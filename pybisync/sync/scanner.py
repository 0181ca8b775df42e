"""Directory scanning for local trees."""

import logging
from pathlib import Path
from typing import Optional

from ..exceptions import BackendError
from ..utils import calculate_md5, timestamp_from_ns
from .filters import FilterSet
from .listing import FileRecord, PathListing, Side

logger = logging.getLogger(__name__)

# Suffix of files being written by an upload
PARTIAL_SUFFIX = ".pybisync-partial"


class DirectoryScanner:
    """Scans a local directory tree into a :class:`PathListing`.

    Unlike a best-effort file walk, an unreadable directory is an error:
    silently skipping it would make every file below it look deleted.

    Examples:
        >>> scanner = DirectoryScanner()
        >>> listing = scanner.scan(Path("/sync/folder"), Side.PATH1)

        >>> # With filters and content hashes
        >>> scanner = DirectoryScanner(FilterSet(["*.tmp"]), compute_hashes=True)
        >>> listing = scanner.scan(Path("/sync/folder"), Side.PATH1)
    """

    def __init__(
        self,
        filters: Optional[FilterSet] = None,
        compute_hashes: bool = False,
    ):
        """Initialize directory scanner.

        Args:
            filters: Patterns excluding paths from the listing
            compute_hashes: Whether to compute the MD5 of every file
        """
        self.filters = filters or FilterSet.empty()
        self.compute_hashes = compute_hashes

    def should_ignore(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check if a relative path is excluded by the filters."""
        if self.filters.is_excluded(relative_path, is_dir=is_dir):
            logger.debug(f"Ignoring (from filters): {relative_path}")
            return True
        return False

    def scan(self, root: Path, side: Side) -> PathListing:
        """Recursively scan a tree and build its listing.

        Args:
            root: Root directory of the tree
            side: Side the tree belongs to

        Returns:
            Listing of all non-filtered files

        Raises:
            BackendError: If the root is missing or a directory can't be read
        """
        if not root.is_dir():
            raise BackendError(f"{side.label} root is not a directory: {root}")
        records = self._scan_dir(root, root)
        logger.debug(f"Scanned {len(records)} file(s) under {root}")
        return PathListing.build(side, records)

    def _scan_dir(self, directory: Path, base_path: Path) -> list[FileRecord]:
        records: list[FileRecord] = []
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            raise BackendError(f"Cannot list directory {directory}: {e}") from e

        for item in entries:
            # Use as_posix() to ensure forward slashes on all platforms
            relative_path = item.relative_to(base_path).as_posix()
            is_dir = item.is_dir()
            if self.should_ignore(relative_path, is_dir=is_dir):
                continue

            if is_dir:
                records.extend(self._scan_dir(item, base_path))
            elif item.is_file():
                if item.name.endswith(PARTIAL_SUFFIX):
                    logger.debug(f"Skipping partial upload: {relative_path}")
                    continue
                record = self._make_record(item, relative_path)
                if record is not None:
                    records.append(record)
        return records

    def _make_record(self, file_path: Path, relative_path: str) -> Optional[FileRecord]:
        try:
            stat = file_path.stat()
            content_hash = calculate_md5(file_path) if self.compute_hashes else None
        except FileNotFoundError:
            # Removed between listing the directory and reading the file
            logger.debug(f"File vanished while scanning: {relative_path}")
            return None
        except OSError as e:
            raise BackendError(f"Cannot read {file_path}: {e}") from e

        return FileRecord(
            relative_path=relative_path,
            size=stat.st_size,
            mod_time=timestamp_from_ns(stat.st_mtime_ns),
            content_hash=content_hash,
        )

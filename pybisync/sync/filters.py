"""Filter patterns and their fingerprint.

Filters use gitignore-style patterns (``*.tmp``, ``build/``, ``!keep.tmp``)
matched with ``pathspec``. A matching path is excluded from both listings.

Changing the filters between runs would make newly excluded files look
deleted and newly included files look new, so the MD5 of the filters file is
pinned in a ``.md5`` sidecar next to it. Only a resync updates the sidecar.
"""

import logging
from pathlib import Path
from typing import Optional

from pathspec import PathSpec

from ..exceptions import BisyncConfigError
from ..utils import calculate_md5

logger = logging.getLogger(__name__)

FINGERPRINT_SUFFIX = ".md5"


class FilterSet:
    """Compiled filter patterns."""

    def __init__(self, patterns: Optional[list[str]] = None, source: Optional[Path] = None):
        """Initialize filter set.

        Args:
            patterns: Gitignore-style patterns; blank lines and comments are ignored
            source: File the patterns were read from, if any
        """
        self.patterns = [
            p for p in (patterns or []) if p.strip() and not p.lstrip().startswith("#")
        ]
        self.source = source
        self._spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    @classmethod
    def from_file(cls, filters_file: Path) -> "FilterSet":
        """Load patterns from a filters file.

        Raises:
            BisyncConfigError: If the file can't be read
        """
        try:
            text = filters_file.read_text(encoding="utf-8")
        except OSError as e:
            raise BisyncConfigError(f"Cannot read filters file {filters_file}: {e}") from e
        filter_set = cls(text.splitlines(), source=filters_file)
        logger.debug(
            f"Loaded {len(filter_set.patterns)} filter pattern(s) from {filters_file}"
        )
        return filter_set

    @classmethod
    def empty(cls) -> "FilterSet":
        return cls([])

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def is_excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check whether a relative path is filtered out.

        Args:
            relative_path: Path relative to the tree root (forward slashes)
            is_dir: Whether the path is a directory

        Returns:
            True if the path matches the filters
        """
        if not self.patterns:
            return False
        if is_dir and not relative_path.endswith("/"):
            relative_path += "/"
        return self._spec.match_file(relative_path)


def fingerprint_path(filters_file: Path) -> Path:
    """Location of the fingerprint sidecar of a filters file."""
    return filters_file.with_name(filters_file.name + FINGERPRINT_SUFFIX)


def compute_fingerprint(filters_file: Path) -> str:
    """MD5 of the filters file contents.

    Raises:
        BisyncConfigError: If the file can't be read
    """
    try:
        return calculate_md5(filters_file)
    except OSError as e:
        raise BisyncConfigError(f"Cannot read filters file {filters_file}: {e}") from e


def read_stored_fingerprint(filters_file: Path) -> Optional[str]:
    """Fingerprint saved by the last resync, or None if there is none."""
    sidecar = fingerprint_path(filters_file)
    try:
        return sidecar.read_text(encoding="utf-8").strip() or None
    except FileNotFoundError:
        return None


def store_fingerprint(filters_file: Path, fingerprint: str) -> Path:
    """Write the fingerprint sidecar.

    Returns:
        Path of the sidecar file
    """
    sidecar = fingerprint_path(filters_file)
    sidecar.write_text(fingerprint + "\n", encoding="utf-8")
    logger.debug(f"Stored filters fingerprint {fingerprint} in {sidecar}")
    return sidecar

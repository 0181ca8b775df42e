"""Utility functions for pybisync."""

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# =============================================================================
# Defaults
# =============================================================================

# Abort when more than this percentage of files were deleted on one side
DEFAULT_MAX_DELETE: int = 50

# Name of the access check files looked up by --check-access
DEFAULT_CHECK_FILENAME: str = "RCLONE_TEST"

# Modification times within this window (seconds) are considered equal
DEFAULT_MODIFY_WINDOW: float = 2.0

# Suffix template for conflict copies, {n} is the side number
DEFAULT_CONFLICT_SUFFIX: str = "..path{n}"

# Read block size for content hashing (1 MB)
HASH_BLOCK_SIZE: int = 1024 * 1024


def default_workdir() -> Path:
    """Return the default directory for listings and lock files."""
    return Path.home() / ".cache" / "pybisync"


# =============================================================================
# Timestamp utilities
# =============================================================================


def format_timestamp(timestamp: float) -> str:
    """Format a Unix timestamp as an ISO 8601 UTC string.

    Args:
        timestamp: Unix timestamp

    Returns:
        ISO string with microseconds, e.g. "2025-01-15T10:30:00.000000+00:00"
    """
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(
        timespec="microseconds"
    )


def parse_timestamp(timestamp_str: str) -> float:
    """Parse an ISO 8601 timestamp into a Unix timestamp.

    Naive timestamps are taken as UTC. A trailing 'Z' is accepted.

    Raises:
        ValueError: If the string is not a valid ISO timestamp
    """
    if timestamp_str.endswith("Z"):
        timestamp_str = timestamp_str[:-1] + "+00:00"
    dt = datetime.fromisoformat(timestamp_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def timestamp_from_ns(timestamp_ns: int) -> float:
    """Convert a nanosecond timestamp to the precision listings store.

    Listings keep microseconds, so the extra digits are truncated; a time
    read from disk and the same time read back from a listing compare equal.

    Examples:
        >>> timestamp_from_ns(1_700_000_000_123_456_789)
        1700000000.123456
    """
    return (timestamp_ns // 1000) / 1_000_000


def now_iso() -> str:
    """Current time as an ISO 8601 UTC string."""
    return datetime.now(tz=timezone.utc).isoformat(timespec="seconds")


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def calculate_md5(file_path: Path) -> str:
    """Calculate the MD5 hex digest of a file.

    Args:
        file_path: File to hash

    Returns:
        Lowercase hex digest
    """
    md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            md5.update(block)
    return md5.hexdigest()


# =============================================================================
# Session naming
# =============================================================================

_SESSION_UNSAFE = re.compile(r"[\\/:\s]+")


def canonical_path_name(path: str) -> str:
    """Turn a path into a string usable inside a file name.

    Examples:
        >>> canonical_path_name("/home/user/docs/")
        'home_user_docs'
        >>> canonical_path_name("C:\\\\Data\\\\My Files")
        'C_Data_My_Files'
    """
    name = _SESSION_UNSAFE.sub("_", path.strip())
    return name.strip("_") or "root"


def session_name(path1: str, path2: str) -> str:
    """Build the session name used for listing and lock files.

    Examples:
        >>> session_name("/home/user/docs", "/mnt/backup/docs")
        'home_user_docs..mnt_backup_docs'
    """
    return f"{canonical_path_name(path1)}..{canonical_path_name(path2)}"


def conflict_name(relative_path: str, suffix_template: str, side_number: int) -> str:
    """Build the disambiguated name of a conflict copy.

    Examples:
        >>> conflict_name("dir/a.txt", "..path{n}", 1)
        'dir/a.txt..path1'
    """
    return relative_path + suffix_template.format(n=side_number)


def optional_str(value: Optional[str]) -> str:
    """Render an optional value for listings and logs, using '-' for None."""
    return value if value else "-"

"""Run configuration for pybisync.

A bisync run is configured by a :class:`BisyncOptions` instance. Options can
be built directly, from the command line, or from a JSON jobs file:

.. code-block:: json

    [
        {
            "path1": "/home/user/Documents",
            "path2": "/mnt/backup/Documents",
            "checkAccess": true,
            "maxDelete": 25,
            "filtersFile": "/home/user/.config/pybisync/docs.filters"
        }
    ]
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import BisyncConfigError
from .utils import (
    DEFAULT_CHECK_FILENAME,
    DEFAULT_CONFLICT_SUFFIX,
    DEFAULT_MAX_DELETE,
    DEFAULT_MODIFY_WINDOW,
    default_workdir,
)

logger = logging.getLogger(__name__)

WORKDIR_ENV_VAR = "PYBISYNC_WORKDIR"


class CheckSyncMode(str, Enum):
    """How the final listings integrity check is run."""

    ENABLED = "enabled"
    """Compare the post-sync listings at the end of the run"""

    DISABLED = "disabled"
    """Skip the comparison"""

    ONLY = "only"
    """Only compare the stored listings, do not sync"""

    @classmethod
    def from_value(cls, value: Union[str, bool, "CheckSyncMode"]) -> "CheckSyncMode":
        """Parse a mode from a flag value.

        Accepts the enum values plus the boolean-ish spellings used on the
        command line ("true", "false").

        Examples:
            >>> CheckSyncMode.from_value("true")
            <CheckSyncMode.ENABLED: 'enabled'>
            >>> CheckSyncMode.from_value(False)
            <CheckSyncMode.DISABLED: 'disabled'>
        """
        if isinstance(value, CheckSyncMode):
            return value
        if isinstance(value, bool):
            return cls.ENABLED if value else cls.DISABLED
        normalized = str(value).strip().lower()
        aliases = {
            "true": cls.ENABLED,
            "yes": cls.ENABLED,
            "false": cls.DISABLED,
            "no": cls.DISABLED,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError as e:
            raise BisyncConfigError(f"Invalid check-sync mode: {value}") from e


@dataclass
class BisyncOptions:
    """Configuration of one bisync session (a Path1/Path2 pair)."""

    path1: Path
    """Root of the first tree"""

    path2: Path
    """Root of the second tree"""

    resync: bool = False
    """Regenerate both baseline listings from the current state"""

    dry_run: bool = False
    """Plan and report only, change nothing"""

    check_access: bool = False
    """Abort unless matching check files exist on both sides"""

    check_filename: str = DEFAULT_CHECK_FILENAME
    """File name looked up by the access check"""

    max_delete: int = DEFAULT_MAX_DELETE
    """Maximum percentage of deleted files per side"""

    force: bool = False
    """Bypass the max-delete check"""

    check_sync: CheckSyncMode = CheckSyncMode.ENABLED
    """Final listings integrity check mode"""

    remove_empty_dirs: bool = False
    """Remove empty directories on both sides after syncing"""

    filters_file: Optional[Path] = None
    """Gitignore-style filter patterns; changes require a resync"""

    workdir: Optional[Path] = None
    """Directory for listings and lock files"""

    retain_working_files: bool = False
    """Keep intermediate listings after the run"""

    modify_window: float = DEFAULT_MODIFY_WINDOW
    """Tolerance in seconds when comparing modification times"""

    conflict_suffix: str = DEFAULT_CONFLICT_SUFFIX
    """Suffix template for conflict copies, {n} is the side number"""

    workers: int = 1
    """Number of parallel workers for propagation"""

    compute_hashes: bool = False
    """Compute MD5 hashes while listing"""

    use_trash: bool = False
    """Move files deleted by propagation to the system trash (local paths)"""

    def __post_init__(self) -> None:
        # Normalize types
        self.path1 = Path(self.path1).expanduser()
        self.path2 = Path(self.path2).expanduser()
        if self.filters_file is not None:
            self.filters_file = Path(self.filters_file).expanduser()
        if self.workdir is None:
            env_workdir = os.environ.get(WORKDIR_ENV_VAR)
            self.workdir = Path(env_workdir) if env_workdir else default_workdir()
        self.workdir = Path(self.workdir).expanduser()
        self.check_sync = CheckSyncMode.from_value(self.check_sync)
        self.validate()

    def validate(self) -> None:
        """Check option values.

        Raises:
            BisyncConfigError: If a value is out of range
        """
        if not 0 <= self.max_delete <= 100:
            raise BisyncConfigError(
                f"max_delete must be between 0 and 100, got {self.max_delete}"
            )
        if self.modify_window < 0:
            raise BisyncConfigError("modify_window cannot be negative")
        if self.workers < 1:
            raise BisyncConfigError("workers must be at least 1")
        if "{n}" not in self.conflict_suffix:
            raise BisyncConfigError(
                "conflict_suffix must contain the {n} side placeholder"
            )
        if not self.check_filename or "/" in self.check_filename:
            raise BisyncConfigError(
                f"Invalid check file name: {self.check_filename!r}"
            )
        if self.path1.resolve() == self.path2.resolve():
            raise BisyncConfigError("path1 and path2 must be different")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BisyncOptions":
        """Create options from a jobs file entry (camelCase keys).

        Raises:
            BisyncConfigError: If a required key is missing
        """
        if "path1" not in data or "path2" not in data:
            raise BisyncConfigError("Each job needs 'path1' and 'path2'")

        known = {
            "path1": "path1",
            "path2": "path2",
            "resync": "resync",
            "dryRun": "dry_run",
            "checkAccess": "check_access",
            "checkFilename": "check_filename",
            "maxDelete": "max_delete",
            "force": "force",
            "checkSync": "check_sync",
            "removeEmptyDirs": "remove_empty_dirs",
            "filtersFile": "filters_file",
            "workdir": "workdir",
            "noCleanup": "retain_working_files",
            "modifyWindow": "modify_window",
            "conflictSuffix": "conflict_suffix",
            "workers": "workers",
            "hash": "compute_hashes",
            "useTrash": "use_trash",
        }
        kwargs: dict[str, Any] = {}
        unknown = []
        for key, value in data.items():
            if key in known:
                kwargs[known[key]] = value
            else:
                unknown.append(key)
        if unknown:
            logger.debug(f"Ignoring unknown job keys: {sorted(unknown)}")
        return cls(**kwargs)

    def replace(self, **changes: Any) -> "BisyncOptions":
        """Return a copy with some fields changed."""
        return dataclasses.replace(self, **changes)


def load_options_from_json(source: Union[str, Path]) -> list[BisyncOptions]:
    """Load bisync jobs from a JSON file.

    The file holds either a single job object or a list of them.

    Args:
        source: Path to the JSON file

    Returns:
        List of options, one per job

    Raises:
        BisyncConfigError: If the file can't be read or is malformed
    """
    path = Path(source)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise BisyncConfigError(f"Cannot read jobs file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise BisyncConfigError(f"Invalid JSON in jobs file {path}: {e}") from e

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise BisyncConfigError("Jobs file must contain an object or a list")

    jobs = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise BisyncConfigError(f"Job #{index + 1} is not an object")
        jobs.append(BisyncOptions.from_dict(entry))
    return jobs

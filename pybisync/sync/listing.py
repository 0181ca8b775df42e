"""Listings: immutable snapshots of one side's tree.

A listing is written to disk after every successful run and becomes the
baseline ("history") for the next run of the same side. The on-disk format is
a small line-oriented text file, sorted by path so that listings diff cleanly
and fingerprint reproducibly::

    # pybisync listing v1 from 2025-01-15T10:30:00+00:00
    1024 - 2025-01-15T10:29:58.120000+00:00 "docs/report.txt"
    77 5d41402abc4b2a76b9719d911017c592 2025-01-14T08:00:00.000000+00:00 "hello.txt"

Each record line holds the size, the MD5 hash (or ``-``), the modification
time and the JSON-quoted relative path.
"""

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Optional

from ..exceptions import ListingFormatError
from ..utils import format_timestamp, now_iso, optional_str, parse_timestamp

logger = logging.getLogger(__name__)

LISTING_HEADER_PREFIX = "# pybisync listing v1 from "


class Side(str, Enum):
    """One of the two synchronized trees."""

    PATH1 = "path1"
    PATH2 = "path2"

    @property
    def other(self) -> "Side":
        """The opposite side."""
        return Side.PATH2 if self is Side.PATH1 else Side.PATH1

    @property
    def number(self) -> int:
        """1 for Path1, 2 for Path2."""
        return 1 if self is Side.PATH1 else 2

    @property
    def label(self) -> str:
        return "Path1" if self is Side.PATH1 else "Path2"


@dataclass(frozen=True)
class FileRecord:
    """Metadata of one file in a listing."""

    relative_path: str
    """Path relative to the side's root, using forward slashes"""

    size: int
    """File size in bytes"""

    mod_time: float
    """Last modification time (Unix timestamp)"""

    content_hash: Optional[str] = None
    """MD5 hex digest if it was computed while listing"""

    present: bool = True
    """False for a placeholder of a path the listing doesn't hold"""

    @classmethod
    def absent(cls, relative_path: str) -> "FileRecord":
        """Placeholder record for a path missing from a listing."""
        return cls(relative_path=relative_path, size=0, mod_time=0.0, present=False)

    def to_line(self) -> str:
        """Serialize the record as a listing line."""
        return (
            f"{self.size} {optional_str(self.content_hash)} "
            f"{format_timestamp(self.mod_time)} {json.dumps(self.relative_path)}"
        )

    @classmethod
    def from_line(cls, line: str) -> "FileRecord":
        """Parse a listing line.

        Raises:
            ListingFormatError: If the line is malformed
        """
        try:
            size_str, hash_str, time_str, path_str = line.split(" ", 3)
            relative_path = json.loads(path_str)
            if not isinstance(relative_path, str) or not relative_path:
                raise ValueError("path must be a non-empty string")
            return cls(
                relative_path=relative_path,
                size=int(size_str),
                mod_time=parse_timestamp(time_str),
                content_hash=None if hash_str == "-" else hash_str,
            )
        except ValueError as e:
            raise ListingFormatError(f"Malformed listing line {line!r}: {e}") from e

    def same_content(self, other: "FileRecord") -> bool:
        """Best-effort content equality: size, plus hash when both are known."""
        if self.size != other.size:
            return False
        if self.content_hash and other.content_hash:
            return self.content_hash == other.content_hash
        return True


@dataclass(frozen=True)
class PathListing:
    """Immutable snapshot of one side's tree at one instant.

    Records are kept sorted by relative path. Build a new listing instead of
    changing an existing one.
    """

    side: Side
    timestamp: str
    records: tuple[FileRecord, ...] = ()
    _index: Mapping[str, FileRecord] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.records, key=lambda r: r.relative_path))
        index: dict[str, FileRecord] = {}
        for record in ordered:
            if not record.present:
                raise ListingFormatError(
                    f"Absent placeholder in {self.side.label} listing: "
                    f"{record.relative_path}"
                )
            if record.relative_path in index:
                raise ListingFormatError(
                    f"Duplicate path in {self.side.label} listing: "
                    f"{record.relative_path}"
                )
            index[record.relative_path] = record
        # frozen dataclass: bypass __setattr__ once at construction time
        object.__setattr__(self, "records", ordered)
        object.__setattr__(self, "_index", MappingProxyType(index))

    @classmethod
    def build(
        cls,
        side: Side,
        records: Iterable[FileRecord],
        timestamp: Optional[str] = None,
    ) -> "PathListing":
        """Create a listing stamped with the current time."""
        return cls(side=side, timestamp=timestamp or now_iso(), records=tuple(records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(self.records)

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self._index

    def get(self, relative_path: str) -> Optional[FileRecord]:
        return self._index.get(relative_path)

    def lookup(self, relative_path: str) -> FileRecord:
        """Record of a path, or an absent placeholder when it isn't listed."""
        return self._index.get(relative_path) or FileRecord.absent(relative_path)

    def paths(self) -> set[str]:
        """Set of all relative paths in the listing."""
        return set(self._index)

    @property
    def is_empty(self) -> bool:
        return not self.records

    def same_records(self, other: "PathListing") -> bool:
        """Whether both listings serialize to the same record lines."""
        if len(self) != len(other):
            return False
        return all(a.to_line() == b.to_line() for a, b in zip(self.records, other.records))

    def dumps(self) -> str:
        """Serialize the listing to its on-disk text form."""
        lines = [LISTING_HEADER_PREFIX + self.timestamp]
        lines.extend(record.to_line() for record in self.records)
        return "\n".join(lines) + "\n"

    @classmethod
    def loads(cls, side: Side, text: str) -> "PathListing":
        """Parse the on-disk text form of a listing.

        Raises:
            ListingFormatError: If the header or a record line is malformed
        """
        lines = text.splitlines()
        if not lines or not lines[0].startswith(LISTING_HEADER_PREFIX):
            raise ListingFormatError(f"Missing {side.label} listing header")
        timestamp = lines[0][len(LISTING_HEADER_PREFIX) :].strip()
        records = [
            FileRecord.from_line(line)
            for line in lines[1:]
            if line.strip() and not line.startswith("#")
        ]
        logger.debug(f"Parsed {side.label} listing with {len(records)} record(s)")
        return cls(side=side, timestamp=timestamp, records=tuple(records))

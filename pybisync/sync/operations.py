"""Storage backends and the transfer operations built on them."""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import send2trash

from ..exceptions import BackendError
from .filters import FilterSet
from .listing import PathListing, Side
from .scanner import PARTIAL_SUFFIX, DirectoryScanner

logger = logging.getLogger(__name__)


@runtime_checkable
class Backend(Protocol):
    """Primitives a storage tree has to provide.

    All paths are relative to the backend root and use forward slashes.
    Every method raises :class:`BackendError` on failure.
    """

    @property
    def description(self) -> str: ...

    def list_files(
        self, side: Side, filters: FilterSet, compute_hashes: bool = False
    ) -> PathListing: ...

    def exists(self, relative_path: str) -> bool: ...

    def download(self, relative_path: str, destination: Path) -> None: ...

    def upload(self, source: Path, relative_path: str) -> None: ...

    def move(self, src_path: str, dst_path: str) -> None: ...

    def delete(self, relative_path: str) -> None: ...

    def remove_empty_dirs(self) -> int: ...


class LocalBackend:
    """Backend for a directory on the local filesystem."""

    def __init__(self, root: Path, use_trash: bool = False):
        """Initialize local backend.

        Args:
            root: Root directory of the tree
            use_trash: Move deleted files to the system trash instead of
                unlinking them
        """
        self.root = Path(root)
        self.use_trash = use_trash

    @property
    def description(self) -> str:
        return str(self.root)

    def __repr__(self) -> str:
        return f"LocalBackend({str(self.root)!r})"

    def full_path(self, relative_path: str) -> Path:
        """Absolute path of a relative path, refusing to escape the root."""
        full = self.root / relative_path
        if ".." in Path(relative_path).parts:
            raise BackendError(f"Path escapes the tree root: {relative_path}")
        return full

    def list_files(
        self, side: Side, filters: FilterSet, compute_hashes: bool = False
    ) -> PathListing:
        scanner = DirectoryScanner(filters=filters, compute_hashes=compute_hashes)
        return scanner.scan(self.root, side)

    def exists(self, relative_path: str) -> bool:
        return self.full_path(relative_path).is_file()

    def download(self, relative_path: str, destination: Path) -> None:
        source = self.full_path(relative_path)
        try:
            shutil.copy2(source, destination)
        except OSError as e:
            raise BackendError(f"Cannot read {source}: {e}") from e

    def upload(self, source: Path, relative_path: str) -> None:
        """Copy a local file into the tree, preserving its modification time.

        The data is written next to the target first and then renamed over
        it, so readers never see a half-written file.
        """
        target = self.full_path(relative_path)
        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, partial)
            os.replace(partial, target)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise BackendError(f"Cannot write {target}: {e}") from e

    def move(self, src_path: str, dst_path: str) -> None:
        source = self.full_path(src_path)
        target = self.full_path(dst_path)
        if target.exists():
            raise BackendError(f"Move target already exists: {target}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(source, target)
        except OSError as e:
            raise BackendError(f"Cannot move {source} to {target}: {e}") from e

    def delete(self, relative_path: str) -> None:
        target = self.full_path(relative_path)
        try:
            if self.use_trash:
                send2trash.send2trash(str(target))
            else:
                target.unlink()
        except OSError as e:
            raise BackendError(f"Cannot delete {target}: {e}") from e

    def remove_empty_dirs(self) -> int:
        """Remove empty directories below the root (never the root itself).

        Returns:
            Number of directories removed
        """
        removed = 0
        for dirpath, _dirnames, _filenames in os.walk(self.root, topdown=False):
            directory = Path(dirpath)
            if directory == self.root:
                continue
            try:
                if not any(directory.iterdir()):
                    directory.rmdir()
                    removed += 1
            except OSError as e:
                raise BackendError(f"Cannot remove directory {directory}: {e}") from e
        if removed:
            logger.debug(f"Removed {removed} empty director(ies) under {self.root}")
        return removed


class SyncOperations:
    """Unified operations over the two backends of a session."""

    def __init__(self, path1: Backend, path2: Backend):
        """Initialize sync operations.

        Args:
            path1: Backend of the Path1 tree
            path2: Backend of the Path2 tree
        """
        self.backends = {Side.PATH1: path1, Side.PATH2: path2}

    def backend(self, side: Side) -> Backend:
        return self.backends[side]

    def copy_file(
        self,
        relative_path: str,
        source_side: Side,
        dest_path: Optional[str] = None,
    ) -> None:
        """Copy a file from one side to the other.

        Args:
            relative_path: Path of the file on the source side
            source_side: Side to copy from
            dest_path: Path on the destination side (defaults to relative_path)
        """
        dest_path = dest_path or relative_path
        source = self.backend(source_side)
        dest = self.backend(source_side.other)
        logger.debug(
            f"Copying {relative_path} from {source_side.label} "
            f"to {source_side.other.label} as {dest_path}"
        )

        if isinstance(source, LocalBackend) and isinstance(dest, LocalBackend):
            # Both trees are local, skip the staging copy
            dest.upload(source.full_path(relative_path), dest_path)
            return

        with tempfile.TemporaryDirectory(prefix="pybisync-") as staging:
            staged = Path(staging) / "data"
            source.download(relative_path, staged)
            dest.upload(staged, dest_path)

    def delete_file(self, relative_path: str, side: Side) -> None:
        """Delete a file on one side."""
        logger.debug(f"Deleting {relative_path} on {side.label}")
        self.backend(side).delete(relative_path)

    def move_file(self, src_path: str, dst_path: str, side: Side) -> None:
        """Rename a file within one side."""
        logger.debug(f"Renaming {src_path} to {dst_path} on {side.label}")
        self.backend(side).move(src_path, dst_path)

    def remove_empty_dirs(self) -> dict[Side, int]:
        """Prune empty directories on both sides."""
        return {side: backend.remove_empty_dirs() for side, backend in self.backends.items()}

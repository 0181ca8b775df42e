"""End-to-end tests for the bisync engine on local trees."""

import os
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from pybisync.config import BisyncOptions
from pybisync.exceptions import BackendError, BisyncLockError, CriticalError
from pybisync.output import OutputFormatter
from pybisync.sync import BisyncEngine, ExitStatus, RunState
from pybisync.sync.engine import merge_baseline
from pybisync.sync.filters import fingerprint_path
from pybisync.sync.listing import FileRecord, PathListing, Side
from pybisync.sync.operations import SyncOperations
from pybisync.sync.scanner import DirectoryScanner
from pybisync.sync.state import WORKING_SUFFIX, HistoryState, LockoutManager, RunLock

MTIME = 1_700_000_000.0


def _write(path: Path, content: str, mtime: float = MTIME) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    os.utime(path, (mtime, mtime))
    return path


def _names(root: Path) -> set[str]:
    return {p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()}


@pytest.fixture
def trees(tmp_path):
    """Two empty trees and a work dir."""
    path1 = tmp_path / "path1"
    path2 = tmp_path / "path2"
    path1.mkdir()
    path2.mkdir()
    return path1, path2, tmp_path / "work"


def _engine(trees, **kwargs) -> BisyncEngine:
    path1, path2, workdir = trees
    return BisyncEngine(BisyncOptions(path1=path1, path2=path2, workdir=workdir, **kwargs))


def _run(trees, **kwargs):
    return _engine(trees, **kwargs).run()


def _resync(trees, **kwargs):
    result = _run(trees, resync=True, **kwargs)
    assert result.status == ExitStatus.SUCCESS, result.message
    return result


def _history(trees) -> HistoryState:
    return _engine(trees).lockout.state()


def _listing_texts(trees) -> tuple[str, str]:
    store = _engine(trees).store
    return (
        store.listing_path(Side.PATH1).read_text(),
        store.listing_path(Side.PATH2).read_text(),
    )


class TestFirstRun:
    """Tests for runs without history."""

    def test_requires_resync(self, trees):
        """A normal run without listings refuses to start."""
        result = _run(trees)
        assert result.status == ExitStatus.NO_PRIOR_LISTINGS
        assert result.status.exit_code == 1
        assert "--resync" in result.recovery_hint
        assert _history(trees) == HistoryState.MISSING

    def test_resync_builds_superset(self, trees):
        """Resync copies one-sided files both ways; Path1 wins differences."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "from path1")
        _write(path2 / "sub" / "b.txt", "from path2")
        _write(path1 / "c.txt", "path1 version")
        _write(path2 / "c.txt", "path2")

        result = _resync(trees)

        assert result.state == RunState.COMMITTED
        assert result.resync
        assert _names(path1) == _names(path2) == {"a.txt", "sub/b.txt", "c.txt"}
        assert (path2 / "c.txt").read_text() == "path1 version"
        assert (path1 / "sub" / "b.txt").read_text() == "from path2"
        assert _history(trees) == HistoryState.TRUSTED

    def test_resync_of_empty_trees(self, trees):
        """Two empty trees are a valid starting point."""
        result = _resync(trees)
        assert result.plan.is_empty
        assert _history(trees) == HistoryState.TRUSTED


class TestSync:
    """Tests for regular runs."""

    def test_idempotent(self, trees):
        """Runs without changes change nothing, listings included."""
        path1, _path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _write(path1 / "dir" / "b.txt", "b")
        _resync(trees)
        before = _listing_texts(trees)

        for _ in range(2):
            result = _run(trees)
            assert result.status == ExitStatus.SUCCESS
            assert result.plan.is_empty
            assert result.check_sync.ok

        assert _listing_texts(trees) == before

    def test_idempotent_with_zero_modify_window(self, trees):
        """Sub-microsecond timestamps don't show up as changes."""
        path1, path2, _workdir = trees
        mtime_ns = 1_700_000_000_123_456_789
        path = _write(path1 / "a.txt", "a")
        os.utime(path, ns=(mtime_ns, mtime_ns))
        _resync(trees, modify_window=0)
        before = _listing_texts(trees)

        for _ in range(2):
            result = _run(trees, modify_window=0)
            assert result.status == ExitStatus.SUCCESS
            assert result.plan.is_empty

        assert _names(path1) == _names(path2) == {"a.txt"}
        assert _listing_texts(trees) == before

    def test_new_and_changed_files(self, trees):
        """New and modified files are copied to the other side."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "original")
        _resync(trees)

        _write(path1 / "new.txt", "brand new", mtime=MTIME + 50)
        _write(path2 / "a.txt", "changed on path2", mtime=MTIME + 100)

        result = _run(trees)

        assert result.status == ExitStatus.SUCCESS
        assert (path2 / "new.txt").read_text() == "brand new"
        assert (path1 / "a.txt").read_text() == "changed on path2"
        applied = result.stats["applied"]
        assert applied["copied_to_path1"] == 1
        assert applied["copied_to_path2"] == 1
        assert _run(trees).plan.is_empty

    def test_deletion_propagates(self, trees):
        """A file deleted on one side is deleted on the other."""
        path1, path2, _workdir = trees
        for name in ("a", "b", "c", "d"):
            _write(path1 / f"{name}.txt", name)
        _resync(trees)

        (path2 / "b.txt").unlink()
        result = _run(trees)

        assert result.status == ExitStatus.SUCCESS
        assert _names(path1) == {"a.txt", "c.txt", "d.txt"}
        assert result.stats["applied"]["deleted_path1"] == 1

    def test_conflict_keeps_both_versions(self, trees):
        """A file changed on both sides survives in both versions, byte for byte."""
        path1, path2, _workdir = trees
        _write(path1 / "doc.txt", "base")
        _resync(trees)

        _write(path1 / "doc.txt", "edited on path1", mtime=MTIME + 100)
        _write(path2 / "doc.txt", "edited on path2 as well", mtime=MTIME + 200)

        result = _run(trees)

        assert result.status == ExitStatus.SUCCESS
        assert len(result.plan.conflicts) == 1
        for root in (path1, path2):
            assert _names(root) == {"doc.txt..path1", "doc.txt..path2"}
            assert (root / "doc.txt..path1").read_bytes() == b"edited on path1"
            assert (root / "doc.txt..path2").read_bytes() == b"edited on path2 as well"
        assert result.stats["applied"]["conflicts_resolved"] == 1
        assert _run(trees).plan.is_empty

    def test_delete_vs_change_keeps_changed_version(self, trees):
        """A deletion never wins over a modification."""
        path1, path2, _workdir = trees
        for name in ("a", "b", "c"):
            _write(path1 / f"{name}.txt", name)
        _resync(trees)

        (path1 / "b.txt").unlink()
        _write(path2 / "b.txt", "still needed", mtime=MTIME + 100)

        result = _run(trees)

        assert result.status == ExitStatus.SUCCESS
        assert (path1 / "b.txt").read_text() == "still needed"
        assert (path2 / "b.txt").read_text() == "still needed"

    def test_parallel_workers(self, trees):
        """Propagation with several workers reaches the same result."""
        path1, path2, _workdir = trees
        _resync(trees)
        for i in range(8):
            _write(path1 / f"f{i}.txt", str(i))

        result = _run(trees, workers=4)

        assert result.status == ExitStatus.SUCCESS
        assert _names(path2) == {f"f{i}.txt" for i in range(8)}

    def test_remove_empty_dirs(self, trees):
        """Directories emptied by the run are pruned on both sides."""
        path1, path2, _workdir = trees
        _write(path1 / "sub" / "a.txt", "a")
        _write(path1 / "b.txt", "b")
        _write(path1 / "c.txt", "c")
        _resync(trees)

        (path1 / "sub" / "a.txt").unlink()
        result = _run(trees, remove_empty_dirs=True)

        assert result.status == ExitStatus.SUCCESS
        assert not (path1 / "sub").exists()
        assert not (path2 / "sub").exists()

    def test_working_files(self, trees):
        """Working listings are kept only on request."""
        engine = _engine(trees, resync=True, retain_working_files=True)
        engine.run()
        assert engine.store.exists(Side.PATH1, WORKING_SUFFIX)

        engine = _engine(trees)
        engine.run()
        assert not engine.store.exists(Side.PATH1, WORKING_SUFFIX)

    def test_output_formatter(self, trees):
        """A non-quiet formatter prints the plan and summary."""
        path1, path2, workdir = trees
        _write(path1 / "a.txt", "a")
        output = OutputFormatter()
        options = BisyncOptions(path1=path1, path2=path2, workdir=workdir, resync=True)

        with patch.object(output, "success") as mock_success:
            result = BisyncEngine(options, output=output).run()

        assert result.status == ExitStatus.SUCCESS
        mock_success.assert_called_once_with("Resync complete!")


class TestSafetyChecks:
    """Tests for vetoes; none of them may change anything."""

    def test_max_delete_aborts(self, trees):
        """Deleting most files on one side stops the run."""
        path1, path2, _workdir = trees
        for name in ("a", "b", "c", "d"):
            _write(path1 / f"{name}.txt", name)
        _resync(trees)
        before = _listing_texts(trees)

        for name in ("a", "b", "c"):
            (path1 / f"{name}.txt").unlink()
        result = _run(trees)

        assert result.status == ExitStatus.ABORTED_MAX_DELETE
        assert result.state == RunState.IDLE
        assert result.status.exit_code == 1
        assert _names(path2) == {"a.txt", "b.txt", "c.txt", "d.txt"}
        assert _listing_texts(trees) == before
        assert _history(trees) == HistoryState.TRUSTED

    def test_max_delete_force(self, trees):
        """--force lets the deletions through."""
        path1, path2, _workdir = trees
        for name in ("a", "b", "c", "d"):
            _write(path1 / f"{name}.txt", name)
        _resync(trees)
        for name in ("a", "b", "c"):
            (path1 / f"{name}.txt").unlink()

        result = _run(trees, force=True)

        assert result.status == ExitStatus.SUCCESS
        assert _names(path2) == {"d.txt"}

    def test_empty_tree_guard(self, trees):
        """An emptied side is refused instead of wiping the other side."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)

        (path1 / "a.txt").unlink()
        result = _run(trees, force=True)

        assert result.status == ExitStatus.EMPTY_LISTING
        assert (path2 / "a.txt").exists()
        assert _history(trees) == HistoryState.TRUSTED

    def test_check_access(self, trees):
        """Matching check files are required on both sides."""
        path1, path2, _workdir = trees
        _write(path1 / "RCLONE_TEST", "")
        _write(path1 / "a.txt", "a")
        _write(path1 / "b.txt", "b")
        _resync(trees)

        assert _run(trees, check_access=True).status == ExitStatus.SUCCESS

        (path2 / "RCLONE_TEST").unlink()
        result = _run(trees, check_access=True)

        assert result.status == ExitStatus.ABORTED_CHECK_ACCESS
        assert (path1 / "RCLONE_TEST").exists()
        assert _history(trees) == HistoryState.TRUSTED

    def test_filters_changed(self, trees, tmp_path):
        """Changed filters require a resync."""
        path1, path2, _workdir = trees
        filters = tmp_path / "filters.txt"
        filters.write_text("*.tmp\n")
        _write(path1 / "a.txt", "a")
        _write(path1 / "scratch.tmp", "x")

        _resync(trees, filters_file=filters)

        assert _names(path2) == {"a.txt"}
        assert fingerprint_path(filters).exists()
        assert _run(trees, filters_file=filters).status == ExitStatus.SUCCESS

        filters.write_text("*.tmp\n*.log\n")
        result = _run(trees, filters_file=filters)
        assert result.status == ExitStatus.ABORTED_FILTERS_CHANGED
        assert "--resync" in result.recovery_hint

        _resync(trees, filters_file=filters)
        assert _run(trees, filters_file=filters).status == ExitStatus.SUCCESS

    def test_filters_hiding_every_file(self, trees, tmp_path):
        """Changed filters are caught before either side is listed."""
        path1, _path2, _workdir = trees
        filters = tmp_path / "filters.txt"
        filters.write_text("*.tmp\n")
        _write(path1 / "a.txt", "a")
        _write(path1 / "b.txt", "b")
        _resync(trees, filters_file=filters)

        filters.write_text("*.txt\n")
        with patch.object(DirectoryScanner, "scan") as mock_scan:
            result = _run(trees, filters_file=filters)

        assert result.status == ExitStatus.ABORTED_FILTERS_CHANGED
        mock_scan.assert_not_called()
        assert _history(trees) == HistoryState.TRUSTED

    def test_dry_run(self, trees):
        """A dry run reports the plan and changes nothing."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        before = _listing_texts(trees)
        _write(path1 / "new.txt", "new")

        result = _run(trees, dry_run=True)

        assert result.status == ExitStatus.SUCCESS
        assert result.dry_run
        assert result.plan.stats()["copies_to_path2"] == 1
        assert result.propagation is None
        assert not (path2 / "new.txt").exists()
        assert _listing_texts(trees) == before

    def test_dry_run_resync(self, trees):
        """A dry-run resync creates no history."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")

        result = _run(trees, resync=True, dry_run=True)

        assert result.status == ExitStatus.SUCCESS
        assert not (path2 / "a.txt").exists()
        assert _history(trees) == HistoryState.MISSING


    def test_dry_run_listing_failure_keeps_history(self, trees):
        """A dry run that can't list a side leaves the history trusted."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        before = _listing_texts(trees)
        shutil.rmtree(path2)

        result = _run(trees, dry_run=True)

        assert result.status == ExitStatus.CRITICAL_LOCKOUT
        assert "dry run" in result.message
        assert result.state == RunState.IDLE
        assert _history(trees) == HistoryState.TRUSTED
        assert _listing_texts(trees) == before

    def test_dry_run_interrupt_keeps_history(self, trees):
        """An interrupted dry run re-raises without poisoning."""
        path1, _path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)

        with patch.object(DirectoryScanner, "scan", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                _run(trees, dry_run=True)

        assert _history(trees) == HistoryState.TRUSTED


class TestCheckSync:
    """Tests for the listings integrity check."""

    def test_only_mode_passes(self, trees):
        """check-sync only compares the stored listings without syncing."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        _write(path1 / "new.txt", "new")

        result = _run(trees, check_sync="only")

        assert result.status == ExitStatus.SUCCESS
        assert result.check_sync.ok
        assert not (path2 / "new.txt").exists()

    def test_only_mode_detects_mismatch(self, trees):
        """Listings that disagree fail the check without poisoning."""
        path1, _path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        engine = _engine(trees, check_sync="only")
        engine.store.save(PathListing.build(Side.PATH2, []))

        result = engine.run()

        assert result.status == ExitStatus.CHECK_SYNC_FAILED
        assert result.check_sync.only_in_path1 == ["a.txt"]
        assert _history(trees) == HistoryState.TRUSTED

    def test_only_mode_without_history(self, trees):
        """There is nothing to check before the first resync."""
        assert _run(trees, check_sync="only").status == ExitStatus.NO_PRIOR_LISTINGS

    def test_disabled(self, trees):
        """With check-sync off no report is produced."""
        path1, _path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        result = _run(trees, check_sync=False)
        assert result.status == ExitStatus.SUCCESS
        assert result.check_sync is None


class TestLockout:
    """Tests for critical errors and the lockout they cause."""

    def test_propagation_failure_locks_out_until_resync(self, trees):
        """A failed copy poisons the history; only a resync recovers."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        _write(path1 / "new.txt", "new")

        with patch.object(SyncOperations, "copy_file", side_effect=BackendError("boom")):
            result = _run(trees)

        assert result.status == ExitStatus.CRITICAL_LOCKOUT
        assert result.state == RunState.LOCKED_OUT
        assert result.status.exit_code == 2
        assert "boom" in result.message
        assert _history(trees) == HistoryState.POISONED

        # Sticky: even a healthy run is refused, before anything is listed
        with patch.object(DirectoryScanner, "scan") as mock_scan:
            result = _run(trees)
        mock_scan.assert_not_called()
        assert result.status == ExitStatus.CRITICAL_LOCKOUT
        assert result.plan is None
        assert not (path2 / "new.txt").exists()

        result = _resync(trees)
        assert _history(trees) == HistoryState.TRUSTED
        assert (path2 / "new.txt").read_text() == "new"
        assert _run(trees).status == ExitStatus.SUCCESS

    def test_interrupt_poisons_and_reraises(self, trees):
        """An interrupt during propagation leaves a poisoned history."""
        path1, _path2, workdir = trees
        _resync(trees)
        _write(path1 / "new.txt", "new")
        engine = _engine(trees)

        with patch.object(SyncOperations, "copy_file", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                engine.run()

        assert engine.state == RunState.LOCKED_OUT
        assert _history(trees) == HistoryState.POISONED
        assert not RunLock(workdir, engine.session).path.exists()

    def test_unexpected_error_raises_critical(self, trees):
        """An unexpected error mid-propagation poisons, then raises CriticalError."""
        path1, _path2, _workdir = trees
        _resync(trees)
        _write(path1 / "new.txt", "new")

        with patch.object(SyncOperations, "copy_file", side_effect=RuntimeError("bug")):
            with pytest.raises(CriticalError, match="bug") as exc_info:
                _run(trees)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "--resync" in exc_info.value.recovery_hint
        assert _history(trees) == HistoryState.POISONED

    def test_listing_failure_locks_out(self, trees):
        """A side that can't be listed is a critical error."""
        path1, path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        _resync(trees)
        shutil.rmtree(path2)

        result = _run(trees)

        assert result.status == ExitStatus.CRITICAL_LOCKOUT
        assert "Listing failed" in result.message
        assert _history(trees) == HistoryState.POISONED

    def test_failed_resync_locks_out(self, trees):
        """A resync that fails half way is critical too."""
        path1, _path2, _workdir = trees
        _write(path1 / "a.txt", "a")

        with patch.object(SyncOperations, "copy_file", side_effect=BackendError("boom")):
            result = _run(trees, resync=True)

        assert result.status == ExitStatus.CRITICAL_LOCKOUT
        assert _history(trees) == HistoryState.POISONED
        assert _resync(trees).status == ExitStatus.SUCCESS

    def test_resync_without_filters_fingerprint_is_not_trusted(self, trees, tmp_path):
        """A resync that can't pin the filters commits no listings."""
        path1, _path2, _workdir = trees
        filters = tmp_path / "filters.txt"
        filters.write_text("*.tmp\n")
        _write(path1 / "a.txt", "a")

        with patch(
            "pybisync.sync.safety.store_fingerprint", side_effect=OSError("disk full")
        ), patch.object(LockoutManager, "commit") as mock_commit:
            with pytest.raises(CriticalError, match="disk full"):
                _run(trees, resync=True, filters_file=filters)

        mock_commit.assert_not_called()
        assert not fingerprint_path(filters).exists()
        assert _history(trees) == HistoryState.POISONED

    def test_lock_contention(self, trees):
        """A second run of the same session fails fast."""
        _, _, workdir = trees
        engine = _engine(trees, resync=True)

        with RunLock(workdir, engine.session):
            with pytest.raises(BisyncLockError):
                engine.run()

        assert _history(trees) == HistoryState.MISSING


class TestMergeBaseline:
    """Tests for building the next baseline."""

    def test_untouched_paths_keep_pre_sync_records(self):
        """Changes made during the run to other files stay visible."""
        current = PathListing.build(
            Side.PATH1,
            [FileRecord("a.txt", 1, 100.0), FileRecord("b.txt", 1, 100.0)],
        )
        final = PathListing.build(
            Side.PATH1,
            [
                FileRecord("a.txt", 5, 300.0),
                FileRecord("b.txt", 2, 200.0),
                FileRecord("late.txt", 1, 250.0),
            ],
        )

        baseline = merge_baseline(current, final, touched={"b.txt"})

        assert baseline.get("a.txt").mod_time == 100.0
        assert baseline.get("b.txt").mod_time == 200.0
        assert "late.txt" not in baseline

    def test_touched_paths_follow_post_sync_listing(self):
        """Conflict copies appear and deleted paths disappear."""
        current = PathListing.build(Side.PATH2, [FileRecord("x", 1, 1.0), FileRecord("gone", 1, 1.0)])
        final = PathListing.build(Side.PATH2, [FileRecord("x..path1", 1, 2.0), FileRecord("x..path2", 1, 3.0)])

        baseline = merge_baseline(current, final, touched={"x", "x..path1", "x..path2", "gone"})

        assert baseline.paths() == {"x..path1", "x..path2"}


class TestRunResult:
    """Tests for the result object."""

    def test_to_dict(self, trees):
        """The result serializes to plain data."""
        path1, _path2, _workdir = trees
        _write(path1 / "a.txt", "a")
        data = _resync(trees).to_dict()
        assert data["status"] == "success"
        assert data["state"] == "committed"
        assert data["resync"] is True
        assert data["actions"] == [
            {"action": "copy_to_other", "path": "a.txt", "source": "path1", "reason": "Only on Path1"}
        ]
        assert data["stats"]["applied"]["copied_to_path2"] == 1
        assert data["check_sync"]["ok"] is True

    def test_to_dict_includes_safety_report(self, trees):
        """Normal runs report what the safety checks measured."""
        path1, _path2, _workdir = trees
        for name in ("a.txt", "b.txt", "c.txt", "d.txt"):
            _write(path1 / name, name)
        _resync(trees)
        (path1 / "a.txt").unlink()

        data = _run(trees).to_dict()

        assert data["safety"]["delete_percent"] == {"path1": 25.0, "path2": 0.0}
        assert data["safety"]["filters_fingerprint"] is None
        assert "safety" not in _resync(trees).to_dict()

    @pytest.mark.parametrize(
        "status, code",
        [
            (ExitStatus.SUCCESS, 0),
            (ExitStatus.ABORTED_MAX_DELETE, 1),
            (ExitStatus.EMPTY_LISTING, 1),
            (ExitStatus.CHECK_SYNC_FAILED, 1),
            (ExitStatus.CRITICAL_LOCKOUT, 2),
        ],
    )
    def test_exit_codes(self, status, code):
        """Exit codes separate success, recoverable aborts and lockouts."""
        assert status.exit_code == code

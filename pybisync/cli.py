"""CLI interface for pybisync."""

import logging
from pathlib import Path
from typing import Any, Optional

import click
from click.core import ParameterSource

from .config import WORKDIR_ENV_VAR, BisyncOptions, load_options_from_json
from .exceptions import (
    BisyncConfigError,
    BisyncError,
    BisyncLockError,
    CriticalError,
)
from .output import OutputFormatter
from .sync import BisyncEngine, HistoryState, RunLock, RunResult, Side
from .utils import (
    DEFAULT_CHECK_FILENAME,
    DEFAULT_CONFLICT_SUFFIX,
    DEFAULT_MAX_DELETE,
    DEFAULT_MODIFY_WINDOW,
    format_size,
)

logger = logging.getLogger(__name__)

# Exit code of `status` per history state
STATUS_EXIT_CODES = {
    HistoryState.TRUSTED: 0,
    HistoryState.MISSING: 1,
    HistoryState.POISONED: 2,
}


# `sync` parameters that map onto BisyncOptions fields
OPTION_FIELDS = {
    "resync": "resync",
    "dry_run": "dry_run",
    "check_access": "check_access",
    "check_filename": "check_filename",
    "max_delete": "max_delete",
    "force": "force",
    "check_sync": "check_sync",
    "remove_empty_dirs": "remove_empty_dirs",
    "filters_file": "filters_file",
    "workdir": "workdir",
    "no_cleanup": "retain_working_files",
    "modify_window": "modify_window",
    "conflict_suffix": "conflict_suffix",
    "workers": "workers",
    "compute_hashes": "compute_hashes",
    "use_trash": "use_trash",
}


def _explicit_overrides(ctx: Any) -> dict[str, Any]:
    """Collect the options given on the command line (or environment).

    These take precedence over the values from a jobs file.
    """
    overrides: dict[str, Any] = {}
    for param, field_name in OPTION_FIELDS.items():
        source = ctx.get_parameter_source(param)
        if source is None or source is ParameterSource.DEFAULT:
            continue
        value = ctx.params[param]
        if param in ("filters_file", "workdir") and value is not None:
            value = Path(value)
        overrides[field_name] = value
    return overrides


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool) -> None:
    """pybisync - Two-way synchronization of two directory trees."""
    # Store settings in context for subcommands to access
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pybisync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument("path1", type=click.Path(file_okay=False), required=False)
@click.argument("path2", type=click.Path(file_okay=False), required=False)
@click.option(
    "--resync",
    is_flag=True,
    help="Rebuild both listings from the current trees (required on first run)",
)
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be done")
@click.option(
    "--check-access",
    is_flag=True,
    help="Abort unless matching check files exist on both paths",
)
@click.option(
    "--check-filename",
    default=DEFAULT_CHECK_FILENAME,
    show_default=True,
    help="File name used by --check-access",
)
@click.option(
    "--max-delete",
    type=click.IntRange(0, 100),
    default=DEFAULT_MAX_DELETE,
    show_default=True,
    help="Abort if more than this percentage of files was deleted on a side",
)
@click.option("--force", is_flag=True, help="Bypass the --max-delete check")
@click.option(
    "--check-sync",
    type=click.Choice(["true", "false", "only"], case_sensitive=False),
    default="true",
    show_default=True,
    help="Compare the final listings (only: compare the stored listings and exit)",
)
@click.option(
    "--remove-empty-dirs",
    is_flag=True,
    help="Remove empty directories on both paths after syncing",
)
@click.option(
    "--filters-file",
    type=click.Path(dir_okay=False),
    help="Gitignore-style patterns to exclude; changes require --resync",
)
@click.option(
    "--workdir",
    type=click.Path(file_okay=False),
    envvar=WORKDIR_ENV_VAR,
    help="Directory for listings and lock files",
)
@click.option("--no-cleanup", is_flag=True, help="Keep working listings after the run")
@click.option(
    "--modify-window",
    type=click.FloatRange(min=0),
    default=DEFAULT_MODIFY_WINDOW,
    show_default=True,
    help="Tolerance in seconds when comparing modification times",
)
@click.option(
    "--conflict-suffix",
    default=DEFAULT_CONFLICT_SUFFIX,
    show_default=True,
    help="Suffix for conflict copies, {n} is the path number",
)
@click.option(
    "--workers",
    "-j",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of parallel workers for copies and deletes",
)
@click.option("--hash", "compute_hashes", is_flag=True, help="Compare MD5 hashes too")
@click.option(
    "--trash",
    "use_trash",
    is_flag=True,
    help="Move deleted files to the system trash instead of removing them",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with one or more jobs (instead of PATH1 PATH2)",
)
@click.pass_context
def sync(
    ctx: Any,
    path1: Optional[str],
    path2: Optional[str],
    resync: bool,
    dry_run: bool,
    check_access: bool,
    check_filename: str,
    max_delete: int,
    force: bool,
    check_sync: str,
    remove_empty_dirs: bool,
    filters_file: Optional[str],
    workdir: Optional[str],
    no_cleanup: bool,
    modify_window: float,
    conflict_suffix: str,
    workers: int,
    compute_hashes: bool,
    use_trash: bool,
    config_file: Optional[str],
) -> None:
    """Synchronize PATH1 and PATH2 in both directions.

    Each run compares both paths with the listings of the previous run and
    copies new and changed files, propagates deletions and keeps both
    versions of files changed on both sides.

    Exit codes: 0 success, 1 aborted (nothing changed), 2 critical error
    (run --resync after checking both paths), 130 interrupted.

    Examples:
        # First run: build the listings
        pybisync sync ~/Documents /mnt/backup/Documents --resync

        # Regular runs
        pybisync sync ~/Documents /mnt/backup/Documents
        pybisync sync ~/Documents /mnt/backup/Documents --dry-run
        pybisync sync ~/Documents /mnt/backup/Documents --check-access

        # Jobs from a file
        pybisync sync --config jobs.json
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        if config_file:
            if path1 or path2:
                out.error("Cannot combine PATH1/PATH2 with --config")
                ctx.exit(1)
            jobs = load_options_from_json(config_file)
            overrides = _explicit_overrides(ctx)
            if overrides:
                logger.debug(f"Overriding job options: {sorted(overrides)}")
                jobs = [job.replace(**overrides) for job in jobs]
        else:
            if not path1 or not path2:
                out.error("PATH1 and PATH2 are required (or use --config)")
                ctx.exit(1)
            jobs = [
                BisyncOptions(
                    path1=Path(path1),
                    path2=Path(path2),
                    resync=resync,
                    dry_run=dry_run,
                    check_access=check_access,
                    check_filename=check_filename,
                    max_delete=max_delete,
                    force=force,
                    check_sync=check_sync,
                    remove_empty_dirs=remove_empty_dirs,
                    filters_file=Path(filters_file) if filters_file else None,
                    workdir=Path(workdir) if workdir else None,
                    retain_working_files=no_cleanup,
                    modify_window=modify_window,
                    conflict_suffix=conflict_suffix,
                    workers=workers,
                    compute_hashes=compute_hashes,
                    use_trash=use_trash,
                )
            ]
    except BisyncConfigError as e:
        out.error(f"Configuration error: {e}")
        ctx.exit(1)

    results: list[RunResult] = []
    try:
        for options in jobs:
            engine = BisyncEngine(options, output=out)
            results.append(engine.run())
    except KeyboardInterrupt:
        out.warning("\nSync cancelled by user")
        ctx.exit(130)  # Standard exit code for SIGINT
    except BisyncLockError as e:
        out.error(f"Lock error: {e}")
        if e.recovery_hint:
            out.warning(e.recovery_hint)
        ctx.exit(1)
    except CriticalError as e:
        out.error(f"Critical error: {e}")
        if e.recovery_hint:
            out.warning(e.recovery_hint)
        ctx.exit(2)
    except BisyncError as e:
        out.error(f"Error: {e}")
        ctx.exit(1)

    if out.json_output:
        data = [r.to_dict() for r in results]
        out.output_json(data[0] if len(data) == 1 else data)

    exit_code = max(r.status.exit_code for r in results)
    if exit_code:
        ctx.exit(exit_code)


@main.command()
@click.argument("path1", type=click.Path(file_okay=False))
@click.argument("path2", type=click.Path(file_okay=False))
@click.option(
    "--workdir",
    type=click.Path(file_okay=False),
    envvar=WORKDIR_ENV_VAR,
    help="Directory for listings and lock files",
)
@click.pass_context
def status(ctx: Any, path1: str, path2: str, workdir: Optional[str]) -> None:
    """Show the history state of the PATH1/PATH2 session.

    Exit codes: 0 listings trusted, 1 no listings yet, 2 locked out.

    Examples:
        pybisync status ~/Documents /mnt/backup/Documents
        pybisync --json status ~/Documents /mnt/backup/Documents
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        options = BisyncOptions(
            path1=Path(path1),
            path2=Path(path2),
            workdir=Path(workdir) if workdir else None,
        )
        engine = BisyncEngine(options, output=out)
        history = engine.lockout.state()
        listings = {}
        if history == HistoryState.TRUSTED:
            listings = {side: engine.store.load(side) for side in Side}
    except BisyncError as e:
        out.error(f"Error: {e}")
        ctx.exit(1)

    locked = RunLock(engine.store.workdir, engine.session).path.exists()

    if out.json_output:
        out.output_json(
            {
                "session": engine.session,
                "workdir": str(engine.store.workdir),
                "history": history.value,
                "locked": locked,
                "files": {side.value: len(listing) for side, listing in listings.items()},
                "bytes": {
                    side.value: sum(r.size for r in listing)
                    for side, listing in listings.items()
                },
            }
        )
    else:
        items = [
            ("Session", engine.session),
            ("Work dir", str(engine.store.workdir)),
            ("History", history.value),
            ("Run in progress", "yes" if locked else "no"),
        ]
        for side, listing in listings.items():
            total = format_size(sum(r.size for r in listing))
            items.append((f"{side.label} files", f"{len(listing)} ({total})"))
        out.print_summary("Bisync Status", items)

        if history == HistoryState.POISONED:
            out.warning(
                "A prior run failed critically. Check both paths, then run "
                "'pybisync sync PATH1 PATH2 --resync'"
            )
        elif history == HistoryState.MISSING:
            out.info("No listings yet. Run 'pybisync sync PATH1 PATH2 --resync' first")

    exit_code = STATUS_EXIT_CODES[history]
    if exit_code:
        ctx.exit(exit_code)


if __name__ == "__main__":
    main()

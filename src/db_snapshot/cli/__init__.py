"""CLI for database backup, restore, and post-restore verification.

Usage:
    db-snapshot backup
    db-snapshot restore
    db-snapshot restore --key app/20261019T030000Z.tgz --verify
    db-snapshot restore --file ./20261019T030000Z.tgz
    db-snapshot verify
    db-snapshot status
    db-snapshot list
    db-snapshot --config /etc/snapshot.toml --env-prefix APP_ -v backup

Commands:
    backup   - Dump the source database and publish the artifact
    restore  - Load the latest (or a named) artifact into the target
    verify   - Compare source and target table/view inventories
    status   - Show the run-state document
    list     - List stored artifacts

Exit codes: 0 success or no-op, 1 failure, 2 verification differences
(``verify`` only).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import psycopg
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from db_snapshot import factory
from db_snapshot.backup import list_backups, read_state, run_backup, run_restore
from db_snapshot.config import SnapshotConfig, load_snapshot_config
from db_snapshot.errors import ConfigError, SnapshotError
from db_snapshot.notify import Notifier
from db_snapshot.schema import VerificationDiff, compare

console = Console()


# ============================================================================
# Shared helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # boto3/botocore are chatty at DEBUG
    for noisy in ("botocore", "boto3", "s3transfer", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _load_config(args: argparse.Namespace) -> SnapshotConfig | None:
    """Load configuration, printing the problem and returning None on failure."""
    config_path = Path(args.config) if args.config else None
    try:
        return load_snapshot_config(config_path, env_prefix=args.env_prefix)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
    return None


def _keep_override(args: argparse.Namespace) -> bool | None:
    return True if getattr(args, "keep_workdir", False) else None


async def _run_verification(config: SnapshotConfig) -> VerificationDiff:
    return await compare(
        factory.resolve_url(config.source),
        factory.resolve_url(config.target),
    )


def _print_diff(diff: VerificationDiff) -> None:
    if diff.has_differences:
        console.print(f"[yellow]{diff.format_report()}[/yellow]")
    else:
        console.print(f"[bold green]v[/bold green] {diff.format_report()}")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load_config(args)
    if config is None:
        return 1
    notifier = Notifier.from_config(config.notify)

    console.print(f"Backing up [bold cyan]{config.database}[/bold cyan]...", style="dim")
    try:
        result = await run_backup(config, keep_workdir=_keep_override(args))
    except SnapshotError as e:
        console.print(f"[bold red]x[/bold red] Backup failed: {escape(str(e))}")
        await notifier.send(f"Backup of {config.database} failed: {e}")
        return 1

    console.print(
        f"[bold green]v[/bold green] Stored [bold]{result.key}[/bold] "
        f"({result.size_bytes:,} bytes, {result.elapsed_seconds:.1f}s)"
    )
    await notifier.send(
        f"Backup of {config.database} stored as {result.key} "
        f"({result.size_bytes:,} bytes)"
    )
    return 0


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Returns:
        0 on success or no-op, 1 on failure.  Verification differences
        after a restore are reported but do not fail the command.
    """
    config = _load_config(args)
    if config is None:
        return 1
    notifier = Notifier.from_config(config.notify)

    try:
        result = await run_restore(
            config,
            artifact_key=args.key,
            artifact_path=Path(args.file) if args.file else None,
            keep_workdir=_keep_override(args),
        )
    except SnapshotError as e:
        console.print(f"[bold red]x[/bold red] Restore failed: {escape(str(e))}")
        await notifier.send(f"Restore of {config.database} failed: {e}")
        return 1

    if result.status == "no_backup":
        console.print(f"[yellow]No backup recorded for {config.database}; nothing to restore.[/yellow]")
        await notifier.send(f"Restore of {config.database} skipped: no backup recorded")
        return 0

    if result.status == "skipped":
        console.print(f"[dim]Target already holds {result.key}; nothing to do.[/dim]")
        return 0

    suffix = " (manual)" if result.manual else ""
    console.print(
        f"[bold green]v[/bold green] Restored [bold]{result.key}[/bold]{suffix} "
        f"in {result.elapsed_seconds:.1f}s"
    )
    await notifier.send(f"Restore of {config.database} from {result.key} succeeded{suffix}")

    if args.verify or config.options.verify_after_restore:
        try:
            diff = await _run_verification(config)
        except (psycopg.Error, OSError) as e:
            console.print(f"[yellow]Verification could not run: {escape(str(e))}[/yellow]")
            await notifier.send(f"Verification of {config.database} could not run: {e}")
            return 0
        _print_diff(diff)
        await notifier.send(diff.format_report())

    return 0


async def _async_verify(args: argparse.Namespace) -> int:
    """Async implementation for verify command.

    Returns:
        0 when inventories match, 2 on differences, 1 on failure.
    """
    config = _load_config(args)
    if config is None:
        return 1

    try:
        diff = await _run_verification(config)
    except (psycopg.Error, OSError) as e:
        console.print(f"[red]Error: verification failed: {escape(str(e))}[/red]")
        return 1

    _print_diff(diff)
    return 2 if diff.has_differences else 0


async def _async_status(args: argparse.Namespace) -> int:
    """Async implementation for status command."""
    config = _load_config(args)
    if config is None:
        return 1

    try:
        state, _ = await read_state(factory.get_object_store(config), config)
    except SnapshotError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1

    if state is None:
        console.print(f"[yellow]No run-state document for {config.database} yet.[/yellow]")
        return 0

    table = Table(title=f"Run state: {state.database}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Bucket", f"{state.bucket}/{state.path_prefix}")
    table.add_row("Updated", state.updated_at or "-")
    if state.latest_backup:
        backup = state.latest_backup
        table.add_row("Latest backup", backup.key)
        table.add_row("  created", backup.created_at)
        table.add_row("  size", f"{backup.size_bytes:,} bytes")
        table.add_row("  checksum", str(backup.checksum))
    else:
        table.add_row("Latest backup", "[dim]none[/dim]")
    if state.latest_restore:
        restore = state.latest_restore
        table.add_row("Latest restore", restore.key)
        table.add_row("  restored", restore.restored_at)
        table.add_row("  target", str(restore.target))
        table.add_row("  checksum", str(restore.checksum) if restore.checksum else "-")
    else:
        table.add_row("Latest restore", "[dim]none[/dim]")
    table.add_row("Backups total", str(state.stats.backups_total))
    table.add_row("Restores total", str(state.stats.restores_total))

    console.print(table)
    return 0


async def _async_list(args: argparse.Namespace) -> int:
    """Async implementation for list command."""
    config = _load_config(args)
    if config is None:
        return 1

    try:
        keys = await list_backups(factory.get_object_store(config), config)
    except SnapshotError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1

    if not keys:
        console.print(f"[yellow]No artifacts stored for {config.database}.[/yellow]")
        return 0

    table = Table(title=f"Artifacts: {config.database}")
    table.add_column("Key", style="cyan")
    for key in keys:
        table.add_row(key)
    console.print(table)
    return 0


# ============================================================================
# Sync wrappers (argparse dispatch targets)
# ============================================================================


def cmd_backup(args: argparse.Namespace) -> int:
    """Run the backup pipeline.  Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_backup(args))


def cmd_restore(args: argparse.Namespace) -> int:
    """Run the restore pipeline.  Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_restore(args))


def cmd_verify(args: argparse.Namespace) -> int:
    """Compare source and target inventories."""
    return asyncio.run(_async_verify(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show the run-state document."""
    return asyncio.run(_async_status(args))


def cmd_list(args: argparse.Namespace) -> int:
    """List stored artifacts."""
    return asyncio.run(_async_list(args))


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-snapshot",
        description="Backup, restore, and verify PostgreSQL databases via an object store",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=None,
        help="Path to snapshot.toml (default: $SNAPSHOT_CONFIG or ./snapshot.toml)",
    )
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_SOURCE_DB_PASSWORD)"
        ),
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    p_backup = subparsers.add_parser(
        "backup",
        help="Dump the source database and publish the artifact",
    )
    p_backup.add_argument(
        "--keep-workdir",
        action="store_true",
        help="Keep the temporary working directory",
    )
    p_backup.set_defaults(func=cmd_backup)

    # restore command
    p_restore = subparsers.add_parser(
        "restore",
        help="Load the latest (or a named) artifact into the target",
    )
    source = p_restore.add_mutually_exclusive_group()
    source.add_argument(
        "--key",
        default=None,
        help="Restore this object key (manual run; run state untouched)",
    )
    source.add_argument(
        "--file",
        default=None,
        help="Restore this local archive (manual run; run state untouched)",
    )
    p_restore.add_argument(
        "--keep-workdir",
        action="store_true",
        help="Keep the temporary working directory",
    )
    p_restore.add_argument(
        "--verify",
        action="store_true",
        help="Compare source and target inventories after restoring",
    )
    p_restore.set_defaults(func=cmd_restore)

    # verify command
    p_verify = subparsers.add_parser(
        "verify",
        help="Compare source and target table/view inventories",
    )
    p_verify.set_defaults(func=cmd_verify)

    # status command
    p_status = subparsers.add_parser(
        "status",
        help="Show the run-state document",
    )
    p_status.set_defaults(func=cmd_status)

    # list command
    p_list = subparsers.add_parser(
        "list",
        help="List stored artifacts",
    )
    p_list.set_defaults(func=cmd_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 success, 1 failure, 2 verification differences).
    """
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

"""Backup pipeline: dump -> package -> upload -> publish state.

Usage:
    from db_snapshot.backup import run_backup
    from db_snapshot.config import load_snapshot_config

    config = load_snapshot_config()
    result = await run_backup(config)
    print(result.key)

Stages run sequentially inside a per-run working directory that is removed
on every exit path (unless kept).  The run-state document is published only
after the artifact is uploaded, so ``latest_backup`` never points at a
partial artifact.
"""

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path

from db_snapshot import factory
from db_snapshot.backup.archive import DUMP_SUFFIX, MANIFEST_NAME, build_archive
from db_snapshot.backup.models import BackupRecord, BackupResult, Checksum, Manifest, RunState
from db_snapshot.backup.state import artifact_key, publish_state
from db_snapshot.backup.utils import (
    artifact_stamp,
    compute_checksum,
    endpoint_descriptor,
    isoformat_utc,
    new_run_id,
    utc_now,
    working_directory,
)
from db_snapshot.config import SnapshotConfig
from db_snapshot.errors import DumpFailed, PackageFailed
from db_snapshot.pipeline import FileSink, GzipCompress, ProcessSource, run_piped
from db_snapshot.storage import ObjectStore

logger = logging.getLogger(__name__)

# Plain SQL to stdout; never prompt for a password
DUMP_FLAGS = ["--format=plain", "--no-password"]


async def run_backup(
    config: SnapshotConfig,
    *,
    store: ObjectStore | None = None,
    keep_workdir: bool | None = None,
    now: datetime | None = None,
) -> BackupResult:
    """Dump the source database and publish it as the latest artifact.

    Args:
        config: Validated snapshot configuration.
        store: Object store (default: built from ``config.storage``).
        keep_workdir: Keep the working directory (default:
            ``config.options.keep_workdir``).
        now: Creation time (default: current UTC time).

    Returns:
        ``BackupResult`` with the new artifact key, size and checksum.

    Raises:
        DumpFailed: The dump producer exited nonzero.
        PipelineFailure: The compression stage or output file failed.
        PackageFailed: The dump could not be packaged.
        UploadFailed: The artifact could not be stored.
        StateConflict: The run-state document changed during the run.
        StatePublishFailed: The run-state document could not be written.
    """
    run_id = new_run_id("backup")
    started = time.monotonic()
    store = store or factory.get_object_store(config)
    keep = config.options.keep_workdir if keep_workdir is None else keep_workdir
    created = now or utc_now()
    created_at = isoformat_utc(created)
    stamp = artifact_stamp(created)
    source = endpoint_descriptor(config.source)

    logger.info(f"[{run_id}] Backup of {source} started")

    with working_directory(f"db-snapshot-{run_id}-", keep, config.options.workdir_root) as workdir:
        # 1. Dump
        dump_path = workdir / f"{config.database}{DUMP_SUFFIX}"
        argv, env = factory.libpq_command(
            config.options.dump_command,
            config.source,
            [*DUMP_FLAGS, *config.options.dump_args],
        )
        piped = await run_piped(
            ProcessSource(argv, env, failure_type=DumpFailed),
            [GzipCompress()],
            FileSink(dump_path),
        )
        logger.info(
            f"[{run_id}] Dump complete: {piped.bytes_in:,} bytes "
            f"({piped.bytes_out:,} compressed)"
        )

        # 2. Package (hashing and tar run off the event loop)
        archive_path, checksum = await asyncio.to_thread(
            package_dump,
            dump_path,
            workdir / f"{stamp}.tgz",
            database=config.database,
            created_at=created_at,
            source=source,
            producer=argv,
        )

        # 3. Upload
        size_bytes = archive_path.stat().st_size
        key = artifact_key(config, stamp)
        await store.put_file(key, archive_path)
        logger.info(f"[{run_id}] Uploaded {key} ({size_bytes:,} bytes, {checksum})")

        # 4. Publish state
        record = BackupRecord(
            key=key,
            size_bytes=size_bytes,
            created_at=created_at,
            source=source,
            checksum=checksum,
        )

        def mutate(state: RunState) -> None:
            state.latest_backup = record
            state.stats.backups_total += 1

        state = await publish_state(store, config, mutate)

    elapsed = time.monotonic() - started
    logger.info(
        f"[{run_id}] Backup finished in {elapsed:.1f}s "
        f"(backups_total={state.stats.backups_total})"
    )
    return BackupResult(
        key=key,
        size_bytes=size_bytes,
        checksum=checksum,
        elapsed_seconds=elapsed,
    )


def package_dump(dump_path: Path, archive_path: Path, **manifest_fields) -> tuple[Path, Checksum]:
    """Write the manifest, tar it with the dump, and checksum the archive.

    Blocking; the pipeline calls it through ``asyncio.to_thread``.

    Raises:
        PackageFailed: Any filesystem error while packaging.
    """
    try:
        manifest = Manifest(
            dump_file=dump_path.name,
            dump_size_bytes=dump_path.stat().st_size,
            dump_checksum=compute_checksum(dump_path),
            **manifest_fields,
        )
        manifest_path = write_manifest(dump_path.parent, manifest)
        build_archive([dump_path, manifest_path], archive_path)
        return archive_path, compute_checksum(archive_path)
    except OSError as e:
        raise PackageFailed(f"Could not package {dump_path.name}: {e}") from e


def write_manifest(directory: Path, manifest: Manifest) -> Path:
    path = directory / MANIFEST_NAME
    path.write_text(manifest.model_dump_json(indent=2))
    return path

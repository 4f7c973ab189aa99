"""Restore pipeline: resolve -> gate -> download -> verify -> prepare -> load -> publish.

Usage:
    from db_snapshot.backup import run_restore

    result = await run_restore(config)
    if result.status == "skipped":
        print("target already holds", result.key)

An explicit ``artifact_key`` / ``artifact_path`` bypasses state resolution,
the idempotency gate and state publication: manual runs never touch the
automatic counters.

Nothing touches the target before the downloaded artifact has passed its
checksum and been extracted.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path, PurePosixPath

from db_snapshot import factory
from db_snapshot.adapters import DatabaseClient
from db_snapshot.backup.archive import extract_archive, locate_dump
from db_snapshot.backup.models import (
    ResolvedArtifact,
    RestoreRecord,
    RestoreResult,
    RunState,
)
from db_snapshot.backup.state import (
    DEFAULT_RESOLVERS,
    ArtifactResolver,
    publish_state,
    read_state,
    resolve_latest,
)
from db_snapshot.backup.target import prepare_target_database
from db_snapshot.backup.utils import (
    compute_checksum,
    endpoint_descriptor,
    isoformat_utc,
    new_run_id,
    utc_now,
    working_directory,
)
from db_snapshot.config import SnapshotConfig, TargetProfile
from db_snapshot.errors import ChecksumMismatch, DownloadFailed, RestoreFailed
from db_snapshot.pipeline import (
    FileSource,
    GzipDecompress,
    PrivilegeStripper,
    ProcessSink,
    run_piped,
)
from db_snapshot.storage import ObjectStore

logger = logging.getLogger(__name__)

# Stop on the first SQL error, quiet, ignore ~/.psqlrc, never prompt
LOAD_FLAGS = ["--no-password", "--set", "ON_ERROR_STOP=1", "--quiet", "--no-psqlrc"]

TargetPreparer = Callable[[DatabaseClient, TargetProfile], Awaitable[None]]


def already_restored(state: RunState | None, artifact: ResolvedArtifact) -> bool:
    """True if ``artifact`` is what the target last successfully loaded.

    Checksums are compared when the resolution declared one; legacy pointers
    carry none, so the keys are compared instead.
    """
    if state is None or state.latest_restore is None:
        return False
    last = state.latest_restore
    if artifact.checksum is not None:
        return artifact.checksum.matches(last.checksum)
    return last.key == artifact.key


async def run_restore(
    config: SnapshotConfig,
    *,
    store: ObjectStore | None = None,
    adapter: DatabaseClient | None = None,
    preparer: TargetPreparer = prepare_target_database,
    artifact_key: str | None = None,
    artifact_path: Path | None = None,
    keep_workdir: bool | None = None,
    resolvers: Sequence[ArtifactResolver] = DEFAULT_RESOLVERS,
) -> RestoreResult:
    """Load the latest (or an explicitly named) artifact into the target.

    Args:
        config: Validated snapshot configuration.
        store: Object store (default: built from ``config.storage``).
        adapter: Maintenance-database client (default:
            ``factory.get_maintenance_adapter``; closed after use).
        preparer: Target preparation step (default: ``prepare_target_database``).
        artifact_key: Restore this object key; skips state bookkeeping.
        artifact_path: Restore this local archive; skips state bookkeeping.
        keep_workdir: Keep the working directory (default:
            ``config.options.keep_workdir``).
        resolvers: Latest-artifact resolvers in priority order.

    Returns:
        ``RestoreResult``; ``status`` is ``no_backup`` when nothing has ever
        been backed up, ``skipped`` when the target already holds the latest
        artifact, ``restored`` otherwise.

    Raises:
        ChecksumMismatch: The download disagrees with the recorded checksum.
        DownloadFailed: The artifact could not be fetched, or the local
            archive does not exist.
        ArchiveCorrupt / ArchiveContentMissing: The archive is unusable.
        RestoreFailed: Target preparation or the load failed.
        StateConflict / StatePublishFailed: The run-state document could not
            be updated.
    """
    if artifact_key and artifact_path:
        raise ValueError("Pass artifact_key or artifact_path, not both")

    if artifact_path and not Path(artifact_path).is_file():
        raise DownloadFailed(f"Local archive not found: {artifact_path}")

    run_id = new_run_id("restore")
    started = time.monotonic()
    manual = bool(artifact_key or artifact_path)
    keep = config.options.keep_workdir if keep_workdir is None else keep_workdir
    target = endpoint_descriptor(config.target)
    if not artifact_path:
        store = store or factory.get_object_store(config)

    # 1. Resolve
    if artifact_path:
        artifact = ResolvedArtifact(key=str(artifact_path), resolver="local-file")
    elif artifact_key:
        artifact = ResolvedArtifact(key=artifact_key, resolver="explicit-key")
    else:
        state, _ = await read_state(store, config)
        resolved = await resolve_latest(store, config, resolvers)
        if resolved is None:
            logger.info(f"[{run_id}] No backup recorded for {config.database}; nothing to restore")
            return RestoreResult(status="no_backup")
        artifact = resolved

        # 2. Idempotency gate
        if already_restored(state, artifact):
            logger.info(f"[{run_id}] {target} already holds {artifact.key}; skipping")
            return RestoreResult(
                status="skipped",
                key=artifact.key,
                checksum=artifact.checksum,
                elapsed_seconds=time.monotonic() - started,
            )

    logger.info(f"[{run_id}] Restore of {artifact.key} into {target} started ({artifact.resolver})")

    with working_directory(f"db-snapshot-{run_id}-", keep, config.options.workdir_root) as workdir:
        # 3. Download and verify
        if artifact_path:
            archive_path = Path(artifact_path)
        else:
            archive_path = workdir / PurePosixPath(artifact.key).name
            await store.download_file(artifact.key, archive_path)

        algorithm = artifact.checksum.algorithm if artifact.checksum else "sha256"
        try:
            checksum = await asyncio.to_thread(compute_checksum, archive_path, algorithm)
        except OSError as e:
            raise DownloadFailed(f"Cannot read {archive_path}: {e}") from e
        if artifact.checksum is not None and not checksum.matches(artifact.checksum):
            raise ChecksumMismatch(artifact.key, artifact.checksum.hex, checksum.hex)

        # 4. Extract
        extracted = await asyncio.to_thread(extract_archive, archive_path, workdir / "extract")
        dump_path = locate_dump(extracted)

        # 5. Prepare target
        owns_adapter = adapter is None
        client = adapter or factory.get_maintenance_adapter(config.target)
        try:
            await preparer(client, config.target)
        finally:
            if owns_adapter:
                await client.close()

        # 6. Load
        stripper = PrivilegeStripper()
        argv, env = factory.libpq_command(config.options.load_command, config.target, LOAD_FLAGS)
        piped = await run_piped(
            FileSource(dump_path),
            [GzipDecompress(), stripper],
            ProcessSink(argv, env, failure_type=RestoreFailed),
        )
        logger.info(
            f"[{run_id}] Loaded {piped.bytes_out:,} bytes of SQL "
            f"({stripper.stripped} privileged statements stripped)"
        )

    # 7. Publish state
    if manual:
        logger.info(f"[{run_id}] Manual restore; run-state document left unchanged")
    else:
        record = RestoreRecord(
            key=artifact.key,
            restored_at=isoformat_utc(utc_now()),
            target=target,
            checksum=checksum,
        )

        def mutate(state: RunState) -> None:
            state.latest_restore = record
            state.stats.restores_total += 1

        await publish_state(store, config, mutate)

    elapsed = time.monotonic() - started
    logger.info(f"[{run_id}] Restore finished in {elapsed:.1f}s")
    return RestoreResult(
        status="restored",
        key=artifact.key,
        checksum=checksum,
        manual=manual,
        elapsed_seconds=elapsed,
    )

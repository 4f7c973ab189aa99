"""Run-state document access: key layout, artifact resolution, publishing.

Object store layout for database ``D`` under the optional global prefix:

    D/<YYYYMMDDTHHMMSSZ>.tgz   immutable artifacts
    D/latest.json              run-state document
    D/latest.json.tmp          staging copy written first on publish
    D/latest.txt               legacy pointer (artifact key only)
"""

import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from pydantic import ValidationError

from db_snapshot.backup.models import ResolvedArtifact, RunState
from db_snapshot.backup.utils import isoformat_utc, utc_now
from db_snapshot.config import SnapshotConfig
from db_snapshot.errors import DownloadFailed
from db_snapshot.storage import ObjectStore

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".tgz"
STATE_NAME = "latest.json"
LEGACY_POINTER_NAME = "latest.txt"


# ============================================================================
# Key Layout
# ============================================================================


def database_prefix(config: SnapshotConfig) -> str:
    return f"{config.storage.prefix}{config.database}/"


def artifact_key(config: SnapshotConfig, stamp: str) -> str:
    return f"{database_prefix(config)}{stamp}{ARTIFACT_SUFFIX}"


def state_key(config: SnapshotConfig) -> str:
    return f"{database_prefix(config)}{STATE_NAME}"


def legacy_pointer_key(config: SnapshotConfig) -> str:
    return f"{database_prefix(config)}{LEGACY_POINTER_NAME}"


async def list_backups(store: ObjectStore, config: SnapshotConfig) -> list[str]:
    """Artifact keys for the configured database, oldest first."""
    return await store.list_keys(database_prefix(config), suffix=ARTIFACT_SUFFIX)


# ============================================================================
# Reading
# ============================================================================


async def read_state(store: ObjectStore, config: SnapshotConfig) -> tuple[RunState | None, str | None]:
    """Fetch the run-state document.

    Returns:
        ``(state, etag)``; ``(None, None)`` when no document exists yet.

    Raises:
        DownloadFailed: The document exists but cannot be read or parsed.
    """
    key = state_key(config)
    found = await store.get_json(key)
    if found is None:
        return None, None
    data, etag = found
    try:
        return RunState.model_validate(data), etag
    except ValidationError as e:
        raise DownloadFailed(f"{key} is not a valid run-state document: {e}") from e


class ArtifactResolver(Protocol):
    """One way of finding the latest artifact.  ``None`` means "not here"."""

    name: str

    async def resolve(self, store: ObjectStore, config: SnapshotConfig) -> ResolvedArtifact | None: ...


class StateDocumentResolver:
    """Latest backup recorded in ``latest.json``."""

    name = "state-document"

    async def resolve(self, store: ObjectStore, config: SnapshotConfig) -> ResolvedArtifact | None:
        state, _ = await read_state(store, config)
        if state is None or state.latest_backup is None:
            return None
        return ResolvedArtifact(
            key=state.latest_backup.key,
            checksum=state.latest_backup.checksum,
            resolver=self.name,
        )


class LegacyPointerResolver:
    """Artifact key written to ``latest.txt`` by older tooling.  No checksum."""

    name = "legacy-pointer"

    async def resolve(self, store: ObjectStore, config: SnapshotConfig) -> ResolvedArtifact | None:
        found = await store.get_bytes(legacy_pointer_key(config))
        if found is None:
            return None
        key = found[0].decode("utf-8", errors="replace").strip()
        if not key:
            logger.warning(f"{legacy_pointer_key(config)} is empty; ignoring")
            return None
        if "/" not in key:
            # Older pointers hold the bare file name
            key = f"{database_prefix(config)}{key}"
        return ResolvedArtifact(key=key, resolver=self.name)


DEFAULT_RESOLVERS: tuple[ArtifactResolver, ...] = (
    StateDocumentResolver(),
    LegacyPointerResolver(),
)


async def resolve_latest(
    store: ObjectStore,
    config: SnapshotConfig,
    resolvers: Sequence[ArtifactResolver] = DEFAULT_RESOLVERS,
) -> ResolvedArtifact | None:
    """Try ``resolvers`` in priority order; first hit wins."""
    for resolver in resolvers:
        artifact = await resolver.resolve(store, config)
        if artifact is not None:
            logger.debug(f"Resolved {artifact.key} via {resolver.name}")
            return artifact
    return None


# ============================================================================
# Publishing
# ============================================================================


def empty_state(config: SnapshotConfig) -> RunState:
    return RunState(
        database=config.database,
        bucket=config.storage.bucket,
        path_prefix=database_prefix(config),
    )


async def publish_state(
    store: ObjectStore,
    config: SnapshotConfig,
    mutate: Callable[[RunState], None],
) -> RunState:
    """Read-modify-write the run-state document.

    Reads the current document (absence starts from an empty one), applies
    ``mutate`` in place, and publishes with an ETag precondition.

    Raises:
        StateConflict: Another writer published in between.
        StatePublishFailed: The store rejected the write.
    """
    state, etag = await read_state(store, config)
    if state is None:
        state = empty_state(config)
    mutate(state)
    state.updated_at = isoformat_utc(utc_now())
    await store.publish_json_atomic(
        state_key(config), state.model_dump(mode="json"), expected_etag=etag
    )
    return state

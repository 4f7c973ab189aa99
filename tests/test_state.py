"""Tests for the run-state document: layout, resolution, publishing."""

import json

import pytest

from conftest import make_config

from db_snapshot.backup.models import BackupRecord, Checksum, EndpointDescriptor, RunState
from db_snapshot.backup.state import (
    LegacyPointerResolver,
    StateDocumentResolver,
    artifact_key,
    legacy_pointer_key,
    publish_state,
    read_state,
    resolve_latest,
    state_key,
)
from db_snapshot.config.loader import build_config
from db_snapshot.errors import DownloadFailed, StateConflict
from db_snapshot.storage import ObjectStore

LEGACY_DOCUMENT = {
    "version": 1,
    "database": "app",
    "bucket": "snapshots",
    "path_prefix": "app/",
    "latest_backup": {
        "key": "app/20261018T030000Z.tgz",
        "size_bytes": 123,
        "created_at": "2026-10-18T03:00:00Z",
        "source": {"host": "db-prod", "port": 5432, "database": "app"},
        "checksum": {"algo": "md5", "value": "abc123"},
    },
    "latest_restore": None,
    "stats": {"backups_total": 4, "restores_total": 2},
    "updated_at": "2026-10-18T03:00:05Z",
}


def _record(key: str = "app/20261019T030000Z.tgz", digest: str = "f00d") -> BackupRecord:
    return BackupRecord(
        key=key,
        size_bytes=10,
        created_at="2026-10-19T03:00:00Z",
        source=EndpointDescriptor(host="db-prod", port=5432, database="app"),
        checksum=Checksum(hex=digest),
    )


class TestKeyLayout:
    def test_keys_namespaced_by_database(self) -> None:
        config = make_config()
        assert artifact_key(config, "20261019T030000Z") == "app/20261019T030000Z.tgz"
        assert state_key(config) == "app/latest.json"
        assert legacy_pointer_key(config) == "app/latest.txt"

    def test_global_prefix(self) -> None:
        config = build_config(
            {
                "source": {"url": "postgresql://u@db-prod/app"},
                "target": {"url": "postgresql://u@db-staging/app"},
                "storage": {"bucket": "b", "prefix": "snapshots/nightly/"},
            }
        )
        assert state_key(config) == "snapshots/nightly/app/latest.json"


class TestReadState:
    async def test_absent_document(self, store: ObjectStore) -> None:
        assert await read_state(store, make_config()) == (None, None)

    async def test_older_checksum_field_names(self, store: ObjectStore) -> None:
        """algo/value are accepted and re-serialized as algorithm/hex."""
        await store.put_bytes("app/latest.json", json.dumps(LEGACY_DOCUMENT).encode())

        state, etag = await read_state(store, make_config())

        assert state.latest_backup.checksum == Checksum(algorithm="md5", hex="abc123")
        assert etag
        dumped = state.model_dump(mode="json")
        assert dumped["latest_backup"]["checksum"] == {"algorithm": "md5", "hex": "abc123"}

    async def test_invalid_document(self, store: ObjectStore) -> None:
        await store.put_bytes("app/latest.json", b'{"version": 1}')
        with pytest.raises(DownloadFailed, match="not a valid run-state document"):
            await read_state(store, make_config())

    async def test_unknown_checksum_algorithm(self, store: ObjectStore) -> None:
        """A digest hashlib cannot compute is rejected at read time."""
        document = json.loads(json.dumps(LEGACY_DOCUMENT))
        document["latest_backup"]["checksum"] = {"algorithm": "crc-none", "hex": "00"}
        await store.put_bytes("app/latest.json", json.dumps(document).encode())

        with pytest.raises(DownloadFailed, match="not a valid run-state document"):
            await read_state(store, make_config())


class TestResolvers:
    """State document first, legacy pointer second."""

    async def test_nothing_recorded(self, store: ObjectStore) -> None:
        assert await resolve_latest(store, make_config()) is None

    async def test_state_document_wins(self, store: ObjectStore) -> None:
        await store.put_bytes("app/latest.json", json.dumps(LEGACY_DOCUMENT).encode())
        await store.put_bytes("app/latest.txt", b"app/20200101T000000Z.tgz\n")

        artifact = await resolve_latest(store, make_config())

        assert artifact.key == "app/20261018T030000Z.tgz"
        assert artifact.checksum.algorithm == "md5"
        assert artifact.resolver == StateDocumentResolver.name

    async def test_legacy_pointer_fallback(self, store: ObjectStore) -> None:
        await store.put_bytes("app/latest.txt", b"20200101T000000Z.tgz\n")

        artifact = await resolve_latest(store, make_config())

        assert artifact.key == "app/20200101T000000Z.tgz"
        assert artifact.checksum is None
        assert artifact.resolver == LegacyPointerResolver.name

    async def test_document_without_backup_falls_through(self, store: ObjectStore) -> None:
        doc = dict(LEGACY_DOCUMENT, latest_backup=None)
        await store.put_bytes("app/latest.json", json.dumps(doc).encode())
        await store.put_bytes("app/latest.txt", b"app/20200101T000000Z.tgz")

        artifact = await resolve_latest(store, make_config())
        assert artifact.key == "app/20200101T000000Z.tgz"

    async def test_empty_pointer_ignored(self, store: ObjectStore) -> None:
        await store.put_bytes("app/latest.txt", b"  \n")
        assert await resolve_latest(store, make_config()) is None


class TestPublishState:
    async def test_creates_document(self, store: ObjectStore) -> None:
        config = make_config()

        def mutate(state: RunState) -> None:
            state.latest_backup = _record()
            state.stats.backups_total += 1

        state = await publish_state(store, config, mutate)

        assert state.stats.backups_total == 1
        stored, _ = await read_state(store, config)
        assert stored.database == "app"
        assert stored.bucket == "snapshots"
        assert stored.path_prefix == "app/"
        assert stored.latest_backup.key == "app/20261019T030000Z.tgz"
        assert stored.updated_at

    async def test_preserves_untouched_fields(self, store: ObjectStore) -> None:
        config = make_config()
        await store.put_bytes("app/latest.json", json.dumps(LEGACY_DOCUMENT).encode())

        def mutate(state: RunState) -> None:
            state.latest_backup = _record()
            state.stats.backups_total += 1

        await publish_state(store, config, mutate)

        stored, _ = await read_state(store, config)
        assert stored.stats.backups_total == 5
        assert stored.stats.restores_total == 2

    async def test_conflicting_writer(self, store: ObjectStore, s3_client) -> None:
        """A write landing between read and publish is detected."""
        config = make_config()
        await publish_state(store, config, lambda s: None)

        def mutate(state: RunState) -> None:
            s3_client.objects["app/latest.json"] = b'{"changed": true}'
            state.stats.backups_total += 1

        with pytest.raises(StateConflict):
            await publish_state(store, config, mutate)

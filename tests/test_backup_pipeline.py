"""End-to-end tests for run_backup with a fake pg_dump and in-memory S3."""

import gzip
import hashlib
import io
import json
import tarfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest
from botocore.exceptions import EndpointConnectionError

from conftest import SAMPLE_DUMP, make_config, write_script

from db_snapshot.backup import backup_pipeline, read_state, run_backup
from db_snapshot.backup.models import EndpointDescriptor, RestoreRecord
from db_snapshot.backup.utils import compute_checksum
from db_snapshot.errors import DumpFailed, PackageFailed, SnapshotError, UploadFailed
from db_snapshot.storage import ObjectStore

NOW = datetime(2026, 10, 19, 3, 0, 0, tzinfo=timezone.utc)


def _members(data: bytes) -> dict[str, bytes]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers()}


class TestRunBackup:
    async def test_uploads_artifact_and_publishes_state(self, config, store: ObjectStore, s3_client) -> None:
        result = await run_backup(config, store=store, now=NOW)

        assert result.key == "app/20261019T030000Z.tgz"
        artifact = s3_client.objects[result.key]
        assert result.size_bytes == len(artifact)
        assert result.checksum.algorithm == "sha256"
        assert result.checksum.hex == hashlib.sha256(artifact).hexdigest()

        state, _ = await read_state(store, config)
        assert state.latest_backup.key == result.key
        assert state.latest_backup.checksum == result.checksum
        assert state.latest_backup.created_at == "2026-10-19T03:00:00Z"
        assert state.latest_backup.source.host == "db-prod"
        assert state.stats.backups_total == 1
        assert state.latest_restore is None

    async def test_artifact_contents(self, config, store: ObjectStore, s3_client) -> None:
        """The archive holds the compressed dump and a manifest describing it."""
        result = await run_backup(config, store=store, now=NOW)

        members = _members(s3_client.objects[result.key])
        assert set(members) == {"app.sql.gz", "manifest.json"}
        assert gzip.decompress(members["app.sql.gz"]).decode() == SAMPLE_DUMP

        manifest = json.loads(members["manifest.json"])
        assert manifest["database"] == "app"
        assert manifest["dump_file"] == "app.sql.gz"
        assert manifest["compression"] == "gzip"
        assert manifest["dump_checksum"]["hex"] == hashlib.sha256(members["app.sql.gz"]).hexdigest()
        assert "--format=plain" in manifest["producer"]
        assert not any("secret" in arg for arg in manifest["producer"])

    async def test_counter_increments_and_restore_preserved(self, config, store: ObjectStore) -> None:
        await run_backup(config, store=store, now=NOW)
        state, etag = await read_state(store, config)
        state.latest_restore = RestoreRecord(
            key=state.latest_backup.key,
            restored_at="2026-10-19T04:00:00Z",
            target=EndpointDescriptor(host="db-staging", port=5432, database="app"),
            checksum=state.latest_backup.checksum,
        )
        state.stats.restores_total = 1
        await store.publish_json_atomic("app/latest.json", state.model_dump(mode="json"), etag)

        later = NOW.replace(day=20)
        result = await run_backup(config, store=store, now=later)

        state, _ = await read_state(store, config)
        assert state.latest_backup.key == result.key == "app/20261020T030000Z.tgz"
        assert state.stats.backups_total == 2
        assert state.stats.restores_total == 1
        assert state.latest_restore.key == "app/20261019T030000Z.tgz"

    async def test_workdir_removed(self, config, store: ObjectStore, workdir_root: Path) -> None:
        await run_backup(config, store=store, now=NOW)
        assert list(workdir_root.iterdir()) == []

    async def test_keep_workdir(self, config, store: ObjectStore, workdir_root: Path) -> None:
        await run_backup(config, store=store, now=NOW, keep_workdir=True)
        kept = list(workdir_root.iterdir())
        assert len(kept) == 1
        assert (kept[0] / "20261019T030000Z.tgz").exists()


class TestBackupFailures:
    """Any stage failure aborts the run without touching the latest pointer."""

    async def test_dump_failure(self, tmp_path: Path, store: ObjectStore, s3_client, workdir_root: Path) -> None:
        failing = write_script(
            tmp_path / "bad_dump.py",
            "import sys\n"
            "sys.stdout.write('-- partial\\n')\n"
            "sys.stderr.write('pg_dump: error: permission denied for table secrets\\n')\n"
            "sys.exit(1)\n",
        )
        config = make_config(dump_command=failing, workdir_root=str(workdir_root))

        with pytest.raises(DumpFailed, match="permission denied"):
            await run_backup(config, store=store, now=NOW)

        assert s3_client.objects == {}
        assert list(workdir_root.iterdir()) == []

    async def test_upload_failure_leaves_state_alone(self, config, store: ObjectStore, s3_client, workdir_root: Path) -> None:
        s3_client.fail["upload_file"] = EndpointConnectionError(endpoint_url="https://s3.example")

        with pytest.raises(UploadFailed):
            await run_backup(config, store=store, now=NOW)

        assert "app/latest.json" not in s3_client.objects
        assert list(workdir_root.iterdir()) == []

    async def test_packaging_error_is_snapshot_error(
        self, config, store: ObjectStore, s3_client, workdir_root: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def full_disk(files, dest_path):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(backup_pipeline, "build_archive", full_disk)

        with pytest.raises(PackageFailed, match="No space left") as exc_info:
            await run_backup(config, store=store, now=NOW)

        assert isinstance(exc_info.value, SnapshotError)
        assert s3_client.objects == {}
        assert list(workdir_root.iterdir()) == []


class TestPackaging:
    async def test_hashing_runs_off_event_loop(self, config, store: ObjectStore, monkeypatch: pytest.MonkeyPatch) -> None:
        loop_thread = threading.current_thread()
        hashed_on = []

        def recording_checksum(path, algorithm="sha256"):
            hashed_on.append(threading.current_thread())
            return compute_checksum(path, algorithm)

        monkeypatch.setattr(backup_pipeline, "compute_checksum", recording_checksum)

        result = await run_backup(config, store=store, now=NOW)

        assert len(hashed_on) == 2  # dump and archive
        assert loop_thread not in hashed_on
        assert result.checksum.hex

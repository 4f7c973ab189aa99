"""Tests for ObjectStore against an in-memory S3 client."""

import json
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from db_snapshot.errors import (
    DownloadFailed,
    StateConflict,
    StatePublishFailed,
    UploadFailed,
)
from db_snapshot.storage import ObjectStore


class TestBlobs:
    async def test_missing_key_is_none(self, store: ObjectStore) -> None:
        assert await store.get_bytes("app/latest.json") is None
        assert await store.get_json("app/latest.json") is None
        assert await store.head_etag("app/latest.json") is None

    async def test_file_round_trip(self, store: ObjectStore, tmp_path: Path) -> None:
        src = tmp_path / "a.tgz"
        src.write_bytes(b"artifact")
        await store.put_file("app/a.tgz", src)

        dest = tmp_path / "b.tgz"
        await store.download_file("app/a.tgz", dest)
        assert dest.read_bytes() == b"artifact"

    async def test_download_missing_raises(self, store: ObjectStore, tmp_path: Path) -> None:
        with pytest.raises(DownloadFailed, match="app/nope.tgz"):
            await store.download_file("app/nope.tgz", tmp_path / "x")

    async def test_upload_error_wrapped(self, store: ObjectStore, s3_client, tmp_path: Path) -> None:
        s3_client.fail["upload_file"] = EndpointConnectionError(endpoint_url="https://s3.example")
        src = tmp_path / "a.tgz"
        src.write_bytes(b"x")
        with pytest.raises(UploadFailed):
            await store.put_file("app/a.tgz", src)

    async def test_other_read_errors_propagate(self, store: ObjectStore, s3_client) -> None:
        s3_client.fail["get_object"] = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "GetObject"
        )
        with pytest.raises(DownloadFailed, match="AccessDenied"):
            await store.get_bytes("app/latest.json")

    async def test_invalid_json(self, store: ObjectStore) -> None:
        await store.put_bytes("app/latest.json", b"{not json")
        with pytest.raises(DownloadFailed, match="not valid JSON"):
            await store.get_json("app/latest.json")

    async def test_list_keys_filters_and_sorts(self, store: ObjectStore) -> None:
        for key in ("app/20261019T030000Z.tgz", "app/latest.json", "app/20261018T030000Z.tgz", "other/x.tgz"):
            await store.put_bytes(key, b"x")
        assert await store.list_keys("app/", ".tgz") == [
            "app/20261018T030000Z.tgz",
            "app/20261019T030000Z.tgz",
        ]


class TestPublishJsonAtomic:
    """Staged write plus optimistic ETag precondition."""

    async def test_first_publish(self, store: ObjectStore, s3_client) -> None:
        await store.publish_json_atomic("app/latest.json", {"version": 1}, expected_etag=None)

        assert json.loads(s3_client.objects["app/latest.json"]) == {"version": 1}
        assert s3_client.objects["app/latest.json.tmp"] == s3_client.objects["app/latest.json"]

    async def test_temp_key_written_before_canonical(self, store: ObjectStore, s3_client) -> None:
        await store.publish_json_atomic("app/latest.json", {"v": 1}, expected_etag=None)
        puts = [key for op, key in s3_client.calls if op == "put_object"]
        assert puts == ["app/latest.json.tmp", "app/latest.json"]

    async def test_update_with_matching_etag(self, store: ObjectStore) -> None:
        await store.publish_json_atomic("app/latest.json", {"n": 1}, expected_etag=None)
        _, etag = await store.get_json("app/latest.json")

        await store.publish_json_atomic("app/latest.json", {"n": 2}, expected_etag=etag)

        doc, _ = await store.get_json("app/latest.json")
        assert doc == {"n": 2}

    async def test_conflict_when_changed_since_read(self, store: ObjectStore) -> None:
        await store.publish_json_atomic("app/latest.json", {"n": 1}, expected_etag=None)
        _, etag = await store.get_json("app/latest.json")
        await store.publish_json_atomic("app/latest.json", {"n": 2}, expected_etag=etag)

        with pytest.raises(StateConflict):
            await store.publish_json_atomic("app/latest.json", {"n": 3}, expected_etag=etag)

        doc, _ = await store.get_json("app/latest.json")
        assert doc == {"n": 2}

    async def test_conflict_when_created_concurrently(self, store: ObjectStore) -> None:
        await store.put_bytes("app/latest.json", b"{}")
        with pytest.raises(StateConflict):
            await store.publish_json_atomic("app/latest.json", {"n": 1}, expected_etag=None)

    async def test_conflict_is_a_publish_failure(self) -> None:
        assert issubclass(StateConflict, StatePublishFailed)

    async def test_conditional_write_headers(self, s3_client) -> None:
        store = ObjectStore(s3_client, "snapshots", conditional_writes=True)
        await store.publish_json_atomic("app/latest.json", {"n": 1}, expected_etag=None)
        _, etag = await store.get_json("app/latest.json")
        await store.publish_json_atomic("app/latest.json", {"n": 2}, expected_etag=etag)

        canonical = [kw for kw in s3_client.put_kwargs if kw["Key"] == "app/latest.json"]
        assert canonical[0]["IfNoneMatch"] == "*"
        assert canonical[1]["IfMatch"] == etag
        staged = [kw for kw in s3_client.put_kwargs if kw["Key"] == "app/latest.json.tmp"]
        assert all("IfMatch" not in kw and "IfNoneMatch" not in kw for kw in staged)

    async def test_store_precondition_failure_is_conflict(self, s3_client) -> None:
        """A 412 from the store maps to StateConflict."""
        store = ObjectStore(s3_client, "snapshots", conditional_writes=True)
        real_put = s3_client.put_object

        def racing_put(**kwargs):
            # Another writer lands between our head check and our write
            if kwargs["Key"] == "app/latest.json" and "app/latest.json" not in s3_client.objects:
                s3_client.objects["app/latest.json"] = b"{}"
            return real_put(**kwargs)

        s3_client.put_object = racing_put
        with pytest.raises(StateConflict):
            await store.publish_json_atomic("app/latest.json", {"n": 1}, expected_etag=None)

    async def test_other_errors_are_publish_failures(self, store: ObjectStore, s3_client) -> None:
        s3_client.fail["put_object"] = ClientError(
            {"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject"
        )
        with pytest.raises(StatePublishFailed) as exc_info:
            await store.publish_json_atomic("app/latest.json", {"n": 1}, expected_etag=None)
        assert not isinstance(exc_info.value, StateConflict)

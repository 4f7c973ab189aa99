"""Object store gateway over an S3-compatible bucket.

boto3 is synchronous; every call runs in a worker thread via
``asyncio.to_thread`` so the event loop stays responsive while large
artifacts transfer.

``publish_json_atomic`` is the only write path for the run-state document.
It writes identical bytes to ``<key>.tmp`` and then to ``<key>`` so readers
(which only consult ``<key>``) never see a partial document, and it enforces
an optimistic ETag precondition so two writers cannot silently overwrite
each other.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from db_snapshot.errors import (
    DownloadFailed,
    StateConflict,
    StatePublishFailed,
    UploadFailed,
)

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_missing(exc: ClientError) -> bool:
    return _error_code(exc) in _MISSING_CODES


class ObjectStore:
    """Async facade over a boto3 S3 client bound to one bucket.

    Args:
        client: boto3 ``s3`` client (see ``factory.get_object_store``).
        bucket: Bucket name.
        conditional_writes: Pass ``IfMatch`` / ``IfNoneMatch`` on state
            publishes so the store enforces the precondition as well.
    """

    def __init__(self, client: Any, bucket: str, conditional_writes: bool = False) -> None:
        self._client = client
        self.bucket = bucket
        self.conditional_writes = conditional_writes

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    async def put_file(self, key: str, path: Path) -> None:
        """Upload a local file.  Raises ``UploadFailed``."""
        logger.debug(f"Uploading {path} -> s3://{self.bucket}/{key}")
        try:
            await asyncio.to_thread(self._client.upload_file, str(path), self.bucket, key)
        except (ClientError, BotoCoreError, OSError) as e:
            raise UploadFailed(f"Upload of {key} failed: {e}") from e

    async def download_file(self, key: str, path: Path) -> None:
        """Download an object to a local file.  Raises ``DownloadFailed``."""
        logger.debug(f"Downloading s3://{self.bucket}/{key} -> {path}")
        try:
            await asyncio.to_thread(self._client.download_file, self.bucket, key, str(path))
        except (ClientError, BotoCoreError, OSError) as e:
            raise DownloadFailed(f"Download of {key} failed: {e}") from e

    async def put_bytes(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> None:
        """Write a small object.  Raises ``UploadFailed``."""
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise UploadFailed(f"Write of {key} failed: {e}") from e

    async def get_bytes(self, key: str) -> tuple[bytes, str] | None:
        """Read a small object.

        Returns:
            ``(body, etag)``, or ``None`` if the key does not exist.

        Raises:
            DownloadFailed: On any other store error.
        """
        try:
            response = await asyncio.to_thread(
                self._client.get_object, Bucket=self.bucket, Key=key
            )
            body = await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise DownloadFailed(f"Read of {key} failed: {e}") from e
        except BotoCoreError as e:
            raise DownloadFailed(f"Read of {key} failed: {e}") from e
        return body, response.get("ETag", "")

    async def get_json(self, key: str) -> tuple[dict, str] | None:
        """Read and parse a JSON object.  ``None`` if absent."""
        found = await self.get_bytes(key)
        if found is None:
            return None
        body, etag = found
        try:
            return json.loads(body), etag
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DownloadFailed(f"{key} is not valid JSON: {e}") from e

    async def head_etag(self, key: str) -> str | None:
        """Current ETag of ``key``, or ``None`` if absent."""
        try:
            response = await asyncio.to_thread(
                self._client.head_object, Bucket=self.bucket, Key=key
            )
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return response.get("ETag", "")

    async def list_keys(self, prefix: str, suffix: str = "") -> list[str]:
        """List keys under ``prefix`` ending with ``suffix``, sorted."""

        def _list() -> list[str]:
            keys = []
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    if obj["Key"].endswith(suffix):
                        keys.append(obj["Key"])
            return keys

        try:
            keys = await asyncio.to_thread(_list)
        except (ClientError, BotoCoreError) as e:
            raise DownloadFailed(f"Listing {prefix} failed: {e}") from e
        return sorted(keys)

    # ------------------------------------------------------------------
    # Atomic publish
    # ------------------------------------------------------------------

    async def publish_json_atomic(
        self,
        key: str,
        document: dict,
        expected_etag: str | None,
    ) -> None:
        """Publish a JSON document under ``key`` if it is unchanged since read.

        Args:
            key: Canonical key readers consult.
            document: JSON-serializable mapping.
            expected_etag: ETag observed at read time, or ``None`` if the key
                was absent.

        Raises:
            StateConflict: The key changed (or appeared) since it was read.
            StatePublishFailed: Any other store failure.
        """
        body = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")

        try:
            current = await self.head_etag(key)
        except (ClientError, BotoCoreError) as e:
            raise StatePublishFailed(f"Could not read {key} before publish: {e}") from e
        if current != expected_etag:
            raise StateConflict(
                f"{key} changed since it was read (expected {expected_etag}, found {current})"
            )

        tmp_key = f"{key}.tmp"
        put_args: dict[str, Any] = {
            "Bucket": self.bucket,
            "Body": body,
            "ContentType": "application/json",
        }
        try:
            await asyncio.to_thread(self._client.put_object, Key=tmp_key, **put_args)
            if self.conditional_writes:
                if expected_etag is None:
                    put_args["IfNoneMatch"] = "*"
                else:
                    put_args["IfMatch"] = expected_etag
            await asyncio.to_thread(self._client.put_object, Key=key, **put_args)
        except ClientError as e:
            if _error_code(e) in _PRECONDITION_CODES:
                raise StateConflict(f"{key} changed while publishing: {e}") from e
            raise StatePublishFailed(f"Publish of {key} failed: {e}") from e
        except BotoCoreError as e:
            raise StatePublishFailed(f"Publish of {key} failed: {e}") from e
        logger.debug(f"Published {key} ({len(body)} bytes)")

"""Helpers shared by the backup and restore pipelines."""

import hashlib
import logging
import secrets
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from db_snapshot.backup.models import Checksum, EndpointDescriptor
from db_snapshot.config.models import DatabaseProfile

logger = logging.getLogger(__name__)

# ISO 8601 basic format, UTC, second resolution
ARTIFACT_STAMP_FORMAT = "%Y%m%dT%H%M%SZ"


def compute_checksum(path: Path, algorithm: str = "sha256", chunk_size: int = 1024 * 1024) -> Checksum:
    """Stream a file through ``hashlib`` and return its checksum."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return Checksum(algorithm=algorithm, hex=digest.hexdigest())


def endpoint_descriptor(profile: DatabaseProfile) -> EndpointDescriptor:
    """Host/port/database of a profile, without credentials."""
    host, port, database = profile.endpoint
    return EndpointDescriptor(host=host, port=port, database=database)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def artifact_stamp(moment: datetime) -> str:
    """Key-safe timestamp, e.g. ``20261019T030000Z``."""
    return moment.astimezone(timezone.utc).strftime(ARTIFACT_STAMP_FORMAT)


def new_run_id(kind: str) -> str:
    """Short run id for log correlation: ``b`` + 6 hex for backups, ``r`` for restores."""
    return f"{kind[:1]}{secrets.token_hex(3)}"


@contextmanager
def working_directory(prefix: str, keep: bool = False, root: str | None = None) -> Iterator[Path]:
    """Per-run temporary directory, removed on every exit path unless ``keep``."""
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=root))
    try:
        yield path
    finally:
        if keep:
            logger.info(f"Keeping working directory {path}")
        else:
            shutil.rmtree(path, ignore_errors=True)

"""Archive codec: tar + gzip bundles of a dump and its manifest.

Usage:
    from db_snapshot.backup.archive import build_archive, extract_archive, locate_dump

    build_archive([dump_path, manifest_path], workdir / "20261019T030000Z.tgz")
    extracted = extract_archive(archive_path, workdir / "extract")
    dump = locate_dump(extracted)
"""

import json
import logging
import tarfile
import zlib
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError

from db_snapshot.backup.models import Manifest
from db_snapshot.backup.utils import compute_checksum
from db_snapshot.errors import ArchiveContentMissing, ArchiveCorrupt

logger = logging.getLogger(__name__)

DUMP_SUFFIX = ".sql.gz"
MANIFEST_NAME = "manifest.json"


def build_archive(files: Sequence[Path], dest_path: Path) -> Path:
    """Pack ``files`` (flat, by basename) into a gzip-compressed tar."""
    names = [Path(f).name for f in files]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate file names in archive: {names}")
    with tarfile.open(dest_path, "w:gz") as tar:
        for f in files:
            tar.add(f, arcname=Path(f).name, recursive=False)
    logger.debug(f"Built archive {dest_path} with {len(names)} members")
    return dest_path


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract an archive into ``dest_dir``.

    Members escaping ``dest_dir`` are refused.  If a manifest is present and
    declares a dump checksum, the extracted dump must match it.

    Raises:
        ArchiveCorrupt: Unreadable archive, failed decompression, unsafe
            member, or manifest checksum mismatch.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            tar.extractall(dest_dir, filter="data")
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise ArchiveCorrupt(f"Cannot extract {archive_path.name}: {e}") from e

    manifest = read_manifest(dest_dir)
    if manifest is not None:
        dump_path = dest_dir / manifest.dump_file
        if dump_path.is_file():
            actual = compute_checksum(dump_path, manifest.dump_checksum.algorithm)
            if not actual.matches(manifest.dump_checksum):
                raise ArchiveCorrupt(
                    f"{manifest.dump_file} does not match its manifest checksum "
                    f"({actual} != {manifest.dump_checksum})"
                )
    return dest_dir


def read_manifest(directory: Path) -> Manifest | None:
    """Parse ``manifest.json`` if present.  A malformed manifest is corrupt."""
    path = directory / MANIFEST_NAME
    if not path.exists():
        return None
    try:
        return Manifest.model_validate(json.loads(path.read_text()))
    except (ValueError, ValidationError) as e:
        raise ArchiveCorrupt(f"Invalid {MANIFEST_NAME}: {e}") from e


def locate_dump(directory: Path, suffix: str = DUMP_SUFFIX) -> Path:
    """Return the single file under ``directory`` ending with ``suffix``.

    Raises:
        ArchiveContentMissing: Zero or several matches.
    """
    matches = sorted(p for p in directory.rglob(f"*{suffix}") if p.is_file())
    if len(matches) != 1:
        found = ", ".join(p.name for p in matches) or "none"
        raise ArchiveContentMissing(
            f"Expected exactly one *{suffix} file in archive, found {len(matches)} ({found})"
        )
    return matches[0]

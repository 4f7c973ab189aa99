"""S3-compatible object store gateway."""

from db_snapshot.storage.gateway import ObjectStore

__all__ = ["ObjectStore"]

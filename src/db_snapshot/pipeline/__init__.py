"""Streaming process pipelines.

Usage:
    from db_snapshot.pipeline import (
        FileSink, FileSource, ProcessSink, ProcessSource,
        GzipCompress, GzipDecompress, PrivilegeStripper, run_piped,
    )
"""

from db_snapshot.pipeline.runner import (
    FileSink,
    FileSource,
    PipeResult,
    ProcessSink,
    ProcessSource,
    run_piped,
)
from db_snapshot.pipeline.transforms import (
    CHUNK_SIZE,
    GzipCompress,
    GzipDecompress,
    PrivilegeStripper,
    Stage,
)

__all__ = [
    "CHUNK_SIZE",
    "FileSink",
    "FileSource",
    "GzipCompress",
    "GzipDecompress",
    "PipeResult",
    "PrivilegeStripper",
    "ProcessSink",
    "ProcessSource",
    "Stage",
    "run_piped",
]

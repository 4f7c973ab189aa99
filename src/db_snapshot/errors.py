"""Exception taxonomy for backup, restore, and state publication.

Every pipeline failure derives from ``SnapshotError`` so callers can catch
one base class at the trigger boundary.  ``DumpFailed`` and
``RestoreFailed`` are raised from the pipe runner and therefore also derive
from ``PipelineFailure``.

Verification differences are *not* exceptions -- see
``db_snapshot.schema.models.VerificationDiff``.
"""


class SnapshotError(Exception):
    """Base class for all db-snapshot failures."""


class ConfigError(ValueError):
    """Raised when the configuration file is missing values or invalid."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration:\n  - " + "\n  - ".join(problems))


class PipelineFailure(SnapshotError):
    """A participant of a streaming pipeline failed.

    Attributes:
        participant: Name of the first failing participant (process or stage).
        returncode: Exit code for process participants, ``None`` for stages.
        detail: Tail of the participant's stderr, or the stage error message.
    """

    def __init__(
        self,
        participant: str,
        returncode: int | None = None,
        detail: str = "",
    ):
        self.participant = participant
        self.returncode = returncode
        self.detail = detail
        message = f"{participant} failed"
        if returncode is not None:
            message += f" with exit code {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class DumpFailed(PipelineFailure):
    """The dump producer exited nonzero."""


class RestoreFailed(PipelineFailure):
    """The load consumer exited nonzero, or the target could not be prepared."""


class PackageFailed(SnapshotError):
    """The dump could not be packaged (manifest, archive, or checksum)."""


class ArchiveCorrupt(SnapshotError):
    """The archive could not be parsed or decompressed."""


class ArchiveContentMissing(SnapshotError):
    """The extracted archive does not contain exactly one dump file."""


class UploadFailed(SnapshotError):
    """An object could not be written to the object store."""


class DownloadFailed(SnapshotError):
    """An artifact could not be fetched from the object store."""


class ChecksumMismatch(SnapshotError):
    """The downloaded artifact's checksum disagrees with the run-state document."""

    def __init__(self, key: str, expected: str, actual: str):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {key}: expected {expected}, got {actual}"
        )


class StatePublishFailed(SnapshotError):
    """The run-state document could not be published."""


class StateConflict(StatePublishFailed):
    """The run-state document changed between read and publish.

    Retryable: the next invocation re-reads the document.
    """

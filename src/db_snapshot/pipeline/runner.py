"""Stream a producer through in-process stages into a sink.

``run_piped`` wires one source (an external process's stdout, or a local
file) through an ordered list of stages (see ``transforms``) into one sink
(a local file, or an external process's stdin).  Data moves in bounded
chunks: the producer pipe is read ``chunk_size`` bytes at a time and
``drain()`` on the consumer's stdin applies backpressure, so memory use
does not depend on the payload size.

The run succeeds only if every process exits 0 and every stage finishes
cleanly.  Otherwise every participant is aborted (processes are killed, a
partial output file is deleted) and ``PipelineFailure`` -- or the
participant's configured subclass -- is raised naming the first participant
that failed.

Usage:
    from db_snapshot.pipeline import FileSink, ProcessSource, GzipCompress, run_piped

    await run_piped(
        ProcessSource(["pg_dump", "--dbname", "app"], name="pg_dump"),
        [GzipCompress()],
        FileSink(workdir / "app.sql.gz"),
    )
"""

import asyncio
import logging
import os
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import BinaryIO, Protocol

from pydantic import BaseModel

from db_snapshot.errors import PipelineFailure
from db_snapshot.pipeline.transforms import CHUNK_SIZE, Stage

logger = logging.getLogger(__name__)

# Bytes of stderr kept per process for error reports
STDERR_TAIL = 4096


class PipeResult(BaseModel):
    """Byte counts of a successful ``run_piped`` call."""

    bytes_in: int = 0   # read from the source
    bytes_out: int = 0  # written to the sink


# ============================================================================
# Participants
# ============================================================================


class Source(Protocol):
    name: str

    async def open(self) -> None: ...

    async def read(self, size: int) -> bytes: ...

    async def close(self) -> None: ...

    async def abort(self) -> None: ...


class Sink(Protocol):
    name: str

    async def open(self) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...

    async def abort(self) -> None: ...


class _ChildProcess:
    """A spawned executable whose stderr is drained into a bounded tail."""

    def __init__(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None,
        name: str,
        failure_type: type[PipelineFailure],
    ) -> None:
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.name = name
        self.failure_type = failure_type
        self._env = {**os.environ, **env} if env else None
        self._tail = bytearray()
        self._stderr_task: asyncio.Task | None = None
        self.proc: asyncio.subprocess.Process | None = None

    async def spawn(self, stdin: int, stdout: int) -> None:
        logger.debug(f"Spawning {self.name}: {' '.join(self.argv)}")
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=stdin,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except OSError as e:
            raise self.failure_type(self.name, detail=f"cannot start {self.argv[0]}: {e}") from e
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        assert self.proc is not None and self.proc.stderr is not None
        while True:
            chunk = await self.proc.stderr.read(4096)
            if not chunk:
                return
            self._tail += chunk
            if len(self._tail) > STDERR_TAIL:
                del self._tail[:-STDERR_TAIL]

    @property
    def stderr_tail(self) -> str:
        return self._tail.decode("utf-8", errors="replace").strip()

    async def wait(self) -> int:
        assert self.proc is not None
        returncode = await self.proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
        return returncode

    async def check(self) -> None:
        """Wait for exit and raise if the exit code is nonzero."""
        returncode = await self.wait()
        if returncode != 0:
            raise self.failure_type(self.name, returncode, self.stderr_tail)
        logger.debug(f"{self.name} exited 0")

    async def kill(self) -> None:
        if self.proc is None:
            return
        if self.proc.returncode is None:
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass
        await self.proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()


class ProcessSource:
    """Read an external process's stdout.

    Args:
        argv: Command and arguments (no shell).
        env: Extra environment variables (e.g. ``PGPASSWORD``).
        name: Participant name used in failures (default: ``argv[0]``).
        failure_type: ``PipelineFailure`` subclass raised on nonzero exit.
    """

    def __init__(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        name: str | None = None,
        failure_type: type[PipelineFailure] = PipelineFailure,
    ) -> None:
        self._child = _ChildProcess(argv, env, name or Path(argv[0]).name, failure_type)
        self.name = self._child.name

    async def open(self) -> None:
        await self._child.spawn(asyncio.subprocess.DEVNULL, asyncio.subprocess.PIPE)

    async def read(self, size: int) -> bytes:
        assert self._child.proc is not None and self._child.proc.stdout is not None
        return await self._child.proc.stdout.read(size)

    async def close(self) -> None:
        await self._child.check()

    async def abort(self) -> None:
        await self._child.kill()


class FileSource:
    """Read a local file."""

    def __init__(self, path: Path, name: str | None = None) -> None:
        self.path = Path(path)
        self.name = name or self.path.name
        self._fh: BinaryIO | None = None

    async def open(self) -> None:
        try:
            self._fh = open(self.path, "rb")
        except OSError as e:
            raise PipelineFailure(self.name, detail=str(e)) from e

    async def read(self, size: int) -> bytes:
        assert self._fh is not None
        return self._fh.read(size)

    async def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    async def abort(self) -> None:
        await self.close()


class FileSink:
    """Write a local file.  The file is deleted if the pipeline fails."""

    def __init__(self, path: Path, name: str | None = None) -> None:
        self.path = Path(path)
        self.name = name or self.path.name
        self._fh: BinaryIO | None = None

    async def open(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "wb")
        except OSError as e:
            raise PipelineFailure(self.name, detail=str(e)) from e

    async def write(self, data: bytes) -> None:
        assert self._fh is not None
        self._fh.write(data)

    async def close(self) -> None:
        if self._fh is not None:
            self._fh.flush()
            os.fsync(self._fh.fileno())
            self._fh.close()
            self._fh = None

    async def abort(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
        self.path.unlink(missing_ok=True)


class ProcessSink:
    """Write into an external process's stdin.  Its stdout is discarded.

    Args:
        argv: Command and arguments (no shell).
        env: Extra environment variables (e.g. ``PGPASSWORD``).
        name: Participant name used in failures (default: ``argv[0]``).
        failure_type: ``PipelineFailure`` subclass raised on nonzero exit.
    """

    def __init__(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        name: str | None = None,
        failure_type: type[PipelineFailure] = PipelineFailure,
    ) -> None:
        self._child = _ChildProcess(argv, env, name or Path(argv[0]).name, failure_type)
        self.name = self._child.name

    async def open(self) -> None:
        await self._child.spawn(asyncio.subprocess.PIPE, asyncio.subprocess.DEVNULL)

    async def write(self, data: bytes) -> None:
        assert self._child.proc is not None and self._child.proc.stdin is not None
        stdin = self._child.proc.stdin
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Consumer exited early; its exit code is the real failure
            await self._child.check()
            raise self._child.failure_type(
                self.name, detail="stopped reading its input before end of stream"
            )

    async def close(self) -> None:
        assert self._child.proc is not None and self._child.proc.stdin is not None
        stdin = self._child.proc.stdin
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass
        await self._child.check()

    async def abort(self) -> None:
        await self._child.kill()


# ============================================================================
# Runner
# ============================================================================


async def run_piped(
    source: Source,
    stages: Sequence[Stage],
    sink: Sink,
    chunk_size: int = CHUNK_SIZE,
) -> PipeResult:
    """Stream ``source`` through ``stages`` into ``sink``.

    Args:
        source: Producer (``ProcessSource`` or ``FileSource``).
        stages: Ordered in-process transforms.
        sink: Consumer (``FileSink`` or ``ProcessSink``).
        chunk_size: Maximum bytes read from the source per step.

    Returns:
        ``PipeResult`` with bytes read and written.

    Raises:
        PipelineFailure: (or a subclass chosen by the participant) naming the
            first participant that failed.  All participants are aborted
            first; on cancellation they are aborted and ``CancelledError``
            propagates.
    """
    opened: list[Source | Sink] = []
    result = PipeResult()
    try:
        await source.open()
        opened.append(source)
        await sink.open()
        opened.append(sink)

        while True:
            try:
                chunk = await source.read(chunk_size)
            except OSError as e:
                raise PipelineFailure(source.name, detail=str(e)) from e
            if not chunk:
                break
            result.bytes_in += len(chunk)
            for piece in _apply(stages, 0, chunk):
                await sink.write(piece)
                result.bytes_out += len(piece)

        for piece in _finish(stages):
            await sink.write(piece)
            result.bytes_out += len(piece)

        await source.close()
        await sink.close()
    except BaseException as exc:
        for participant in reversed(opened):
            try:
                await participant.abort()
            except Exception as abort_exc:
                logger.warning(f"Failed to abort {participant.name}: {abort_exc}")
        if isinstance(exc, OSError) and not isinstance(exc, PipelineFailure):
            raise PipelineFailure(sink.name, detail=str(exc)) from exc
        raise

    logger.debug(
        f"Pipeline {source.name} -> {sink.name} done: "
        f"{result.bytes_in:,} bytes in, {result.bytes_out:,} bytes out"
    )
    return result


def _apply(stages: Sequence[Stage], index: int, data: bytes):
    """Push ``data`` through ``stages[index:]``, yielding sink-bound pieces.

    Each piece travels all the way downstream before the stage is asked for
    the next one, so at most one piece per stage is alive at a time.
    """
    if index == len(stages):
        yield data
        return
    stage = stages[index]
    for piece in _drive(stage, lambda: stage.feed(data)):
        yield from _apply(stages, index + 1, piece)


def _finish(stages: Sequence[Stage]):
    """Flush every stage in order, pushing each stage's tail downstream."""
    for index, stage in enumerate(stages):
        for piece in _drive(stage, stage.finish):
            yield from _apply(stages, index + 1, piece)


def _drive(stage: Stage, produce: Callable[[], Iterable[bytes]]):
    """Advance a stage's output lazily, mapping its errors to ``PipelineFailure``."""
    try:
        pieces = iter(produce())
    except Exception as e:
        raise PipelineFailure(stage.name, detail=str(e) or type(e).__name__) from e
    while True:
        try:
            piece = next(pieces)
        except StopIteration:
            return
        except Exception as e:
            raise PipelineFailure(stage.name, detail=str(e) or type(e).__name__) from e
        yield piece

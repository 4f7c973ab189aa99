"""In-process stream stages for the pipe runner.

A stage turns input chunks into output chunks without holding the whole
payload.  ``feed()`` and ``finish()`` are generators so a single input chunk
that expands a lot (decompression) is emitted in bounded pieces.

Stages:
    - ``GzipCompress``: gzip container, single member.
    - ``GzipDecompress``: gzip container, concatenated members accepted.
    - ``PrivilegeStripper``: drops ownership / grant / session-authorization
      statements from a plain-format ``pg_dump`` stream, line by line.
"""

import re
import zlib
from collections.abc import Iterator, Sequence
from typing import Protocol

CHUNK_SIZE = 64 * 1024

# gzip header/trailer (RFC 1952) for zlib
_GZIP_WBITS = 16 + zlib.MAX_WBITS


class Stage(Protocol):
    """A synchronous transform between two pipeline participants."""

    name: str

    def feed(self, data: bytes) -> Iterator[bytes]:
        """Consume one input chunk, yielding zero or more output chunks."""
        ...

    def finish(self) -> Iterator[bytes]:
        """Flush buffered state after the last input chunk."""
        ...


class GzipCompress:
    """Gzip-compress the stream."""

    name = "gzip"

    def __init__(self, level: int = 6) -> None:
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)

    def feed(self, data: bytes) -> Iterator[bytes]:
        out = self._compressor.compress(data)
        if out:
            yield out

    def finish(self) -> Iterator[bytes]:
        out = self._compressor.flush()
        if out:
            yield out


class GzipDecompress:
    """Gunzip the stream, emitting at most ``max_output`` bytes per piece.

    Raises ``zlib.error`` on corrupt input and ``ValueError`` if the stream
    ends mid-member.
    """

    name = "gunzip"

    def __init__(self, max_output: int = CHUNK_SIZE * 4) -> None:
        self._max_output = max_output
        self._decompressor = zlib.decompressobj(_GZIP_WBITS)
        self._trailing = False

    def feed(self, data: bytes) -> Iterator[bytes]:
        while True:
            if self._decompressor.eof:
                if not data:
                    return
                # Zero padding after the last member is tolerated, like gzip(1)
                if not data.strip(b"\x00"):
                    self._trailing = True
                    return
                self._decompressor = zlib.decompressobj(_GZIP_WBITS)
                self._trailing = False
            out = self._decompressor.decompress(data, self._max_output)
            if out:
                yield out
            if self._decompressor.eof:
                data = self._decompressor.unused_data
                continue
            data = self._decompressor.unconsumed_tail
            # A full buffer may leave output pending inside zlib
            if not data and len(out) < self._max_output:
                return

    def finish(self) -> Iterator[bytes]:
        out = self._decompressor.flush()
        if out:
            yield out
        if not self._decompressor.eof and not self._trailing:
            raise ValueError("gzip stream ended before the end of a member")


# ============================================================================
# Privileged clause stripping
# ============================================================================

# Whole-line statements only: each pattern is anchored at both ends and may
# not cross a ';', so a line holding two statements never matches.
PRIVILEGED_STATEMENTS: tuple[re.Pattern[bytes], ...] = (
    re.compile(rb"ALTER [^;]*? OWNER TO [^;]+;"),
    re.compile(rb"(?:GRANT|REVOKE) [^;]+;"),
    re.compile(rb"ALTER DEFAULT PRIVILEGES [^;]+;"),
    re.compile(rb"(?:SET|RESET) SESSION AUTHORIZATION[^;]*;"),
    re.compile(rb"SECURITY LABEL [^;]+;"),
)

_COPY_START = re.compile(rb"COPY .+ FROM stdin;")
_COPY_END = b"\\."

# $$ or $tag$ opening/closing a dollar-quoted function or procedure body
_DOLLAR_QUOTE = re.compile(rb"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

# Lines longer than this are passed through untouched
MAX_LINE = 1024 * 1024


class PrivilegeStripper:
    """Drop privileged ownership/security statements from a dump stream.

    Works on complete lines.  A partial line at the end of a chunk is
    carried into the next chunk before matching, so a statement split across
    chunk boundaries is judged as a whole.  Rows inside ``COPY ... FROM
    stdin;`` blocks are data, and lines inside dollar-quoted bodies
    (``AS $$ ... $$``) belong to a function; neither is ever rewritten.

    Attributes:
        stripped: Number of lines removed so far.
    """

    name = "strip-privileges"

    def __init__(
        self,
        patterns: Sequence[re.Pattern[bytes]] = PRIVILEGED_STATEMENTS,
        max_line: int = MAX_LINE,
    ) -> None:
        self._patterns = tuple(patterns)
        self._max_line = max_line
        self._carry = bytearray()
        self._passthrough = False  # Inside an overlong line
        self._in_copy = False
        self._dollar_tag: bytes | None = None
        self.stripped = 0

    def feed(self, data: bytes) -> Iterator[bytes]:
        out = bytearray()
        start = 0
        while True:
            newline = data.find(b"\n", start)
            if newline == -1:
                break
            segment = data[start:newline + 1]
            start = newline + 1

            if self._passthrough:
                out += segment
                self._passthrough = False
                continue

            if self._carry:
                self._carry += segment
                line = bytes(self._carry)
                self._carry.clear()
            else:
                line = segment
            out += self._rewrite(line)

        rest = data[start:]
        if rest:
            if self._passthrough:
                out += rest
            else:
                self._carry += rest
                if len(self._carry) > self._max_line:
                    out += self._carry
                    self._carry.clear()
                    self._passthrough = True
        if out:
            yield bytes(out)

    def finish(self) -> Iterator[bytes]:
        if self._carry:
            line = self._rewrite(bytes(self._carry))
            self._carry.clear()
            if line:
                yield line

    def _rewrite(self, line: bytes) -> bytes:
        body = line.rstrip(b"\r\n")

        if self._in_copy:
            if body == _COPY_END:
                self._in_copy = False
            return line

        if self._dollar_tag is not None:
            self._track_dollar_quotes(body)
            return line

        if _COPY_START.fullmatch(body):
            self._in_copy = True
            return line

        for pattern in self._patterns:
            if pattern.fullmatch(body):
                self.stripped += 1
                return b""
        self._track_dollar_quotes(body)
        return line

    def _track_dollar_quotes(self, body: bytes) -> None:
        """Open or close a dollar-quoted body; only the opening tag closes it."""
        for match in _DOLLAR_QUOTE.finditer(body):
            tag = match.group()
            if self._dollar_tag is None:
                self._dollar_tag = tag
            elif tag == self._dollar_tag:
                self._dollar_tag = None

"""Decoder for newline-delimited JSON output streams.

The agent writes one JSON record per line, but the pipe delivers
arbitrary chunks. The decoder buffers across chunk boundaries and yields
one typed event per complete line. A line that does not parse is logged
and dropped; it never ends the stream.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator

from .events import StreamEvent, parse_event

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def parse_line(line: str) -> StreamEvent | None:
    """Parse one line. Returns None for blank or malformed lines."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        logger.warning("Failed to parse stream line: %.200s", stripped)
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring non-object stream record: %.200s", stripped)
        return None
    return parse_event(data)


class LineBuffer:
    """Accumulates text chunks and releases complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        # The last piece has no newline yet; keep it for the next chunk.
        self._buffer = lines.pop()
        return lines

    def flush(self) -> str:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return rest


async def _iter_chunks(source) -> AsyncIterator[bytes | str]:
    # StreamReader's own async iteration is line based; read raw chunks.
    if hasattr(source, "read"):
        while True:
            chunk = await source.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
        return
    async for chunk in source:
        yield chunk


async def decode_stream(
    source: AsyncIterable[bytes | str],
) -> AsyncIterator[StreamEvent]:
    """Yield events from *source* until it closes.

    *source* is an asyncio StreamReader or any async iterable of byte or
    text chunks. Events come out in the order their lines went in,
    regardless of how the input was chunked.
    """
    buffer = LineBuffer()
    async for chunk in _iter_chunks(source):
        for line in buffer.feed(chunk):
            event = parse_line(line)
            if event is not None:
                yield event

    rest = buffer.flush()
    if rest.strip():
        event = parse_line(rest)
        if event is not None:
            yield event


def decode_lines(chunks: Iterable[bytes | str]) -> Iterator[StreamEvent]:
    """Synchronous counterpart of decode_stream() for captured output."""
    buffer = LineBuffer()
    for chunk in chunks:
        for line in buffer.feed(chunk):
            event = parse_line(line)
            if event is not None:
                yield event
    rest = buffer.flush()
    if rest.strip():
        event = parse_line(rest)
        if event is not None:
            yield event

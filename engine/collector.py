"""Read llama-cli stdout, either chunk by chunk or in one terminal read."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger("ember.collector")

# Longest UTF-8 sequence; shorter undecodable buffers may just be incomplete.
MAX_SEQUENCE_BYTES = 4
READ_CHUNK_BYTES = 4096

TokenCallback = Callable[[str], None]


class Utf8ChunkDecoder:
    """Decode an arbitrary byte stream without splitting multi-byte characters.

    When the buffered bytes do not decode, the longest decodable prefix is
    emitted and the remainder is held back for the next chunk.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    def feed(self, data: bytes) -> str:
        self._buffer.extend(data)
        pieces: list[str] = []
        while self._buffer:
            try:
                pieces.append(self._buffer.decode("utf-8"))
            except UnicodeDecodeError as exc:
                # Everything before the failure offset is the longest
                # decodable prefix.
                if exc.start > 0:
                    pieces.append(self._buffer[: exc.start].decode("utf-8"))
                    del self._buffer[: exc.start]
                    continue
                if exc.end >= len(self._buffer) and len(self._buffer) < MAX_SEQUENCE_BYTES:
                    # Truncated character at the tail; wait for more bytes.
                    break
                # The head is a genuinely invalid byte, not a truncated one.
                pieces.append("\ufffd")
                del self._buffer[: max(1, exc.end)]
                continue
            self._buffer.clear()
        return "".join(pieces)

    def flush(self) -> str:
        """Decode whatever is left once the stream has ended."""
        text = self._buffer.decode("utf-8", errors="replace")
        self._buffer.clear()
        return text


class OutputCollector:
    """Accumulate a process's stdout, optionally forwarding each chunk."""

    def __init__(self, *, chunk_size: int = READ_CHUNK_BYTES) -> None:
        self.chunk_size = chunk_size
        self._decoder = Utf8ChunkDecoder()
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def _emit(self, piece: str, on_token: TokenCallback | None) -> None:
        if not piece:
            return
        self._parts.append(piece)
        if on_token is not None:
            on_token(piece)

    async def stream(self, reader: asyncio.StreamReader, on_token: TokenCallback | None = None) -> str:
        """Read until EOF, delivering decoded chunks in arrival order."""
        while True:
            data = await reader.read(self.chunk_size)
            if not data:
                break
            self._emit(self._decoder.feed(data), on_token)
        self._emit(self._decoder.flush(), on_token)
        return self.text

    async def read_all(self, reader: asyncio.StreamReader) -> str:
        """Single terminal read of everything the process wrote."""
        data = await reader.read()
        self._emit(self._decoder.feed(data), None)
        self._emit(self._decoder.flush(), None)
        return self.text


__all__ = ["MAX_SEQUENCE_BYTES", "OutputCollector", "TokenCallback", "Utf8ChunkDecoder"]

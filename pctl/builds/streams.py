"""Bounded in-memory pipe for streaming archives.

A producer thread writes bytes into a PipeStream while the consumer (usually an
httpx request body) reads or iterates it. The chunk queue is bounded, so a slow
consumer blocks the producer instead of buffering the whole archive in memory.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from types import TracebackType

logger = logging.getLogger(__name__)

# Maximum queued chunks before the writer blocks
DEFAULT_MAX_CHUNKS = 16

# Chunk size handed out when iterating
READ_CHUNK_SIZE = 64 * 1024  # 64 KB

# Poll interval so a blocked writer notices a closed reader
_PUT_POLL_SECONDS = 0.1

_EOF = object()


class PipeStream:
    """A one-way pipe with a writer side and a reader side.

    Writer side: `write()`, `close()`, `close_with_error()`.
    Reader side: `read()`, iteration, `close_reader()` (or the context manager).

    An error passed to `close_with_error()` is raised on the reader side once all
    data written before it has been consumed.
    """

    def __init__(self, max_chunks: int = DEFAULT_MAX_CHUNKS) -> None:
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_chunks)
        self._reader_closed = threading.Event()
        self._writer_closed = False
        self._buffer = bytearray()
        self._eof = False
        self._error: BaseException | None = None

    # Writer side

    def write(self, data: bytes) -> int:
        """Queue bytes for the reader, blocking while the pipe is full.

        Raises:
            BrokenPipeError: If the reader side has been closed.
        """
        if self._writer_closed:
            raise ValueError("write to closed pipe")
        if not data:
            return 0
        chunk = bytes(data)
        self._put(chunk)
        return len(chunk)

    def flush(self) -> None:
        """No-op; present for file-like compatibility."""

    def close(self) -> None:
        """Signal end of data to the reader."""
        self._finish(_EOF)

    def close_with_error(self, error: BaseException) -> None:
        """Signal that the producer failed; the reader will raise `error`."""
        self._finish(error)

    def _finish(self, item: object) -> None:
        if self._writer_closed:
            return
        self._writer_closed = True
        try:
            self._put(item)
        except BrokenPipeError:
            # Nobody is reading anymore
            pass

    def _put(self, item: object) -> None:
        while True:
            if self._reader_closed.is_set():
                raise BrokenPipeError("pipe reader closed")
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                continue

    # Reader side

    def _next_chunk(self) -> bytes | None:
        if self._error is not None:
            raise self._error
        if self._eof:
            return None
        item = self._queue.get()
        if item is _EOF:
            self._eof = True
            return None
        if isinstance(item, BaseException):
            self._error = item
            raise item
        return item  # type: ignore[return-value]

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes (all remaining bytes when negative).

        Returns an empty bytes object at end of stream.
        """
        if size is None or size < 0:
            while (chunk := self._next_chunk()) is not None:
                self._buffer.extend(chunk)
            data = bytes(self._buffer)
            self._buffer.clear()
            return data

        while len(self._buffer) < size:
            chunk = self._next_chunk()
            if chunk is None:
                break
            self._buffer.extend(chunk)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def __iter__(self) -> Iterator[bytes]:
        while chunk := self.read(READ_CHUNK_SIZE):
            yield chunk

    def close_reader(self) -> None:
        """Stop consuming; a blocked or later writer gets BrokenPipeError."""
        if self._reader_closed.is_set():
            return
        self._reader_closed.set()
        # Drain so a writer blocked in put() wakes up promptly
        try:
            while True:
                self._queue.get_nowait()
        except queue.Empty:
            pass
        logger.debug("Pipe reader closed")

    @property
    def closed(self) -> bool:
        """Whether the reader side has been closed."""
        return self._reader_closed.is_set()

    def __enter__(self) -> PipeStream:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close_reader()


__all__ = ["DEFAULT_MAX_CHUNKS", "READ_CHUNK_SIZE", "PipeStream"]

"""Chunked, offset-tracking reader for newline-delimited logs.

Lines longer than ``max_line_bytes`` are never materialized: the reader drops
what it buffered, discards input up to the next newline and reports a single
truncated record so callers keep exact byte offsets.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class LineRecord:
    text: str
    end_offset: int
    was_truncated: bool = False


class SegmentedLineReader:
    """Yield ``LineRecord`` entries from ``start_offset`` onwards.

    ``end_offset`` of each record is the position right after its newline, so
    a later run can seek there directly. A trailing record without a newline
    is left unread until it is completed. ``read_limit`` caps the bytes pulled
    from disk; records cut by it are not emitted.
    """

    def __init__(
        self,
        path: Path,
        start_offset: int = 0,
        max_line_bytes: int = 2 * 1024 * 1024,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        read_limit: int | None = None,
    ) -> None:
        self.path = path
        self.max_line_bytes = max_line_bytes
        self.chunk_size = max(1, chunk_size)
        self.read_limit = read_limit
        self._handle: BinaryIO = path.open("rb")
        try:
            self.starts_at_line_boundary = True
            if start_offset > 0:
                self._handle.seek(start_offset - 1)
                self.starts_at_line_boundary = self._handle.read(1) == b"\n"
            self._handle.seek(start_offset)
        except OSError:
            self._handle.close()
            raise
        self._buffer = bytearray()
        self._line_start = start_offset
        self._read_offset = start_offset
        self._discarding = False
        self.bytes_read = 0

    def __enter__(self) -> SegmentedLineReader:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __iter__(self) -> Iterator[LineRecord]:
        while True:
            record = self.next_line()
            if record is None:
                return
            yield record

    def close(self) -> None:
        self._handle.close()

    def next_line(self) -> LineRecord | None:
        while True:
            if not self._discarding:
                newline = self._buffer.find(b"\n")
                if newline != -1:
                    end_offset = self._line_start + newline + 1
                    self._line_start = end_offset
                    if newline > self.max_line_bytes:
                        del self._buffer[: newline + 1]
                        return LineRecord("", end_offset, was_truncated=True)
                    line = bytes(self._buffer[:newline])
                    del self._buffer[: newline + 1]
                    return LineRecord(line.decode("utf-8", errors="replace"), end_offset)
                if len(self._buffer) > self.max_line_bytes:
                    self._buffer.clear()
                    self._discarding = True

            size = self.chunk_size
            if self.read_limit is not None:
                size = min(size, self.read_limit - self.bytes_read)
                if size <= 0:
                    return None
            chunk = self._handle.read(size)
            if not chunk:
                return None
            self._read_offset += len(chunk)
            self.bytes_read += len(chunk)

            if self._discarding:
                newline = chunk.find(b"\n")
                if newline == -1:
                    continue
                end_offset = self._read_offset - (len(chunk) - newline - 1)
                self._line_start = end_offset
                self._discarding = False
                # Bytes after the newline belong to the next record.
                self._buffer = bytearray(chunk[newline + 1 :])
                return LineRecord("", end_offset, was_truncated=True)

            self._buffer.extend(chunk)

    def skip_to_next_line(self) -> bool:
        """Drop the remainder of a line cut at the start offset.

        Returns False when that line has not been completed yet.
        """
        return self.next_line() is not None

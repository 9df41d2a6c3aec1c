from __future__ import annotations

import logging
import os
import threading
import time
from datetime import date, datetime, time as dtime
from decimal import Decimal
from typing import Any, Callable, IO, List, Optional, Sequence

from pg_to_snowflake.models import Chunk

LOG = logging.getLogger(__name__)

DELIMITER = ","
QUOTE = '"'
LINE_END = "\n"
TIMESTAMP_PLACEHOLDER = "1970-01-01 00:00:00.000"

_NEEDS_QUOTING = (DELIMITER, QUOTE, "\r", "\n")


# ============================== Serialisation ===============================

def _render(value: Any, trim_strings: bool) -> Optional[str]:
    """Text form of one value, or None for SQL NULL."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ", timespec="microseconds")
    if isinstance(value, (date, dtime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, memoryview):
        return value.hex()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, str):
        s = value.strip() if trim_strings else value
        if s == TIMESTAMP_PLACEHOLDER:
            return None
        return s
    return str(value)


def escape_field(text: Optional[str]) -> str:
    """
    NULL -> empty unquoted field; "" -> quoted empty field.
    Delimiter, quote or line breaks force quoting; embedded quotes are doubled.
    """
    if text is None:
        return ""
    if text == "" or any(ch in text for ch in _NEEDS_QUOTING):
        return QUOTE + text.replace(QUOTE, QUOTE * 2) + QUOTE
    return text


def encode_row(values: Sequence[Any], trim_strings: bool = True) -> bytes:
    line = DELIMITER.join(escape_field(_render(v, trim_strings)) for v in values)
    return (line + LINE_END).encode("utf-8")


def encode_header(columns: Sequence[str]) -> bytes:
    return (DELIMITER.join(escape_field(c) for c in columns) + LINE_END).encode("utf-8")


# ============================== Writer ===============================

class ChunkWriter:
    """
    Splits a row stream into header-prefixed CSV files of at most `max_bytes`.

    Rows go straight to the open chunk file, so memory stays bounded by the
    file buffer. When the next row would overflow a non-empty chunk, the chunk
    is closed and handed to `on_chunk` before the row is written to a new one.
    The hand-off runs inside `write`, so the producer is held until it ends.
    `ready` is cleared for its duration; only `on_chunk` (or another thread)
    can observe it unset, and `write` itself always returns True.
    """

    def __init__(
        self,
        directory: str,
        prefix: str,
        columns: Sequence[str],
        max_bytes: int,
        on_chunk: Callable[[Chunk], None] | None = None,
        trim_strings: bool = True,
        logger: logging.Logger | None = None,
    ):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.directory = directory
        self.prefix = prefix
        self.columns = list(columns)
        self.max_bytes = max_bytes
        self.on_chunk = on_chunk
        self.trim_strings = trim_strings
        self.log = logger or LOG

        self.ready = threading.Event()
        self.ready.set()
        self.chunks: List[Chunk] = []
        self.rows_written = 0

        self._header = encode_header(self.columns)
        self._fh: IO[bytes] | None = None
        self._current: Chunk | None = None
        self._next_sequence = 1
        self._width_warned = False
        self._closed = False

    # ------------------------ Internals ------------------------

    def _chunk_path(self, sequence: int) -> str:
        return os.path.join(self.directory, f"{self.prefix}_chunk_{sequence}.csv")

    def _open_chunk(self) -> None:
        os.makedirs(self.directory, exist_ok=True)
        path = self._chunk_path(self._next_sequence)
        self._fh = open(path, "wb")
        self._fh.write(self._header)
        self._current = Chunk(sequence=self._next_sequence, local_path=path, byte_size=len(self._header))
        self._next_sequence += 1
        self.log.debug("Opened chunk %s", path)

    def _conform(self, row: Sequence[Any]) -> Sequence[Any]:
        width = len(self.columns)
        if len(row) == width:
            return row
        if not self._width_warned:
            self.log.warning(
                "Row width %d differs from header width %d in %s; padding/truncating",
                len(row), width, self.prefix,
            )
            self._width_warned = True
        if len(row) > width:
            return row[:width]
        return list(row) + [None] * (width - len(row))

    def _flush(self) -> None:
        chunk = self._current
        if chunk is None:
            return
        self._fh.close()
        self._fh = None
        self._current = None
        self.chunks.append(chunk)
        self.log.info(
            "Chunk %d of %s closed: %d rows, %d bytes",
            chunk.sequence, self.prefix, chunk.row_count, chunk.byte_size,
        )
        if self.on_chunk is None:
            return
        self.ready.clear()
        t0 = time.perf_counter()
        try:
            self.on_chunk(chunk)
        finally:
            self.ready.set()
        self.log.debug("Chunk %d hand-off took %.3fs", chunk.sequence, time.perf_counter() - t0)

    # ------------------------ Public ------------------------

    def write(self, row: Sequence[Any]) -> bool:
        if self._closed:
            raise RuntimeError("ChunkWriter is closed")
        data = encode_row(self._conform(row), self.trim_strings)
        if self._current is not None and self._current.row_count > 0 \
                and self._current.byte_size + len(data) > self.max_bytes:
            self._flush()
        if self._current is None:
            self._open_chunk()
        self._fh.write(data)
        self._current.byte_size += len(data)
        self._current.row_count += 1
        self.rows_written += 1
        return self.ready.is_set()

    def close(self) -> List[Chunk]:
        """Flush the partially filled chunk (if any) and return every chunk produced."""
        if not self._closed:
            self._closed = True
            self._flush()
        return self.chunks

    def discard(self) -> None:
        """Drop the open chunk without handing it off (export failed mid-stream)."""
        self._closed = True
        if self._fh is not None:
            self._fh.close()
            self._fh = None
        if self._current is not None:
            try:
                os.remove(self._current.local_path)
            except FileNotFoundError:
                pass
            self.log.info("Discarded open chunk %d of %s", self._current.sequence, self.prefix)
            self._current = None

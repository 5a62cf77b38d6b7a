"""Bounded terminal output buffer with absolute indexing.

Entries are JSON-encoded messages. Each one gets a monotonically increasing
absolute index, so a reader that remembers ``last_index`` keeps its place
even as old entries are evicted from the front.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Chunk:
    index: int
    data: str
    size: int


class OutputBuffer:
    """Append-only ring of JSON strings, bounded by count and by UTF-8 bytes.

    Args:
        max_entries: Oldest entries are dropped beyond this count.
        max_bytes: Oldest entries are dropped while the total exceeds this size.
        max_entry_bytes: Largest single entry. Longer output is split across
            several entries. Defaults to, and never exceeds, ``max_bytes``.
    """

    def __init__(
        self,
        max_entries: int = 500,
        max_bytes: int = 5 * 1024 * 1024,
        max_entry_bytes: int | None = None,
    ) -> None:
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.max_entry_bytes = min(max_entry_bytes or max_bytes, max_bytes)
        self._chunks: deque[Chunk] = deque()
        self._bytes = 0
        self._next = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._bytes

    @property
    def first_index(self) -> int:
        """Absolute index of the oldest retained entry (== next_index when empty)."""
        with self._lock:
            return self._chunks[0].index if self._chunks else self._next

    @property
    def next_index(self) -> int:
        with self._lock:
            return self._next

    def append(self, data: str) -> int:
        """Store one encoded entry and return its absolute index.

        Raises:
            ValueError: The entry is larger than ``max_entry_bytes``.
        """
        size = len(data.encode("utf-8"))
        if size > self.max_entry_bytes:
            raise ValueError(f"Entry of {size} bytes exceeds the {self.max_entry_bytes} byte limit")
        with self._lock:
            index = self._next
            self._next += 1
            self._chunks.append(Chunk(index, data, size))
            self._bytes += size
            while self._chunks and (
                len(self._chunks) > self.max_entries or self._bytes > self.max_bytes
            ):
                self._bytes -= self._chunks.popleft().size
            return index

    def _append_text(self, kind: str, data: str) -> int:
        """Append ``data`` as one message, or as consecutive pieces when it is too large."""
        encoded = json.dumps({"type": kind, "data": data}, ensure_ascii=False)
        if len(data) <= 1 or len(encoded.encode("utf-8")) <= self.max_entry_bytes:
            return self.append(encoded)
        middle = len(data) // 2
        self._append_text(kind, data[:middle])
        return self._append_text(kind, data[middle:])

    def output(self, data: str) -> int:
        return self._append_text("output", data)

    def system(self, data: str) -> int:
        return self._append_text("system", data)

    def read_from(self, index: int, limit: int | None = None) -> list[Chunk]:
        """Entries with absolute index >= ``index``, oldest first.

        A cursor that fell behind eviction resumes at the oldest retained entry.
        """
        with self._lock:
            if not self._chunks:
                return []
            offset = max(0, index - self._chunks[0].index)
            end = len(self._chunks) if limit is None else min(len(self._chunks), offset + limit)
            return [self._chunks[i] for i in range(offset, end)]

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._bytes = 0

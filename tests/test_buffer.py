from __future__ import annotations

import json

import pytest

from agenthost.session.buffer import OutputBuffer

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class TestAppend:
    def test_indices_are_absolute_and_increasing(self) -> None:
        buf = OutputBuffer()
        assert [buf.output(c) for c in "abc"] == [0, 1, 2]
        assert buf.next_index == 3
        assert buf.first_index == 0

    def test_entries_are_json_messages(self) -> None:
        buf = OutputBuffer()
        buf.output("héllo")
        buf.system("bye")

        messages = [json.loads(c.data) for c in buf.read_from(0)]

        assert messages == [
            {"type": "output", "data": "héllo"},
            {"type": "system", "data": "bye"},
        ]

    def test_size_is_counted_in_utf8_bytes(self) -> None:
        buf = OutputBuffer()
        buf.append("é")
        assert buf.total_bytes == 2

    def test_empty_buffer(self) -> None:
        buf = OutputBuffer()
        assert len(buf) == 0
        assert buf.first_index == buf.next_index == 0
        assert buf.read_from(0) == []


class TestEviction:
    def test_by_entry_count(self) -> None:
        buf = OutputBuffer(max_entries=3)
        for c in "abcde":
            buf.append(c)

        assert len(buf) == 3
        assert buf.first_index == 2
        assert [c.data for c in buf.read_from(0)] == ["c", "d", "e"]

    def test_by_total_bytes(self) -> None:
        buf = OutputBuffer(max_bytes=10)
        for _ in range(4):
            buf.append("x" * 4)

        assert buf.total_bytes <= 10
        assert [c.index for c in buf.read_from(0)] == [2, 3]

    def test_oversized_entry_is_rejected(self) -> None:
        buf = OutputBuffer(max_bytes=10)
        buf.append("small")

        with pytest.raises(ValueError, match="exceeds"):
            buf.append("x" * 50)

        assert [c.data for c in buf.read_from(0)] == ["small"]

    def test_long_output_is_split_into_bounded_entries(self) -> None:
        buf = OutputBuffer(max_bytes=10_000, max_entry_bytes=100)
        text = "0123456789" * 50

        last = buf.output(text)

        chunks = buf.read_from(0)
        assert len(chunks) > 1
        assert last == chunks[-1].index
        assert all(c.size <= 100 for c in chunks)
        assert "".join(json.loads(c.data)["data"] for c in chunks) == text
        assert buf.total_bytes <= buf.max_bytes


class TestRead:
    def test_cursor_behind_eviction_resumes_at_oldest(self) -> None:
        buf = OutputBuffer(max_entries=2)
        for c in "abcd":
            buf.append(c)

        assert [c.index for c in buf.read_from(0)] == [2, 3]

    def test_cursor_at_end_reads_nothing(self) -> None:
        buf = OutputBuffer()
        buf.append("a")
        assert buf.read_from(buf.next_index) == []

    def test_limit(self) -> None:
        buf = OutputBuffer()
        for c in "abcdef":
            buf.append(c)

        assert [c.data for c in buf.read_from(1, limit=2)] == ["b", "c"]

    def test_clear_keeps_index_monotonic(self) -> None:
        buf = OutputBuffer()
        buf.append("a")
        buf.clear()

        assert len(buf) == 0
        assert buf.append("b") == 1

"""Tests for the SSE line buffer.

Validates:
- LF, CR and CRLF each produce exactly one line boundary
- CRLF split across feed calls is not double-counted
- Partial lines are carried across chunks
- flush() returns unterminated trailing content
"""

import os
import sys

import pytest

# Ensure eventsource/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sse_lines import LineBuffer


def _lines(*chunks):
    buf = LineBuffer()
    out = []
    for chunk in chunks:
        out.extend(buf.feed(chunk))
    return out, buf


# ── Terminators ───────────────────────────────────────────────────────


class TestTerminators:
    @pytest.mark.parametrize("sep", [b"\n", b"\r", b"\r\n"])
    def test_each_terminator_splits(self, sep):
        lines, _ = _lines(b"a" + sep + b"b" + sep)
        assert lines == [b"a", b"b"]

    def test_blank_lines_preserved(self):
        lines, _ = _lines(b"a\n\nb\r\rc\r\n\r\n")
        assert lines == [b"a", b"", b"b", b"", b"c", b""]

    def test_lf_cr_is_two_boundaries(self):
        lines, _ = _lines(b"a\n\rb\n")
        assert lines == [b"a", b"", b"b"]

    def test_mixed_within_one_chunk(self):
        lines, _ = _lines(b"one\rtwo\r\nthree\nfour\r")
        assert lines == [b"one", b"two", b"three", b"four"]


# ── Chunk boundaries ──────────────────────────────────────────────────


class TestChunkBoundaries:
    def test_crlf_split_across_feeds(self):
        lines, _ = _lines(b"a\r", b"\nb\n")
        assert lines == [b"a", b"b"]

    def test_cr_then_blank_line_across_feeds(self):
        lines, _ = _lines(b"a\r", b"\r\n")
        assert lines == [b"a", b""]

    def test_cr_flag_cleared_by_other_byte(self):
        lines, _ = _lines(b"a\r", b"b", b"\n")
        assert lines == [b"a", b"b"]

    def test_partial_line_carried(self):
        lines, buf = _lines(b"da", b"ta: x", b"yz\nrest")
        assert lines == [b"data: xyz"]
        assert buf.pending == 4

    def test_every_split_point_matches(self):
        stream = b"id: 1\r\ndata: a\r\rdata: b\n\r\n"
        whole, _ = _lines(stream)
        for i in range(len(stream) + 1):
            split, _ = _lines(stream[:i], stream[i:])
            assert split == whole, f"split at {i}"

    def test_empty_feed_is_noop(self):
        lines, buf = _lines(b"", b"a", b"", b"\n")
        assert lines == [b"a"]
        assert buf.pending == 0


# ── Flush ─────────────────────────────────────────────────────────────


class TestFlush:
    def test_flush_returns_unterminated_line(self):
        _, buf = _lines(b"data: tail")
        assert list(buf.flush()) == [b"data: tail"]
        assert buf.pending == 0

    def test_flush_empty_yields_nothing(self):
        _, buf = _lines(b"a\n")
        assert list(buf.flush()) == []

    def test_flush_clears_cr_state(self):
        _, buf = _lines(b"a\r")
        list(buf.flush())
        assert list(buf.feed(b"\nb\n")) == [b"", b"b"]

    def test_feed_is_lazy(self):
        buf = LineBuffer()
        gen = buf.feed(b"a\nb\n")
        assert next(gen) == b"a"
        assert next(gen) == b"b"
        with pytest.raises(StopIteration):
            next(gen)

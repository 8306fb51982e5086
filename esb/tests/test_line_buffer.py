"""
Tests for the bounded line store and the chunk-to-line assembler.
"""

import threading

import pytest

from esb.line_buffer import Fence, LineAssembler, LineRingBuffer


class TestLineRingBuffer:
    """Tests for LineRingBuffer."""

    def test_rejects_non_positive_capacity(self):
        """Capacity must be at least one line."""
        with pytest.raises(ValueError):
            LineRingBuffer(0)

    def test_splits_on_newlines_and_drops_blank_lines(self):
        """CRLF and LF both end a line; blank and whitespace-only lines vanish."""
        buf = LineRingBuffer(10)
        buf.append("one\r\ntwo\n\n   \nthree  \n")
        assert buf.snapshot() == ["one", "two", "three"]

    def test_capacity_keeps_last_lines_in_order(self):
        """Appending cap + k lines leaves the last cap lines, in order."""
        buf = LineRingBuffer(5)
        for i in range(8):
            buf.append(f"line {i}")
        assert buf.snapshot() == [f"line {i}" for i in range(3, 8)]
        assert buf.evicted == 3
        assert buf.appended == 8

    def test_append_reports_eviction(self):
        """append() returns how many head lines it pushed out."""
        buf = LineRingBuffer(3)
        assert buf.append("a\nb") == 0
        assert buf.append("c\nd\ne") == 2
        assert buf.append("\n\n") == 0

    def test_since_fence_returns_new_lines(self):
        """After N appends, since(fence) returns exactly those N lines."""
        buf = LineRingBuffer(100)
        buf.append("old 1\nold 2")
        fence = buf.fence()
        buf.append("new 1")
        buf.append("new 2\nnew 3")
        assert buf.since(fence) == ["new 1", "new 2", "new 3"]

    def test_since_clamps_out_of_range_fence(self):
        """A fence past the end yields nothing; a negative one yields everything."""
        buf = LineRingBuffer(10)
        buf.append("a\nb")
        assert buf.since(99) == []
        assert buf.since(-4) == ["a", "b"]

    def test_since_mark_survives_eviction(self):
        """A mark re-bases itself when head lines are evicted after it."""
        buf = LineRingBuffer(4)
        buf.append("a\nb\nc")
        mark = buf.mark()
        buf.append("d\ne\nf")
        # a and b were evicted; d, e, f are still the lines after the mark
        assert buf.since_mark(mark) == ["d", "e", "f"]

    def test_tail(self):
        """tail(3) on a..e returns c, d, e."""
        buf = LineRingBuffer(10)
        for name in "abcde":
            buf.append(name)
        assert buf.tail(3) == ["c", "d", "e"]
        assert buf.tail(0) == []
        assert buf.tail(50) == ["a", "b", "c", "d", "e"]

    def test_clear_is_idempotent(self):
        """Clearing twice leaves the buffer empty and tail() empty."""
        buf = LineRingBuffer(10)
        buf.append("a\nb")
        buf.clear()
        buf.clear()
        assert len(buf) == 0
        assert buf.tail(5) == []
        assert buf.evicted == 2

    def test_clear_moves_marks_to_start(self):
        """A mark taken before clear() resolves to index 0 afterwards."""
        buf = LineRingBuffer(10)
        buf.append("a\nb\nc")
        mark = buf.mark()
        buf.clear()
        buf.append("x")
        assert mark.resolve(buf) == 0
        assert buf.since_mark(mark) == ["x"]

    def test_wait_for_append_wakes_on_new_line(self):
        """A waiter is released as soon as another thread appends."""
        buf = LineRingBuffer(10)
        seen = buf.appended
        timer = threading.Timer(0.05, buf.append, args=("hello",))
        timer.start()
        try:
            assert buf.wait_for_append(seen, timeout=2.0) is True
        finally:
            timer.cancel()
        assert buf.tail(1) == ["hello"]

    def test_wait_for_append_times_out(self):
        """With nothing appended the wait returns False after the timeout."""
        buf = LineRingBuffer(10)
        assert buf.wait_for_append(buf.appended, timeout=0.05) is False


class TestFence:
    """Tests for Fence.resolve."""

    def test_resolve_without_eviction(self):
        buf = LineRingBuffer(10)
        buf.append("a\nb")
        assert Fence(position=2, evicted=0).resolve(buf) == 2

    def test_resolve_never_negative(self):
        """A fence whose lines were all evicted resolves to 0."""
        buf = LineRingBuffer(2)
        fence = buf.mark()
        buf.append("a\nb\nc\nd\ne")
        assert fence.resolve(buf) == 0


class TestLineAssembler:
    """Tests for LineAssembler."""

    def test_holds_partial_line_until_newline(self):
        """Text after the last newline waits for the next chunk."""
        asm = LineAssembler()
        assert asm.feed("hel") == ""
        assert asm.pending == "hel"
        assert asm.feed("lo\nwor") == "hello\n"
        assert asm.pending == "wor"

    def test_flush_returns_pending(self):
        asm = LineAssembler()
        asm.feed("prompt# ")
        assert asm.flush() == "prompt# "
        assert asm.pending == ""

    def test_multiple_lines_in_one_chunk(self):
        asm = LineAssembler()
        assert asm.feed("a\nb\nc") == "a\nb\n"
        assert asm.feed("\n") == "c\n"

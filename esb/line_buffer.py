"""
Bounded line store shared by the session and every framed request.

The buffer is fed by exactly one writer (the session's transport subscriber)
and read by any number of waiting requests. A fence is the buffer length at a
moment in time; it drifts whenever lines are evicted from the head, so holders
re-base it with the buffer's cumulative ``evicted`` counter.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import List, Optional

DEFAULT_CAPACITY = 2000

_LINE_SPLIT = re.compile(r"\r?\n")


class LineRingBuffer:
    """Append-only list of decoded lines with bulk head eviction."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._lines: List[str] = []
        self._evicted = 0
        self._appended = 0
        self._cond = threading.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted(self) -> int:
        """Total lines ever dropped from the head, including by clear()."""
        with self._cond:
            return self._evicted

    @property
    def appended(self) -> int:
        """Total lines ever appended."""
        with self._cond:
            return self._appended

    def __len__(self) -> int:
        with self._cond:
            return len(self._lines)

    def append(self, text: str) -> int:
        """
        Split text into lines and append the non-empty ones.

        Returns the number of lines evicted from the head by this call.
        """
        new_lines = []
        for line in _LINE_SPLIT.split(text):
            line = line.rstrip()
            if line:
                new_lines.append(line)
        if not new_lines:
            return 0

        with self._cond:
            self._lines.extend(new_lines)
            self._appended += len(new_lines)
            excess = len(self._lines) - self._capacity
            if excess > 0:
                del self._lines[:excess]
                self._evicted += excess
            else:
                excess = 0
            self._cond.notify_all()
        return excess

    def fence(self) -> int:
        with self._cond:
            return len(self._lines)

    def mark(self) -> "Fence":
        """Take a fence together with the eviction count it is relative to."""
        with self._cond:
            return Fence(position=len(self._lines), evicted=self._evicted)

    def since(self, fence: int) -> List[str]:
        with self._cond:
            start = max(0, min(fence, len(self._lines)))
            return self._lines[start:]

    def since_mark(self, mark: "Fence") -> List[str]:
        """Lines appended after a mark, re-based for any eviction in between."""
        with self._cond:
            drift = self._evicted - mark.evicted
            start = max(0, mark.position - drift)
            return self._lines[start:]

    def tail(self, n: int) -> List[str]:
        if n <= 0:
            return []
        with self._cond:
            return self._lines[-n:]

    def snapshot(self) -> List[str]:
        with self._cond:
            return list(self._lines)

    def clear(self) -> None:
        """Empty the buffer in place."""
        with self._cond:
            self._evicted += len(self._lines)
            self._lines.clear()
            self._cond.notify_all()

    def wait_for_append(self, seen: int, timeout: Optional[float]) -> bool:
        """
        Block until more than ``seen`` lines have ever been appended.

        Returns True if new lines arrived, False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._appended > seen, timeout=timeout)


@dataclass(frozen=True)
class Fence:
    """A buffer position that survives head eviction."""

    position: int
    evicted: int

    def resolve(self, buffer: LineRingBuffer) -> int:
        """Current index of the same logical position, never negative."""
        drift = buffer.evicted - self.evicted
        return max(0, self.position - drift)


class LineAssembler:
    """
    Joins stream chunks into complete lines.

    Serial reads split lines arbitrarily; only text up to the last newline is
    released, the remainder waits for the next chunk.
    """

    def __init__(self):
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> str:
        data = self._pending + chunk
        cut = data.rfind("\n")
        if cut < 0:
            self._pending = data
            return ""
        self._pending = data[cut + 1:]
        return data[:cut + 1]

    def flush(self) -> str:
        data, self._pending = self._pending, ""
        return data

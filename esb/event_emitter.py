"""
JSONL event trail for bridge sessions.

Each connect, command, framed request and probe run appends one JSON line so
agents and other processes can follow a session without talking to it.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import portalocker

from .interfaces import FileSystemInterface, ClockInterface

SCHEMA_VERSION = 1


class EventEmitter:
    """Append-only JSONL emitter; sequence numbers continue across restarts."""

    def __init__(self, filesystem: FileSystemInterface, clock: ClockInterface, events_path: str) -> None:
        self._fs = filesystem
        self._clock = clock
        self._events_path = events_path
        self._session_id: Optional[str] = None

        self._fs.ensure_dir(os.path.dirname(events_path) or ".")
        self._sequence = self._last_sequence()

    @property
    def path(self) -> str:
        return self._events_path

    @property
    def sequence(self) -> int:
        return self._sequence

    def set_session_id(self, session_id: Optional[str]) -> None:
        self._session_id = session_id

    def emit(self, event_type: str, data: Optional[dict[str, Any]] = None, level: str = "info") -> dict[str, Any]:
        self._sequence += 1
        event = {
            "schema_version": SCHEMA_VERSION,
            "sequence": self._sequence,
            "timestamp": self._clock.now().isoformat(),
            "type": event_type,
            "level": level,
            "session_id": self._session_id,
            "data": data or {},
        }
        self._append(json.dumps(event, sort_keys=True))
        return event

    def _append(self, line: str) -> None:
        with open(self._events_path, "a", encoding="utf-8") as f:
            portalocker.lock(f, portalocker.LOCK_EX)
            try:
                f.write(line + "\n")
                f.flush()
            finally:
                portalocker.unlock(f)

    def _last_sequence(self) -> int:
        try:
            with open(self._events_path, "rb") as f:
                f.seek(0, os.SEEK_END)
                size = f.tell()
                if size == 0:
                    return 0
                f.seek(-min(size, 4096), os.SEEK_END)
                lines = f.read().splitlines()
        except FileNotFoundError:
            return 0

        for raw in reversed(lines):
            raw = raw.strip()
            if not raw:
                continue
            try:
                return int(json.loads(raw.decode("utf-8", errors="replace")).get("sequence", 0) or 0)
            except (ValueError, AttributeError):
                return 0
        return 0


def read_events(events_path: str, limit: int = 50) -> list[dict[str, Any]]:
    """Return the last ``limit`` well-formed events from a JSONL file."""
    try:
        with open(events_path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return []
    events = []
    for line in lines[-limit:] if limit > 0 else []:
        try:
            events.append(json.loads(line))
        except ValueError:
            continue
    return events

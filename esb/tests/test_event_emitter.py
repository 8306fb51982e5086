import json
from datetime import datetime

from esb.event_emitter import SCHEMA_VERSION, EventEmitter, read_events
from esb.implementations import RealClock, RealFileSystem
from esb.mocks import MockClock


def test_event_emitter_sequences_and_persists(tmp_path):
    events_path = tmp_path / "events.jsonl"
    emitter = EventEmitter(
        filesystem=RealFileSystem(),
        clock=RealClock(),
        events_path=str(events_path),
    )

    first = emitter.emit("connected", {"transport": "/dev/ttyUSB0"})
    second = emitter.emit("command_sent", {"command": "ls"})

    lines = events_path.read_text().splitlines()
    assert len(lines) == 2
    parsed_first = json.loads(lines[0])
    parsed_second = json.loads(lines[1])

    assert parsed_first == first
    assert parsed_first["sequence"] == 1
    assert parsed_first["type"] == "connected"
    assert parsed_first["data"]["transport"] == "/dev/ttyUSB0"
    assert parsed_second["sequence"] == 2
    assert second["type"] == "command_sent"

    # New emitter should continue sequence from file.
    emitter2 = EventEmitter(
        filesystem=RealFileSystem(),
        clock=RealClock(),
        events_path=str(events_path),
    )
    third = emitter2.emit("disconnected", {})
    assert third["sequence"] == 3


def test_event_fields(tmp_path):
    clock = MockClock(datetime(2025, 6, 1, 8, 0, 0))
    emitter = EventEmitter(RealFileSystem(), clock, str(tmp_path / "sub" / "events.jsonl"))
    emitter.set_session_id("console_2025-06-01_08-00-00")

    event = emitter.emit("framed_request", {"outcome": "timed_out"}, level="warn")

    assert event["schema_version"] == SCHEMA_VERSION
    assert event["timestamp"] == "2025-06-01T08:00:00"
    assert event["level"] == "warn"
    assert event["session_id"] == "console_2025-06-01_08-00-00"
    assert event["data"] == {"outcome": "timed_out"}


def test_read_events_skips_garbage(tmp_path):
    path = tmp_path / "events.jsonl"
    emitter = EventEmitter(RealFileSystem(), RealClock(), str(path))
    emitter.emit("connected")
    with open(path, "a", encoding="utf-8") as f:
        f.write("not json\n")
    emitter.emit("disconnected")

    events = read_events(str(path))
    assert [e["type"] for e in events] == ["connected", "disconnected"]
    assert read_events(str(path), limit=1)[0]["type"] == "disconnected"
    assert read_events(str(tmp_path / "missing.jsonl")) == []


def test_sequence_starts_at_zero_for_corrupt_tail(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text('{"sequence": 7}\n{broken\n')
    emitter = EventEmitter(RealFileSystem(), RealClock(), str(path))
    assert emitter.sequence == 0

"""Shared utilities for esbctl CLI commands."""

from __future__ import annotations

import json
import os
import time
from typing import Any, Optional

from esb.capture_log import CaptureLog
from esb.config import BridgeConfig
from esb.errors import describe_error
from esb.event_emitter import SCHEMA_VERSION, EventEmitter
from esb.implementations import RealClock, RealFileSystem
from esb.session import Session, connect, open_local


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


def _print(obj: Any, *, json_mode: bool) -> None:
    if json_mode:
        print(json.dumps(obj, indent=2, sort_keys=True, default=str))
    else:
        if isinstance(obj, str):
            print(obj)
        else:
            print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _result(payload: dict[str, Any], started: float) -> dict[str, Any]:
    """Stamp a JSON result with schema version, time and duration."""
    return {
        "schema_version": SCHEMA_VERSION,
        "timestamp": _now_iso(),
        "duration_ms": int((time.monotonic() - started) * 1000),
        **payload,
    }


def _print_error(exc: BaseException, *, json_mode: bool) -> int:
    """Report a failure as one line (or one JSON object) and return exit code 1."""
    if json_mode:
        _print({"error": describe_error(exc), "kind": type(exc).__name__}, json_mode=True)
    else:
        print(f"error: {describe_error(exc)}")
    return 1


def _sinks(config: BridgeConfig) -> tuple[Optional[CaptureLog], Optional[EventEmitter]]:
    """Build the optional capture log and event trail the profile asks for."""
    fs = RealFileSystem()
    clock = RealClock()
    mirror = CaptureLog(fs, clock, config.base_dir) if config.mirror else None
    events = None
    if config.events:
        events = EventEmitter(fs, clock, os.path.join(config.base_dir, "events.jsonl"))
    return mirror, events


def _open_session(config: BridgeConfig, *, local: bool = False) -> Session:
    """Connect to the configured port, or run on this host when there is none."""
    mirror, events = _sinks(config)
    if local or not config.port:
        return open_local(shell=config.shell, capacity=config.capacity, mirror=mirror, events=events)
    return connect(
        config.port,
        config.baud,
        username=config.username,
        password=config.password,
        lock=config.lock,
        disable_echo=config.disable_echo,
        capacity=config.capacity,
        shell=config.shell,
        mirror=mirror,
        events=events,
    )


def _parse_options(pairs: list[str]) -> dict[str, str]:
    """Turn ``key=value`` tokens into a dict; a bare key means ``true``."""
    options: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip().lstrip("-")
        if not key:
            raise ValueError(f"bad option {pair!r}; expected key=value")
        options[key] = value if sep else "true"
    return options

"""
Cross-process serial port claim.

Only one bridge process should drive a console at a time; two readers on the
same tty steal bytes from each other and corrupt every framed request.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import portalocker

from .errors import TransportConnectionError

log = logging.getLogger(__name__)


def default_lock_dir() -> str:
    return os.path.join(os.environ.get("ESB_RUN_DIR", "/tmp"), "esb-locks")


@dataclass
class PortOwner:
    """Information about the current port owner."""
    pid: int
    process_name: str
    started: datetime
    port: str


class PortLock:
    """
    File lock on ``<lock dir>/<port>.lock`` with an owner sidecar file.

    Usage:
        lock = PortLock("/dev/ttyUSB0")
        if lock.acquire():
            ...
            lock.release()
        else:
            print(f"Port in use by: {lock.get_owner()}")
    """

    def __init__(self, port: str, lock_dir: Optional[str] = None):
        self._port = port
        self._lock_dir = lock_dir or default_lock_dir()
        safe_name = port.strip("/").replace("/", "_").replace("\\", "_") or "port"
        self._lock_path = os.path.join(self._lock_dir, f"{safe_name}.lock")
        self._info_path = self._lock_path + ".info"
        self._handle = None
        Path(self._lock_dir).mkdir(parents=True, exist_ok=True)

    @property
    def port(self) -> str:
        return self._port

    @property
    def lock_path(self) -> str:
        return self._lock_path

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self, timeout: float = 0) -> bool:
        """Try to take the lock, retrying for up to ``timeout`` seconds."""
        if self._handle is not None:
            return True
        deadline = time.monotonic() + timeout
        while True:
            handle = open(self._lock_path, "a")
            try:
                portalocker.lock(handle, portalocker.LOCK_EX | portalocker.LOCK_NB)
            except portalocker.exceptions.LockException:
                handle.close()
                if time.monotonic() < deadline:
                    time.sleep(0.1)
                    continue
                owner = self.get_owner()
                if owner:
                    log.warning("Port %s locked by PID %d (%s) since %s",
                                self._port, owner.pid, owner.process_name, owner.started)
                else:
                    log.warning("Port %s locked by unknown process", self._port)
                return False

            self._handle = handle
            self._write_owner_info()
            log.debug("Acquired lock for %s", self._port)
            return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            portalocker.unlock(self._handle)
        finally:
            self._handle.close()
            self._handle = None
        try:
            os.unlink(self._info_path)
        except FileNotFoundError:
            pass
        log.debug("Released lock for %s", self._port)

    def get_owner(self) -> Optional[PortOwner]:
        try:
            with open(self._info_path, "r", encoding="utf-8") as f:
                info = json.load(f)
            return PortOwner(
                pid=int(info["pid"]),
                process_name=info.get("process_name", ""),
                started=datetime.fromisoformat(info["started"]),
                port=info.get("port", self._port),
            )
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def _write_owner_info(self) -> None:
        info = {
            "pid": os.getpid(),
            "process_name": " ".join(sys.argv[:3])[:50] or f"python:{os.getpid()}",
            "started": datetime.now().isoformat(),
            "port": self._port,
        }
        tmp_path = f"{self._info_path}.tmp.{os.getpid()}"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(info, f, indent=2)
        os.replace(tmp_path, self._info_path)

    def __enter__(self) -> "PortLock":
        if not self.acquire():
            owner = self.get_owner()
            who = f"PID {owner.pid} ({owner.process_name})" if owner else "another process"
            raise TransportConnectionError(f"{self._port} is in use by {who}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

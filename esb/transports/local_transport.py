"""
Local execution transport.

Runs each payload through a shell on the host and publishes the whole of its
stdout as one chunk. Nothing is echoed, so a framed request sees exactly one
marker pair.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Optional

from ..errors import TransportConnectionError
from ..interfaces import Transport

log = logging.getLogger(__name__)


class LocalTransport(Transport):
    """Transport that executes payloads as blocking subprocesses."""

    echoes = False

    def __init__(self, shell: str = "/bin/sh", timeout_s: Optional[float] = 120.0):
        super().__init__()
        self._shell = shell
        self._timeout_s = timeout_s
        self._open = False

    @property
    def name(self) -> str:
        return f"local:{self._shell}"

    def open(self) -> None:
        self._open = True

    def send(self, data: str) -> None:
        if not self._open:
            raise TransportConnectionError(f"{self.name} is not open")
        try:
            proc = subprocess.run(
                [self._shell],
                input=data,
                capture_output=True,
                text=True,
                timeout=self._timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            log.warning("Local command exceeded %ss, keeping partial output", self._timeout_s)
            self._publish(_as_text(e.stdout))
            return
        except OSError as e:
            raise TransportConnectionError(f"cannot run {self._shell}: {e}") from e

        if proc.returncode != 0:
            log.debug("Local command exited %d: %s", proc.returncode, proc.stderr.strip()[:200])
        self._publish(proc.stdout)

    def close(self) -> None:
        self._open = False

    def is_open(self) -> bool:
        return self._open


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data

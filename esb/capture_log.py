"""
Capture log: a file mirror of everything the console prints.

The log is a pure side-effect sink. A terminal can ``tail -f`` it to watch the
console while the session is driven programmatically; nothing read back from
it feeds the protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .interfaces import FileSystemInterface, ClockInterface
from .line_buffer import LineAssembler
from .log_sanitize import sanitize_line


@dataclass
class LogRotationConfig:
    """Configuration for capture log rotation.

    Attributes:
        max_size_bytes: Rotate once the current file reaches this size.
        max_files: Number of rotated files to keep (latest.log.1 .. .N).
    """
    max_size_bytes: int = 50_000_000
    max_files: int = 3


class CaptureLog:
    """
    Timestamped mirror of console output for one session.

    Format:
        [HH:MM:SS.mmm] <line>
        [HH:MM:SS.mmm] > <command sent>
    """

    def __init__(
        self,
        filesystem: FileSystemInterface,
        clock: ClockInterface,
        base_dir: str,
        rotation_config: Optional[LogRotationConfig] = None,
    ):
        self._fs = filesystem
        self._clock = clock
        self._base_dir = base_dir
        self._rotation = rotation_config or LogRotationConfig()
        self._assembler = LineAssembler()
        self._log_path = f"{base_dir}/latest.log"
        self._session_id = ""
        self._started = None
        self._lines_logged = 0
        self._commands_logged = 0
        self._bytes_written = 0

    @property
    def log_path(self) -> str:
        return self._log_path

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def lines_logged(self) -> int:
        return self._lines_logged

    @property
    def commands_logged(self) -> int:
        return self._commands_logged

    def start(self, port: str, baud: Optional[int] = None) -> None:
        """Begin a new capture, moving any previous log to latest.log.1."""
        self._started = self._clock.now()
        self._session_id = self._started.strftime("console_%Y-%m-%d_%H-%M-%S")
        self._lines_logged = 0
        self._commands_logged = 0
        self._bytes_written = 0
        self._assembler = LineAssembler()

        self._fs.ensure_dir(self._base_dir)
        if self._fs.file_exists(self._log_path):
            self._rotate()

        sep = "=" * 80
        header = (
            f"{sep}\n"
            f"SESSION: {self._session_id}\n"
            f"PORT: {port}\n"
            f"BAUD: {baud if baud is not None else '-'}\n"
            f"STARTED: {self._started.isoformat()}\n"
            f"{sep}\n\n"
        )
        self._fs.write_file(self._log_path, header)

    def write_chunk(self, chunk: str) -> None:
        """Record decoded console text; partial lines wait for their newline."""
        complete = self._assembler.feed(chunk)
        for line in complete.splitlines():
            if line.strip():
                self._write(f"[{self._stamp()}] {sanitize_line(line)}\n")
                self._lines_logged += 1

    def record_command(self, command: str) -> None:
        self._write(f"[{self._stamp()}] > {sanitize_line(command)}\n")
        self._commands_logged += 1

    def stop(self) -> None:
        pending = self._assembler.flush()
        if pending.strip():
            self._write(f"[{self._stamp()}] {sanitize_line(pending)}\n")
            self._lines_logged += 1
        sep = "=" * 80
        footer = (
            f"\n{sep}\n"
            f"SESSION ENDED: {self._clock.now().strftime('%Y-%m-%d_%H-%M-%S')}\n"
            f"LINES LOGGED: {self._lines_logged}\n"
            f"COMMANDS SENT: {self._commands_logged}\n"
            f"{sep}\n"
        )
        self._fs.write_file(self._log_path, footer, append=True)

    def _stamp(self) -> str:
        return self._clock.now().strftime("%H:%M:%S.%f")[:-3]

    def _write(self, text: str) -> None:
        self._fs.write_file(self._log_path, text, append=True)
        self._bytes_written += len(text.encode("utf-8"))
        if self._bytes_written >= self._rotation.max_size_bytes:
            self._rotate()

    def _rotate(self) -> None:
        """latest.log -> latest.log.1 -> latest.log.2 ..., oldest dropped."""
        for i in range(self._rotation.max_files - 1, 0, -1):
            src = f"{self._log_path}.{i}"
            if self._fs.file_exists(src):
                self._fs.rename_file(src, f"{self._log_path}.{i + 1}")
        if self._fs.file_exists(self._log_path):
            self._fs.rename_file(self._log_path, f"{self._log_path}.1")
        self._bytes_written = 0

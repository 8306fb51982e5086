"""
Real implementations of interfaces for production use.

These classes wrap actual system resources (serial ports, files, clocks)
and implement the abstract interfaces.
"""

from typing import Optional, List
from datetime import datetime
import os
import time

import serial
import serial.tools.list_ports

from .errors import TransportConnectionError
from .interfaces import (
    SerialPortInterface, FileSystemInterface, ClockInterface, PortInfo
)


class RealSerialPort(SerialPortInterface):
    """
    Real serial port implementation using pyserial.
    """

    def __init__(self):
        self._serial: Optional[serial.Serial] = None

    def open(self, port: str, baud: int, timeout: float = 0.1) -> None:
        try:
            self._serial = serial.Serial(port, baud, timeout=timeout)
        except (serial.SerialException, OSError, ValueError) as e:
            self._serial = None
            raise TransportConnectionError(f"cannot open {port} at {baud} baud: {e}") from e

    def close(self) -> None:
        if self._serial:
            try:
                self._serial.close()
            except (serial.SerialException, OSError):
                pass
            self._serial = None

    def is_open(self) -> bool:
        if self._serial is None:
            return False
        return bool(self._serial.is_open)

    def read_bytes(self, max_bytes: int) -> bytes:
        if not self._serial or max_bytes <= 0:
            return b""
        try:
            # Blocks up to the port timeout for the first byte, then drains what is waiting.
            size = min(max(1, self._serial.in_waiting), max_bytes)
            return self._serial.read(size)
        except (serial.SerialException, OSError) as e:
            raise TransportConnectionError(f"read failed on {self._serial.port}: {e}") from e

    def write(self, data: bytes) -> int:
        if not self._serial:
            raise TransportConnectionError("serial port is not open")
        try:
            written = self._serial.write(data)
            self._serial.flush()
            return written or 0
        except (serial.SerialException, OSError) as e:
            raise TransportConnectionError(f"write failed on {self._serial.port}: {e}") from e

    @staticmethod
    def list_ports() -> List[PortInfo]:
        ports = []
        for p in serial.tools.list_ports.comports():
            ports.append(PortInfo(
                device=p.device,
                description=p.description or "",
                hwid=p.hwid or "",
            ))
        return ports


class RealFileSystem(FileSystemInterface):
    """
    Real file system implementation.
    """

    def write_file(self, path: str, content: str, append: bool = False) -> None:
        parent = os.path.dirname(path)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)

        mode = "a" if append else "w"
        with open(path, mode, encoding="utf-8") as f:
            f.write(content)
            f.flush()

    def file_exists(self, path: str) -> bool:
        return os.path.exists(path)

    def ensure_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def rename_file(self, old_path: str, new_path: str) -> None:
        os.replace(old_path, new_path)


class RealClock(ClockInterface):
    """
    Real clock implementation using system time.
    """

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

"""
Interfaces for the Embedded Shell Bridge.

Abstract base classes that define contracts for all pluggable components.
This enables dependency injection and mock-based testing without hardware.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

ChunkCallback = Callable[[str], None]


class ConnectionState(Enum):
    """Session connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class PortInfo:
    """Information about a serial port."""
    device: str
    description: str
    hwid: str


@dataclass
class SerialConfig:
    """Serial port configuration, including the best-effort console login."""
    port: str
    baud: int = 115200
    timeout: float = 0.1
    username: str = "root"
    password: str = ""
    wake: bool = True
    disable_echo: bool = False


class SerialPortInterface(ABC):
    """
    Abstract interface for raw serial port operations.

    Implementations:
    - RealSerialPort: Wraps pyserial for actual hardware
    - MockSerialPort: For unit testing without hardware
    """

    @abstractmethod
    def open(self, port: str, baud: int, timeout: float = 0.1) -> None:
        """Open serial port. Raises TransportConnectionError on failure."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close serial port."""
        pass

    @abstractmethod
    def is_open(self) -> bool:
        """Check if port is currently open."""
        pass

    @abstractmethod
    def read_bytes(self, max_bytes: int) -> bytes:
        """Read up to max_bytes. Returns b'' if nothing arrived within the port timeout."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write data to serial. Returns bytes written."""
        pass

    @staticmethod
    @abstractmethod
    def list_ports() -> List[PortInfo]:
        """List available serial ports."""
        pass


class FileSystemInterface(ABC):
    """
    Abstract interface for file system operations.

    Implementations:
    - RealFileSystem: Actual file I/O
    - MockFileSystem: In-memory for testing
    """

    @abstractmethod
    def write_file(self, path: str, content: str, append: bool = False) -> None:
        """Write content to file. Creates parent dirs if needed."""
        pass

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if file exists."""
        pass

    @abstractmethod
    def ensure_dir(self, path: str) -> None:
        """Create directory and parents if they don't exist."""
        pass

    @abstractmethod
    def rename_file(self, old_path: str, new_path: str) -> None:
        """Rename a file, replacing the destination."""
        pass


class ClockInterface(ABC):
    """
    Abstract interface for time operations.

    Enables deterministic testing of time-dependent logic.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get current datetime."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from a monotonic source, for deadlines."""
        pass

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Sleep for specified duration."""
        pass


class Transport(ABC):
    """
    A command channel that sends text and pushes incoming text to subscribers.

    Implementations:
    - SerialTransport: hardware byte stream, echoes what it receives
    - LocalTransport: runs the payload as a local subprocess
    - MockTransport: scripted device for tests
    """

    #: Whether the peer echoes transmitted text back into the stream.
    echoes: bool = True
    #: Line rate, for transports that have one.
    baud: Optional[int] = None

    def __init__(self):
        self._subscribers: List[ChunkCallback] = []
        self._sub_lock = threading.Lock()

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable address of the channel."""
        pass

    @abstractmethod
    def open(self) -> None:
        """Open the channel. Raises TransportConnectionError."""
        pass

    @abstractmethod
    def send(self, data: str) -> None:
        """Transmit data verbatim. Raises TransportConnectionError."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        pass

    @abstractmethod
    def is_open(self) -> bool:
        pass

    def subscribe(self, callback: ChunkCallback) -> None:
        with self._sub_lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: ChunkCallback) -> None:
        with self._sub_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _publish(self, chunk: str) -> None:
        if not chunk:
            return
        with self._sub_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(chunk)


class TextGenerator(ABC):
    """Opaque text-generation service (a language model client)."""

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """Return free text for the prompt."""
        pass

"""
Mock implementations for testing.

These classes implement the abstract interfaces with in-memory behavior
suitable for unit testing without hardware.
"""

import re
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

from .errors import TransportConnectionError
from .interfaces import (
    ClockInterface, FileSystemInterface, PortInfo, SerialPortInterface,
    TextGenerator, Transport,
)

Responder = Callable[[str], Optional[str]]

_HEREDOC = re.compile(
    r"\A\S+ <<'ESB_EOF_(?P<id>\w+)'\n"
    r"echo (?P<start>\S+)\n"
    r"(?P<body>.*)\n"
    r"echo (?P<end>\S+)\n"
    r"ESB_EOF_(?P=id)\n\Z",
    re.DOTALL,
)


class MockSerialPort(SerialPortInterface):
    """
    Mock serial port for testing.

    Provides a queue-based simulation of serial communication.
    Test code can inject data with inject_line() and read sent data with get_sent().
    """

    def __init__(self):
        self._is_open = False
        self._port = ""
        self._baud = 0
        self._rx_buffer: deque = deque()
        self._tx_buffer: List[bytes] = []
        self._fail_on_open = False
        self._fail_on_write = False
        self._fail_on_read = False
        self._available_ports: List[PortInfo] = []
        self._on_write: Optional[Callable[[bytes], None]] = None

    def open(self, port: str, baud: int, timeout: float = 0.1) -> None:
        if self._fail_on_open:
            raise TransportConnectionError(f"could not open {port}")
        self._port = port
        self._baud = baud
        self._is_open = True

    def close(self) -> None:
        self._is_open = False

    def is_open(self) -> bool:
        return self._is_open

    def read_bytes(self, max_bytes: int) -> bytes:
        if not self._is_open:
            return b""
        if self._fail_on_read:
            self._fail_on_read = False
            raise TransportConnectionError(f"{self._port} disappeared")
        if not self._rx_buffer:
            return b""
        data = self._rx_buffer.popleft()
        if len(data) > max_bytes:
            self._rx_buffer.appendleft(data[max_bytes:])
            data = data[:max_bytes]
        return data

    def write(self, data: bytes) -> int:
        if self._fail_on_write:
            raise TransportConnectionError(f"write to {self._port} failed")
        if not self._is_open:
            raise TransportConnectionError(f"{self._port} is not open")
        self._tx_buffer.append(data)
        if self._on_write is not None:
            self._on_write(data)
        return len(data)

    @staticmethod
    def list_ports() -> List[PortInfo]:
        return []

    # Test helper methods

    @property
    def port(self) -> str:
        return self._port

    @property
    def baud(self) -> int:
        return self._baud

    def inject_line(self, line: str) -> None:
        """Inject a line into the receive buffer (for testing)."""
        self._rx_buffer.append((line + "\n").encode())

    def inject_bytes(self, data: bytes) -> None:
        """Inject raw bytes into the receive buffer."""
        self._rx_buffer.append(data)

    def get_sent(self) -> List[bytes]:
        """Get all data sent via write() (for testing)."""
        return self._tx_buffer.copy()

    def get_sent_text(self) -> str:
        return b"".join(self._tx_buffer).decode("utf-8", errors="replace")

    def clear_sent(self) -> None:
        """Clear the sent buffer."""
        self._tx_buffer.clear()

    def set_fail_on_open(self, fail: bool) -> None:
        """Make open() fail (for testing error handling)."""
        self._fail_on_open = fail

    def set_fail_on_write(self, fail: bool) -> None:
        self._fail_on_write = fail

    def fail_next_read(self) -> None:
        """Make the next read_bytes() raise, as an unplugged adapter would."""
        self._fail_on_read = True

    def set_on_write(self, callback: Optional[Callable[[bytes], None]]) -> None:
        """Call back on every write, e.g. to echo or answer like a device."""
        self._on_write = callback

    def set_available_ports(self, ports: List[PortInfo]) -> None:
        """Set the list returned by list_ports()."""
        self._available_ports = ports


def heredoc_responder(run: Callable[[str], str]) -> Responder:
    """
    Build a responder that behaves like a shell executing framed scripts.

    ``run`` receives the script body (or a plain command line) and returns its
    output. Framed scripts get their start and end tokens printed around it.
    """

    def respond(data: str) -> Optional[str]:
        match = _HEREDOC.match(data)
        if match is None:
            out = run(data.rstrip("\n"))
            return f"{out}\n" if out else None
        out = run(match.group("body"))
        lines = [match.group("start")]
        if out:
            lines.append(out.rstrip("\n"))
        lines.append(match.group("end"))
        return "\n".join(lines) + "\n"

    return respond


def fixed_output(output: str) -> Responder:
    """Responder whose every framed script prints the same text."""
    return heredoc_responder(lambda _body: output)


class MockTransport(Transport):
    """
    Scripted device for framing tests.

    ``echo`` controls whether sent text is pushed straight back, the way a
    serial tty does. ``declared_echo`` is what the transport advertises to
    framed requests; it defaults to the truth but can lie to reproduce
    mis-declared transports. The responder's output is delivered after
    ``delay_s`` from a timer thread, or synchronously when the delay is 0.
    """

    def __init__(
        self,
        responder: Optional[Responder] = None,
        *,
        echo: bool = True,
        declared_echo: Optional[bool] = None,
        delay_s: float = 0.0,
        name: str = "mock",
    ):
        super().__init__()
        self._responder = responder
        self._echo = echo
        self.echoes = echo if declared_echo is None else declared_echo
        self._delay_s = delay_s
        self._name = name
        self._open = False
        self._fail_on_open = False
        self._fail_on_send = False
        self._sent: List[str] = []
        self._timers: List[threading.Timer] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def open(self) -> None:
        if self._fail_on_open:
            raise TransportConnectionError(f"could not open {self._name}")
        self._open = True

    def send(self, data: str) -> None:
        if self._fail_on_send:
            raise TransportConnectionError(f"write to {self._name} failed")
        if not self._open:
            raise TransportConnectionError(f"{self._name} is not open")
        with self._lock:
            self._sent.append(data)
        if self._echo:
            self._publish(data)
        if self._responder is None:
            return
        output = self._responder(data)
        if not output:
            return
        if self._delay_s <= 0:
            self._publish(output)
            return
        timer = threading.Timer(self._delay_s, self._deliver, args=(output,))
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()

    def close(self) -> None:
        self._open = False
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    def is_open(self) -> bool:
        return self._open

    def _deliver(self, output: str) -> None:
        if self._open:
            self._publish(output)

    # Test helper methods

    def emit(self, text: str) -> None:
        """Push unsolicited device output, e.g. kernel chatter."""
        self._publish(text)

    def get_sent(self) -> List[str]:
        with self._lock:
            return self._sent.copy()

    def set_fail_on_open(self, fail: bool) -> None:
        self._fail_on_open = fail

    def set_fail_on_send(self, fail: bool) -> None:
        self._fail_on_send = fail

    def drop(self) -> None:
        """Simulate the link going away without close()."""
        self._open = False


class MockFileSystem(FileSystemInterface):
    """
    In-memory file system for testing.

    All file operations are performed in memory without touching disk.
    """

    def __init__(self):
        self._files: Dict[str, str] = {}
        self._dirs: set = set()

    def read_file(self, path: str) -> str:
        if path not in self._files:
            raise FileNotFoundError(f"No such file: {path}")
        return self._files[path]

    def write_file(self, path: str, content: str, append: bool = False) -> None:
        if append and path in self._files:
            self._files[path] += content
        else:
            self._files[path] = content

    def file_exists(self, path: str) -> bool:
        return path in self._files

    def ensure_dir(self, path: str) -> None:
        self._dirs.add(path)

    def rename_file(self, old_path: str, new_path: str) -> None:
        if old_path not in self._files:
            raise FileNotFoundError(f"No such file: {old_path}")
        self._files[new_path] = self._files.pop(old_path)

    # Test helper methods

    def get_all_files(self) -> Dict[str, str]:
        """Get dictionary of all files and contents."""
        return self._files.copy()

    def has_dir(self, path: str) -> bool:
        return path in self._dirs


class MockClock(ClockInterface):
    """
    Controllable clock for testing.

    Time can be advanced manually for deterministic testing of
    time-dependent behavior.
    """

    def __init__(self, start_time: Optional[datetime] = None):
        self._current_time = start_time or datetime(2025, 1, 1, 0, 0, 0)
        self._monotonic = 0.0
        self._sleep_calls: List[float] = []

    def now(self) -> datetime:
        return self._current_time

    def monotonic(self) -> float:
        return self._monotonic

    def sleep(self, seconds: float) -> None:
        self._sleep_calls.append(seconds)
        # Don't actually sleep, just record the call

    # Test helper methods

    def advance(self, seconds: float) -> None:
        """Advance time by specified seconds."""
        self._current_time += timedelta(seconds=seconds)
        self._monotonic += seconds

    def get_sleep_calls(self) -> List[float]:
        """Get list of all sleep() calls made."""
        return self._sleep_calls.copy()


class MockTextGenerator(TextGenerator):
    """
    Canned language model: returns queued replies in order, then the default.
    """

    def __init__(self, replies: Optional[List[Union[str, Exception]]] = None, default: str = ""):
        self._replies: deque = deque(replies or [])
        self._default = default
        self.prompts: List[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self._replies.popleft() if self._replies else self._default
        if isinstance(reply, Exception):
            raise reply
        return reply

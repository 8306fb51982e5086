"""
Session: one open transport, its line buffer, and the request lock.

A Session is an ordinary value owned by the caller. Nothing is global: probes
and commands receive the session they should use. The transport's subscriber
is the only writer of the buffer; framed requests only read it.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import List, Optional

from .capture_log import CaptureLog
from .errors import (
    AmbiguousPayload, FramedTimeout, NotConnectedError, TransportConnectionError,
)
from .event_emitter import EventEmitter
from .framing import (
    DEFAULT_POLL_INTERVAL_S, DEFAULT_TIMEOUT_MS, FramedRequest, FramedResult, Scorer,
)
from .interfaces import ClockInterface, ConnectionState, SerialConfig, SerialPortInterface, Transport
from .line_buffer import DEFAULT_CAPACITY, Fence, LineAssembler, LineRingBuffer
from .log_sanitize import sanitize_console_text
from .port_lock import PortLock

log = logging.getLogger(__name__)


class Session:
    """
    Handle for one connected device.

    With ``exclusive`` (the default) framed requests are serialized, so two
    probes started back to back queue instead of interleaving on the wire.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        capacity: int = DEFAULT_CAPACITY,
        buffer: Optional[LineRingBuffer] = None,
        shell: str = "bash",
        exclusive: bool = True,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        clock: Optional[ClockInterface] = None,
        mirror: Optional[CaptureLog] = None,
        events: Optional[EventEmitter] = None,
        port_lock: Optional[PortLock] = None,
        sanitize: bool = True,
    ):
        self._transport = transport
        self._buffer = buffer if buffer is not None else LineRingBuffer(capacity)
        self._shell = shell
        self._exclusive = exclusive
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._mirror = mirror
        self._events = events
        self._port_lock = port_lock
        self._sanitize = sanitize
        self._assembler = LineAssembler()
        self._inflight = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._last_command: Fence = Fence(position=0, evicted=0)

    # -- properties ---------------------------------------------------------

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def buffer(self) -> LineRingBuffer:
        return self._buffer

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._transport.is_open()

    @property
    def exclusive(self) -> bool:
        return self._exclusive

    @property
    def shell(self) -> str:
        return self._shell

    @property
    def events(self) -> Optional[EventEmitter]:
        return self._events

    @property
    def last_command_fence(self) -> int:
        """Buffer index of the last ``send()``, re-based for eviction."""
        return self._last_command.resolve(self._buffer)

    # -- lifecycle ----------------------------------------------------------

    def open(self) -> "Session":
        if self.is_open:
            return self
        self._state = ConnectionState.CONNECTING
        if self._port_lock is not None and not self._port_lock.held:
            try:
                self._port_lock.__enter__()
            except TransportConnectionError:
                self._state = ConnectionState.ERROR
                raise

        self._transport.subscribe(self._on_chunk)
        try:
            self._transport.open()
        except TransportConnectionError:
            self._transport.unsubscribe(self._on_chunk)
            self._release_lock()
            self._state = ConnectionState.ERROR
            raise

        if self._mirror is not None:
            self._mirror.start(self._transport.name, self._transport.baud)
        if self._events is not None:
            self._events.set_session_id(self._mirror.session_id if self._mirror else None)
            self._events.emit("connected", {"transport": self._transport.name, "baud": self._transport.baud})
        self._state = ConnectionState.CONNECTED
        log.info("Session open on %s", self._transport.name)
        return self

    def disconnect(self) -> None:
        """Close the transport. Safe to call repeatedly; the buffer is kept."""
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._transport.unsubscribe(self._on_chunk)
        self._transport.close()
        pending = self._assembler.flush()
        if pending:
            self._append(pending)
        if self._mirror is not None:
            self._mirror.stop()
        self._release_lock()
        if self._events is not None:
            self._events.emit("disconnected", {"transport": self._transport.name})
        self._state = ConnectionState.DISCONNECTED
        log.info("Session closed on %s", self._transport.name)

    def __enter__(self) -> "Session":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # -- operations ---------------------------------------------------------

    def send(self, text: str) -> None:
        """Transmit a raw line; a trailing newline is added if missing."""
        self._require_open()
        if not text.endswith("\n"):
            text += "\n"
        self._last_command = self._buffer.mark()
        if self._mirror is not None:
            self._mirror.record_command(text.rstrip("\n"))
        self._transmit(text)
        if self._events is not None:
            self._events.emit("command_sent", {"command": text.rstrip("\n")})

    def run_framed(self, script: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> str:
        """Run a script on the device and return exactly its output."""
        return self.execute(script, timeout_ms).payload

    def execute(
        self,
        script: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        *,
        scorer: Optional[Scorer] = None,
        min_score: int = 0,
    ) -> FramedResult:
        """Like run_framed, but returns the payload with its selection details."""
        self._require_open()
        guard = self._inflight if self._exclusive else contextlib.nullcontext()
        with guard:
            self._require_open()
            request = FramedRequest(
                self._transport,
                self._buffer,
                script,
                timeout_ms=timeout_ms,
                poll_interval_s=self._poll_interval_s,
                shell=self._shell,
                scorer=scorer,
                min_score=min_score,
                clock=self._clock,
            )
            try:
                result = request.run()
            except TransportConnectionError as e:
                self._fail(e)
                raise
            except (FramedTimeout, AmbiguousPayload) as e:
                if self._events is not None:
                    self._events.emit(
                        "framed_request",
                        {"marker": request.marker.id, "outcome": request.state.value, "error": str(e)},
                        level="warn",
                    )
                raise

        if self._events is not None:
            self._events.emit("framed_request", {"outcome": "matched", **result.meta()})
        return result

    def tail(self, n: int) -> List[str]:
        return self._buffer.tail(n)

    def clear(self) -> None:
        self._buffer.clear()

    def logs_since_last_command(self) -> List[str]:
        lines = self._buffer.snapshot()
        start = self.last_command_fence
        if start > len(lines):
            start = 0
        return lines[start:]

    def suppress_echo(self) -> None:
        """Ask the remote tty to stop echoing; later requests expect one marker pair."""
        self.send("stty -echo")
        self._transport.echoes = False
        log.info("Requested echo suppression on %s", self._transport.name)

    # -- internals ----------------------------------------------------------

    def _on_chunk(self, chunk: str) -> None:
        if self._mirror is not None:
            self._mirror.write_chunk(chunk)
        complete = self._assembler.feed(chunk)
        if complete:
            self._append(complete)

    def _append(self, text: str) -> None:
        if self._sanitize:
            text = sanitize_console_text(text)
        self._buffer.append(text)

    def _transmit(self, text: str) -> None:
        try:
            self._transport.send(text)
        except TransportConnectionError as e:
            self._fail(e)
            raise

    def _require_open(self) -> None:
        if self._state is ConnectionState.ERROR:
            raise TransportConnectionError(f"{self._transport.name} failed; reconnect to continue")
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError("no open session; connect first")
        if not self._transport.is_open():
            self._fail(TransportConnectionError(f"{self._transport.name} is no longer available"))
            raise TransportConnectionError(f"{self._transport.name} is no longer available")

    def _fail(self, exc: TransportConnectionError) -> None:
        if self._state is not ConnectionState.ERROR:
            log.error("Session on %s failed: %s", self._transport.name, exc)
            if self._events is not None:
                self._events.emit("transport_error", {"error": str(exc)}, level="error")
        self._state = ConnectionState.ERROR

    def _release_lock(self) -> None:
        if self._port_lock is not None:
            self._port_lock.release()


def connect(
    address: str,
    baud: int = 115200,
    *,
    username: str = "root",
    password: str = "",
    lock: bool = True,
    disable_echo: bool = False,
    wake: bool = True,
    capacity: int = DEFAULT_CAPACITY,
    shell: str = "bash",
    mirror: Optional[CaptureLog] = None,
    events: Optional[EventEmitter] = None,
    port: Optional[SerialPortInterface] = None,
) -> Session:
    """
    Open a serial console and return a connected Session.

    Raises TransportConnectionError if the port cannot be opened or is locked
    by another process.
    """
    from .transports import SerialTransport

    config = SerialConfig(
        port=address,
        baud=baud,
        username=username,
        password=password,
        wake=wake,
        disable_echo=disable_echo,
    )
    session = Session(
        SerialTransport(config, port=port),
        capacity=capacity,
        shell=shell,
        mirror=mirror,
        events=events,
        port_lock=PortLock(address) if lock else None,
    )
    session.open()
    if disable_echo:
        session.suppress_echo()
    return session


def open_local(*, shell: str = "bash", timeout_s: Optional[float] = 120.0, **kwargs) -> Session:
    """A Session that runs scripts on this host instead of a device."""
    from .transports import LocalTransport

    return Session(LocalTransport(timeout_s=timeout_s), shell=shell, **kwargs).open()

"""
Serial console transport.

A reader thread drains the port, decodes bytes incrementally as UTF-8 and
pushes text to subscribers. The thread also answers console login prompts
with the configured credentials; this is a heuristic, a failed login only
shows up later as a framed-request timeout.
"""

from __future__ import annotations

import codecs
import logging
import threading
from typing import Optional

from ..errors import TransportConnectionError
from ..interfaces import SerialConfig, SerialPortInterface, Transport

log = logging.getLogger(__name__)

READ_SIZE = 4096
LOGIN_WINDOW = 64


class SerialTransport(Transport):
    """Transport over a serial console that echoes what it receives."""

    echoes = True

    def __init__(
        self,
        config: SerialConfig,
        port: Optional[SerialPortInterface] = None,
        idle_s: float = 0.01,
    ):
        super().__init__()
        if port is None:
            from ..implementations import RealSerialPort
            port = RealSerialPort()
        self._config = config
        self._port = port
        self._idle_s = idle_s
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._write_lock = threading.Lock()
        self._failure: Optional[TransportConnectionError] = None
        self._login_window = ""
        self.login_responses = 0

    @property
    def name(self) -> str:
        return self._config.port

    @property
    def baud(self) -> int:
        return self._config.baud

    @property
    def config(self) -> SerialConfig:
        return self._config

    @property
    def failure(self) -> Optional[TransportConnectionError]:
        return self._failure

    def open(self) -> None:
        if self._port.is_open():
            return
        self._port.open(self._config.port, self._config.baud, self._config.timeout)
        self._failure = None
        self._decoder.reset()
        self._stop.clear()
        self._reader = threading.Thread(
            target=self._read_loop, name=f"esb-reader:{self._config.port}", daemon=True
        )
        self._reader.start()
        log.info("Opened %s at %d baud", self._config.port, self._config.baud)
        if self._config.wake:
            self._write("\n")

    def send(self, data: str) -> None:
        if self._failure is not None:
            raise TransportConnectionError(f"{self.name} failed earlier: {self._failure}")
        if not self._port.is_open():
            raise TransportConnectionError(f"{self.name} is not open")
        self._write(data)

    def close(self) -> None:
        self._stop.set()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self._reader = None
        if self._port.is_open():
            self._port.close()
            log.info("Closed %s", self._config.port)
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._publish(tail)

    def is_open(self) -> bool:
        return self._port.is_open() and self._failure is None

    def _write(self, text: str) -> None:
        with self._write_lock:
            try:
                self._port.write(text.encode("utf-8"))
            except TransportConnectionError as e:
                self._failure = e
                raise

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                data = self._port.read_bytes(READ_SIZE)
            except TransportConnectionError as e:
                log.error("Reader stopped on %s: %s", self.name, e)
                self._failure = e
                return
            if not data:
                self._stop.wait(self._idle_s)
                continue
            text = self._decoder.decode(data)
            if not text:
                continue
            self._publish(text)
            self._answer_login(text)

    def _answer_login(self, text: str) -> None:
        window = (self._login_window + text)[-LOGIN_WINDOW:]
        prompt = window.rstrip().lower()
        if prompt.endswith("password:"):
            self._login_window = ""
            log.debug("Answering password prompt on %s", self.name)
            self._respond(self._config.password)
        elif prompt.endswith("login:"):
            self._login_window = ""
            log.debug("Answering login prompt on %s as %s", self.name, self._config.username)
            self._respond(self._config.username)
        else:
            self._login_window = window

    def _respond(self, text: str) -> None:
        try:
            self._write(text + "\n")
            self.login_responses += 1
        except TransportConnectionError as e:
            log.error("Login response failed on %s: %s", self.name, e)

"""Interactive console loop for esbctl (``esbctl shell``)."""

from __future__ import annotations

import shlex
import sys
import time
from typing import Any, Callable, Optional, TextIO

from esb.assist import parse_summarize_args, prompt, summarize
from esb.config import BridgeConfig
from esb.errors import BridgeError, NotConnectedError
from esb.interfaces import TextGenerator
from esb.probes import get_probe, run_probe
from esb.session import Session, connect

from esb.cli.helpers import _parse_options, _print, _print_error, _result, _sinks


HELP = """Commands:
  connect <port> [baud]     open a serial console (closes the current one)
  send <cmd>                send a raw line
  run <script>              run a framed script and print its output
  tail [n]                  show the last n captured lines (default 20)
  clear                     empty the capture buffer
  summarize [n] [query]     ask the text generator about captured lines
  prompt <request>          turn a request into a command, run it, summarize
  probe <name> [k=v ...]    run a diagnostic probe
  echo off                  ask the remote tty to stop echoing
  disconnect                close the console
  quit                      leave"""

Connector = Callable[..., Session]


class InteractiveShell:
    """
    Line-oriented front end over one Session at a time.

    ``connector`` opens the session for ``connect``; tests pass one that
    returns a Session over a mock transport.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        json_mode: bool = False,
        generator: Optional[TextGenerator] = None,
        connector: Optional[Connector] = None,
    ):
        self._config = config
        self._json = json_mode
        self._generator = generator
        self._connector = connector or connect
        self.session: Optional[Session] = None

    # -- helpers ------------------------------------------------------------

    def _emit(self, payload: dict[str, Any], text: str, started: float) -> None:
        if self._json:
            _print(_result(payload, started), json_mode=True)
        else:
            print(text)

    def _need_session(self) -> Session:
        if self.session is None:
            raise NotConnectedError("no open session; use 'connect <port>' first")
        return self.session

    # -- commands -----------------------------------------------------------

    def do_connect(self, args: list[str]) -> None:
        if not args:
            raise ValueError("usage: connect <port> [baud]")
        port = args[0]
        baud = int(args[1]) if len(args) > 1 else self._config.baud
        self.do_disconnect([], quiet=True)
        mirror, events = _sinks(self._config)
        started = time.monotonic()
        self.session = self._connector(
            port,
            baud,
            username=self._config.username,
            password=self._config.password,
            lock=self._config.lock,
            disable_echo=self._config.disable_echo,
            capacity=self._config.capacity,
            shell=self._config.shell,
            mirror=mirror,
            events=events,
        )
        self._emit({"connected": port, "baud": baud}, f"Connected to {port} at {baud} baud.", started)

    def do_disconnect(self, args: list[str], quiet: bool = False) -> None:
        if self.session is None:
            if not quiet:
                print("Not connected.")
            return
        name = self.session.transport.name
        self.session.disconnect()
        self.session = None
        if not quiet:
            self._emit({"disconnected": name}, f"Disconnected from {name}.", time.monotonic())

    def do_send(self, rest: str) -> None:
        if not rest:
            raise ValueError("usage: send <cmd>")
        self._need_session().send(rest)
        self._emit({"sent": rest}, f"> {rest}", time.monotonic())

    def do_run(self, rest: str) -> None:
        if not rest:
            raise ValueError("usage: run <script>")
        started = time.monotonic()
        result = self._need_session().execute(rest, self._config.run_timeout_ms)
        self._emit({"output": result.payload, "framing": result.meta()}, result.payload, started)

    def do_tail(self, args: list[str]) -> None:
        n = int(args[0]) if args else 20
        lines = self._need_session().tail(n)
        self._emit({"lines": lines}, "\n".join(lines) if lines else "(no output captured)", time.monotonic())

    def do_clear(self, args: list[str]) -> None:
        self._need_session().clear()
        self._emit({"cleared": True}, "Buffer cleared.", time.monotonic())

    def do_summarize(self, rest: str) -> None:
        session = self._need_session()
        if self._generator is None:
            raise BridgeError("no text generator configured")
        started = time.monotonic()
        start, query = parse_summarize_args(rest)
        result = summarize(session, self._generator, query=query, start=start)
        self._emit(
            {"summary": result.text, "lines": result.line_count, "start": result.start},
            result.text,
            started,
        )

    def do_prompt(self, rest: str) -> None:
        if not rest:
            raise ValueError("usage: prompt <request>")
        started = time.monotonic()
        result = prompt(self._need_session(), rest, self._generator)
        text = f"$ {result.command}"
        if result.description:
            text += f"    # {result.description}"
        body = result.summary or "\n".join(result.lines) or "(no output captured)"
        self._emit(
            {
                "request": result.request,
                "command": result.command,
                "description": result.description,
                "lines": result.lines,
                "summary": result.summary,
            },
            f"{text}\n{body}",
            started,
        )

    def do_probe(self, args: list[str]) -> None:
        if not args:
            raise ValueError("usage: probe <name> [key=value ...]")
        started = time.monotonic()
        session = self._need_session()
        probe = get_probe(args[0])
        options = probe.normalize_options(_parse_options(args[1:]))
        report = run_probe(probe.name, options, session, timeout_ms=self._config.timeout_for(probe.name))
        text = report.to_summary() if options["summary"] else report.to_markdown()
        self._emit(report.to_dict(), text, started)

    def do_echo(self, args: list[str]) -> None:
        if args != ["off"]:
            raise ValueError("usage: echo off")
        self._need_session().suppress_echo()
        self._emit({"echo": False}, "Echo suppression requested.", time.monotonic())

    # -- loop ---------------------------------------------------------------

    def handle(self, line: str) -> bool:
        """Run one command line. Returns False when the loop should stop."""
        line = line.strip()
        if not line or line.startswith("#"):
            return True
        command, _, rest = line.partition(" ")
        command = command.lower()
        rest = rest.strip()
        if command in ("quit", "exit"):
            return False
        if command == "help":
            print(HELP)
            return True

        try:
            if command in ("send", "run", "summarize", "prompt"):
                getattr(self, f"do_{command}")(rest)
            elif command in ("connect", "disconnect", "tail", "clear", "probe", "echo"):
                getattr(self, f"do_{command}")(shlex.split(rest))
            else:
                raise ValueError(f"unknown command {command!r}; type 'help'")
        except (BridgeError, ValueError, KeyError, OSError) as e:
            _print_error(e, json_mode=self._json)
        return True

    def close(self) -> None:
        self.do_disconnect([], quiet=True)

    def loop(self, stream: TextIO, interactive: bool = False) -> int:
        try:
            while True:
                if interactive:
                    sys.stdout.write("esb> ")
                    sys.stdout.flush()
                line = stream.readline()
                if not line:
                    break
                if not self.handle(line):
                    break
        except KeyboardInterrupt:
            print()
        finally:
            self.close()
        return 0


def cmd_shell(
    *,
    config: BridgeConfig,
    json_mode: bool,
    generator: Optional[TextGenerator] = None,
    stream: Optional[TextIO] = None,
) -> int:
    """Run the interactive loop; connects first when a port is configured."""
    shell = InteractiveShell(config, json_mode=json_mode, generator=generator)
    stream = stream or sys.stdin
    if config.port:
        shell.handle(f"connect {shlex.quote(config.port)} {config.baud}")
    return shell.loop(stream, interactive=stream.isatty())

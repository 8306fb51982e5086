"""
esbctl: command-line front end for the Embedded Shell Bridge.

Main commands:
- ports: list serial ports
- probes / probe: list and run diagnostic probes
- run: run a framed script and print exactly its output
- send: send a raw line to the console
- shell: interactive console with summarize/prompt assistance

Global flags (--json, --config, --port, -v) may appear anywhere on the line.
Can also be imported and called programmatically via main(argv).
"""

from __future__ import annotations

from esb.config import load_config

from esb.cli.helpers import (
    _open_session,
    _parse_options,
    _print,
    _print_error,
)

from esb.cli.device_cmds import (
    cmd_ports,
    cmd_probes,
    cmd_probe,
    cmd_run,
    cmd_send,
)
from esb.cli.shell_cmds import InteractiveShell, cmd_shell
from esb.cli.dispatch import main

__all__ = [
    "main",
    "load_config",
    "cmd_ports",
    "cmd_probes",
    "cmd_probe",
    "cmd_run",
    "cmd_send",
    "cmd_shell",
    "InteractiveShell",
    "_open_session",
    "_parse_options",
    "_print",
    "_print_error",
]

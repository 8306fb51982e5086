"""Argument parser for esbctl CLI."""

from __future__ import annotations

import argparse

from esb import __version__

_VALUE_FLAGS = ("--config", "--port")


def _preprocess_argv(argv: list[str]) -> list[str]:
    """Reorder global flags (--json, --config, --port) before the subcommand.

    argparse doesn't accept parent-parser flags after a subcommand, so they
    are lifted to the front wherever they appear. ``-v`` is lifted too.

    Args:
        argv: Raw argument list (without ``sys.argv[0]``).

    Returns:
        Reordered argument list with global flags moved to the front.
    """
    global_args: list[str] = []
    rest: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            rest.extend(argv[i:])
            break
        if token in ("--json", "-v", "--verbose"):
            global_args.append(token)
            i += 1
            continue
        if any(token.startswith(flag + "=") for flag in _VALUE_FLAGS):
            global_args.append(token)
            i += 1
            continue
        if token in _VALUE_FLAGS:
            # Needs a value.
            if i + 1 >= len(argv):
                rest.append(token)
                i += 1
                continue
            global_args.extend([token, argv[i + 1]])
            i += 2
            continue
        rest.append(token)
        i += 1

    return global_args + rest


def _build_parser() -> argparse.ArgumentParser:
    """Build the full argparse parser with all subcommands."""
    parser = argparse.ArgumentParser(prog="esbctl", description="Embedded shell bridge CLI")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__} (embedded-shell-bridge)",
    )
    parser.add_argument("--json", action="store_true", help="Output machine-parseable JSON")
    parser.add_argument("--config", default=None, help="Profile YAML (default: $ESB_CONFIG or ~/.config/esb/config.yaml)")
    parser.add_argument("--port", default=None, help="Serial port, overrides the profile and $ESB_PORT")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("ports", help="List serial ports")
    sub.add_parser("probes", help="List diagnostic probes")

    p_probe = sub.add_parser("probe", help="Run a diagnostic probe")
    p_probe.add_argument("name")
    p_probe.add_argument(
        "--opt",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Probe option (repeatable)",
    )
    p_probe.add_argument("--summary", action="store_true", help="Print a one-line summary")
    p_probe.add_argument("--debug", action="store_true", help="Include the raw payload and framing details")
    p_probe.add_argument("--local", action="store_true", help="Run on this host instead of the device")

    p_run = sub.add_parser("run", help="Run a framed script and print its output")
    p_run.add_argument("script", nargs="+")
    p_run.add_argument("--timeout", type=float, default=None,
                       help="Seconds to wait for the output (default: run_timeout_ms from the profile)")
    p_run.add_argument("--local", action="store_true", help="Run on this host instead of the device")

    p_send = sub.add_parser("send", help="Send a raw line to the console")
    p_send.add_argument("text")
    p_send.add_argument("--wait", type=float, default=0.0, help="Seconds to collect output afterwards")

    sub.add_parser("shell", help="Interactive console")

    return parser

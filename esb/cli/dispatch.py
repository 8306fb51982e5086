"""Command dispatch for esbctl CLI."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from esb.cli.parser import _build_parser, _preprocess_argv


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the ``esbctl`` CLI.

    Parses arguments, loads the profile, and dispatches to the command
    handler.

    Args:
        argv: Argument list to parse.  Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code: 0 on success, non-zero on error.
    """
    if argv is None:
        argv = sys.argv[1:]

    argv = _preprocess_argv(argv)

    # Late import so tests can monkeypatch esb.cli.cmd_xxx and esb.cli.load_config
    import esb.cli as cli

    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = cli.load_config(args.config)
    except (OSError, ValueError) as e:
        return cli._print_error(e, json_mode=args.json)
    if args.port:
        config.port = args.port

    if args.cmd == "ports":
        return cli.cmd_ports(json_mode=args.json)
    if args.cmd == "probes":
        return cli.cmd_probes(json_mode=args.json)
    if args.cmd == "probe":
        try:
            options = cli._parse_options(args.opt)
        except ValueError as e:
            return cli._print_error(e, json_mode=args.json)
        return cli.cmd_probe(
            config=config,
            name=args.name,
            options=options,
            summary=args.summary,
            debug=args.debug,
            local=args.local,
            json_mode=args.json,
        )
    if args.cmd == "run":
        return cli.cmd_run(
            config=config,
            script=" ".join(args.script),
            timeout_s=args.timeout,
            local=args.local,
            json_mode=args.json,
        )
    if args.cmd == "send":
        return cli.cmd_send(config=config, text=args.text, wait_s=args.wait, json_mode=args.json)
    if args.cmd == "shell":
        return cli.cmd_shell(config=config, json_mode=args.json)

    parser.error(f"Unknown command: {args.cmd}")
    return 2

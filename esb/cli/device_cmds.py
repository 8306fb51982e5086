"""One-shot device commands for esbctl: ports, probes, probe, run, send."""

from __future__ import annotations

import time
from typing import Optional

from esb.config import BridgeConfig
from esb.errors import BridgeError
from esb.implementations import RealClock, RealSerialPort
from esb.probes import PROBES, get_probe, run_probe

from esb.cli.helpers import _open_session, _print, _print_error, _result


def cmd_ports(*, json_mode: bool) -> int:
    """List serial ports visible to pyserial."""
    started = time.monotonic()
    ports = RealSerialPort.list_ports()
    if json_mode:
        _print(_result({
            "ports": [{"device": p.device, "description": p.description, "hwid": p.hwid} for p in ports],
        }, started), json_mode=True)
        return 0
    if not ports:
        print("No serial ports found.")
        return 0
    for p in ports:
        print(f"{p.device}\t{p.description}\t{p.hwid}")
    return 0


def cmd_probes(*, json_mode: bool) -> int:
    """List registered probes with their descriptions and option defaults."""
    if json_mode:
        _print({
            name: {"description": probe.description, "options": probe.defaults, "timeout_ms": probe.default_timeout_ms}
            for name, probe in sorted(PROBES.items())
        }, json_mode=True)
        return 0
    width = max(len(name) for name in PROBES)
    for name, probe in sorted(PROBES.items()):
        opts = " ".join(f"{k}={v}" for k, v in probe.defaults.items())
        print(f"{name.ljust(width)}  {probe.description}" + (f"  [{opts}]" if opts else ""))
    return 0


def cmd_probe(
    *,
    config: BridgeConfig,
    name: str,
    options: dict[str, str],
    summary: bool,
    debug: bool,
    local: bool,
    json_mode: bool,
) -> int:
    """
    Run one probe and print its report.

    Connects to the configured port, or runs on this host when no port is
    configured or ``local`` is set.
    """
    started = time.monotonic()
    opts = dict(options)
    if summary:
        opts["summary"] = "true"
    if debug:
        opts["debug"] = "true"
    try:
        probe = get_probe(name)
        probe.normalize_options(opts)
    except (KeyError, ValueError) as e:
        return _print_error(e, json_mode=json_mode)

    try:
        session = _open_session(config, local=local)
    except (BridgeError, OSError) as e:
        return _print_error(e, json_mode=json_mode)
    try:
        report = run_probe(probe.name, opts, session, timeout_ms=config.timeout_for(probe.name))
    except BridgeError as e:
        return _print_error(e, json_mode=json_mode)
    finally:
        session.disconnect()

    if json_mode:
        _print(_result(report.to_dict(), started), json_mode=True)
    elif summary:
        print(report.to_summary())
    else:
        print(report.to_markdown())
    return 0


def cmd_run(
    *,
    config: BridgeConfig,
    script: str,
    timeout_s: Optional[float],
    local: bool,
    json_mode: bool,
) -> int:
    """
    Run a framed script and print exactly its output.

    Without ``timeout_s`` the profile's ``run_timeout_ms`` applies.
    """
    started = time.monotonic()
    timeout_ms = config.run_timeout_ms if timeout_s is None else int(timeout_s * 1000)
    if timeout_ms <= 0:
        error = ValueError("timeout must be at least 0.001 s")
        return _print_error(error, json_mode=json_mode)
    try:
        with _open_session(config, local=local) as session:
            result = session.execute(script, timeout_ms)
    except (BridgeError, ValueError, OSError) as e:
        return _print_error(e, json_mode=json_mode)

    if json_mode:
        _print(_result({"output": result.payload, "framing": result.meta()}, started), json_mode=True)
    else:
        print(result.payload)
    return 0


def cmd_send(
    *,
    config: BridgeConfig,
    text: str,
    wait_s: float,
    json_mode: bool,
    clock: Optional[RealClock] = None,
) -> int:
    """Send one raw line; with a wait, print what the device said meanwhile."""
    started = time.monotonic()
    clock = clock or RealClock()
    try:
        with _open_session(config) as session:
            session.send(text)
            if wait_s > 0:
                clock.sleep(wait_s)
            lines = session.logs_since_last_command()
    except (BridgeError, OSError) as e:
        return _print_error(e, json_mode=json_mode)

    if json_mode:
        _print(_result({"sent": text, "lines": lines}, started), json_mode=True)
    else:
        for line in lines:
            print(line)
    return 0

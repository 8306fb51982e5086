"""
Diagnostic probes.

Each probe is a script plus a parser. ``run_probe`` ties one to a Session:
it runs the script through a framed request and turns the payload into a
Report.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from ..errors import AmbiguousPayload, describe_error
from .base import Probe, Report, coerce_option
from .device_tree import DeviceTreeProbe
from .drivers import DriversProbe
from .hotspots import HotspotsProbe
from .identity import IdentityProbe
from .realtime import RealtimeProbe

log = logging.getLogger(__name__)

PROBES: Dict[str, Probe] = {
    probe.name: probe
    for probe in (
        IdentityProbe(),
        DriversProbe(),
        DeviceTreeProbe(),
        HotspotsProbe(),
        RealtimeProbe(),
    )
}


def list_probes() -> List[str]:
    return sorted(PROBES)


def get_probe(name: str) -> Probe:
    try:
        return PROBES[name.replace("-", "_")]
    except KeyError:
        raise KeyError(f"unknown probe {name!r}; known: {', '.join(list_probes())}") from None


def run_probe(
    name: str,
    options: Optional[Dict[str, Any]] = None,
    session=None,
    *,
    timeout_ms: Optional[int] = None,
) -> Report:
    """
    Run a probe and return its Report.

    With no session the script runs on this host through a temporary local
    session. Transport failures and timeouts propagate; output that cannot be
    isolated or understood comes back as a degraded Report.
    """
    probe = get_probe(name)
    opts = probe.normalize_options(options)
    script = probe.build_script(opts)
    timeout = timeout_ms if timeout_ms is not None else probe.timeout_ms(opts)
    scorer = probe.score if probe.min_score > 0 else None

    owned = session is None
    if owned:
        from ..session import open_local
        session = open_local()

    started = time.monotonic()
    try:
        try:
            result = session.execute(script, timeout, scorer=scorer, min_score=probe.min_score)
        except AmbiguousPayload as e:
            log.warning("Probe %s: %s", probe.name, e)
            report = probe.degraded("", opts, describe_error(e))
            return report.with_meta({"marker": e.marker_id, "candidates": e.candidates})
        report = probe.parse(result.payload, opts).with_meta(result.meta())
    finally:
        if owned:
            session.disconnect()

    duration_ms = int((time.monotonic() - started) * 1000)
    log.info("Probe %s finished in %d ms (degraded=%s)", probe.name, duration_ms, report.degraded)
    if session.events is not None:
        session.events.emit("probe_completed", {
            "probe": probe.name,
            "degraded": report.degraded,
            "duration_ms": duration_ms,
            "warnings": list(report.warnings),
        })
    return report


__all__ = [
    "PROBES",
    "Probe",
    "Report",
    "coerce_option",
    "get_probe",
    "list_probes",
    "run_probe",
]

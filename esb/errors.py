"""
Error taxonomy for the Embedded Shell Bridge.

Transport errors always surface to the caller. Framing errors surface only
when marker selection cannot settle on a payload. Parser errors are absorbed
into degraded reports by the probe layer and never reach the caller.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge failures."""

    what = "bridge operation failed"


class TransportConnectionError(BridgeError, ConnectionError):
    """Open or transmit failure on the physical transport. Fatal to the session."""

    what = "connection failed"


class NotConnectedError(BridgeError):
    """An operation needed an open session and there was none."""

    what = "not connected"


class FramedTimeout(BridgeError, TimeoutError):
    """A framed request reached its deadline without a complete marker pair."""

    what = "framed request timed out"

    def __init__(self, message: str, *, marker_id: str = "", elapsed_ms: int = 0):
        super().__init__(message)
        self.marker_id = marker_id
        self.elapsed_ms = elapsed_ms


class AmbiguousPayload(BridgeError):
    """Marker pairs were seen but none could be trusted as device output."""

    what = "could not isolate script output"

    def __init__(self, message: str, *, marker_id: str = "", candidates: int = 0):
        super().__init__(message)
        self.marker_id = marker_id
        self.candidates = candidates


class ProbeParseError(BridgeError):
    """A probe parser could not extract the fields it expected."""

    what = "could not parse probe output"


def describe_error(exc: BaseException) -> str:
    """Render an exception as a single human-readable line."""
    what = getattr(exc, "what", None)
    if what is None:
        what = type(exc).__name__
    detail = " ".join(str(exc).split())
    if not detail:
        return what
    return f"{what}: {detail}"

"""
Embedded Shell Bridge

Runs shell scripts on embedded Linux boards over a serial console, isolates
their output from the unframed stream, and turns it into diagnostic reports.
"""

__version__ = "0.1.0"

from .errors import (
    BridgeError,
    TransportConnectionError,
    NotConnectedError,
    FramedTimeout,
    AmbiguousPayload,
    ProbeParseError,
    describe_error,
)

from .interfaces import (
    ConnectionState,
    PortInfo,
    SerialConfig,
    Transport,
    TextGenerator,
)

from .line_buffer import LineRingBuffer
from .framing import FramedRequest, FramedResult, CorrelationMarker
from .session import Session, connect, open_local
from .probes import Report, run_probe, list_probes, get_probe
from .config import BridgeConfig, load_config

__all__ = [
    "__version__",
    "BridgeError",
    "TransportConnectionError",
    "NotConnectedError",
    "FramedTimeout",
    "AmbiguousPayload",
    "ProbeParseError",
    "describe_error",
    "ConnectionState",
    "PortInfo",
    "SerialConfig",
    "Transport",
    "TextGenerator",
    "LineRingBuffer",
    "FramedRequest",
    "FramedResult",
    "CorrelationMarker",
    "Session",
    "connect",
    "open_local",
    "Report",
    "run_probe",
    "list_probes",
    "get_probe",
    "BridgeConfig",
    "load_config",
]

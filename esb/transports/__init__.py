"""Transport implementations: serial console and local subprocess."""

from .local_transport import LocalTransport
from .serial_transport import SerialTransport

__all__ = ["LocalTransport", "SerialTransport"]

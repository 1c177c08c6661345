"""Adapter modules for external integrations."""

from .udp import (
    ConnectError,
    ReceiveError,
    ReceiveTimeout,
    SendError,
    TransportError,
    UdpTransport,
)

__all__ = [
    "ConnectError",
    "ReceiveError",
    "ReceiveTimeout",
    "SendError",
    "TransportError",
    "UdpTransport",
]

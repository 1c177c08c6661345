"""UDP adapter owning the socket shared by a test session."""

from __future__ import annotations

import logging
import select
import socket
from typing import Any, Optional, Tuple

LOGGER = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Base class for datagram link failures."""


class ConnectError(TransportError):
    """Raised when the UUT endpoint cannot be resolved or the socket created."""


class SendError(TransportError):
    """Raised when a datagram is not sent in full."""


class ReceiveError(TransportError):
    """Raised when a received datagram is unusable."""


class ReceiveTimeout(ReceiveError):
    """Raised when no datagram arrives within the configured timeout."""


class UdpTransport:
    """Blocking UDP socket bound to a fixed UUT endpoint.

    The socket is shared between the sender and every listener thread. The
    protocol never overlaps sends with receives, so no locking is applied.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        local_port: int = 0,
        receive_timeout: Optional[float] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.local_port = local_port
        self.receive_timeout = receive_timeout

        self._sock: Optional[socket.socket] = None
        self._address: Optional[Tuple[Any, ...]] = None

    @property
    def address(self) -> Optional[Tuple[Any, ...]]:
        """Resolved UUT address, available once the transport is open."""
        return self._address

    @property
    def local_address(self) -> Optional[Tuple[Any, ...]]:
        if self._sock is None:
            return None
        return self._sock.getsockname()

    def open(self) -> None:
        if self._sock is not None:
            return

        try:
            infos = socket.getaddrinfo(
                self.host, self.port, socket.AF_INET, socket.SOCK_DGRAM
            )
        except socket.gaierror as exc:
            raise ConnectError(f"Cannot resolve UUT host {self.host!r}: {exc}") from exc
        if not infos:
            raise ConnectError(f"No IPv4 address found for UUT host {self.host!r}")

        family, sock_type, proto, _, address = infos[0]
        try:
            sock = socket.socket(family, sock_type, proto)
        except OSError as exc:
            raise ConnectError(f"Cannot create UDP socket: {exc}") from exc

        try:
            sock.bind(("", self.local_port))
        except OSError as exc:
            sock.close()
            raise ConnectError(
                f"Cannot bind UDP socket to local port {self.local_port}: {exc}"
            ) from exc

        sock.settimeout(self.receive_timeout)

        self._sock = sock
        self._address = address
        LOGGER.debug(
            "UDP transport ready: %s -> %s:%s",
            sock.getsockname(),
            address[0],
            address[1],
        )

    def close(self) -> None:
        if self._sock is None:
            return
        self._sock.close()
        self._sock = None

    def send_datagram(self, data: bytes) -> None:
        sock = self._require_socket()
        if self._address is None:
            raise RuntimeError("UDP transport has no UUT address")

        try:
            sent = sock.sendto(data, self._address)
        except OSError as exc:
            raise SendError(f"Socket error while sending: {exc}") from exc

        if sent != len(data):
            raise SendError(f"Incomplete send: {sent} of {len(data)} bytes")

    def receive_datagram(
        self, expected_length: int, timeout: Optional[float] = None
    ) -> Tuple[bytes, Any]:
        sock = self._require_socket()

        if timeout is not None:
            try:
                ready, _, _ = select.select([sock], [], [], max(timeout, 0.0))
            except OSError as exc:
                raise ReceiveError(f"Socket error while waiting: {exc}") from exc
            if not ready:
                raise ReceiveTimeout(f"No datagram within {timeout:.3g} seconds")

        try:
            # One spare byte so oversized datagrams show up as a length mismatch.
            data, peer = sock.recvfrom(expected_length + 1)
        except socket.timeout as exc:
            raise ReceiveTimeout(
                f"No datagram within {self.receive_timeout} seconds"
            ) from exc
        except OSError as exc:
            raise ReceiveError(f"Socket error while receiving: {exc}") from exc

        if len(data) != expected_length:
            raise ReceiveError(
                f"Expected {expected_length} bytes, got {len(data)} from {peer}"
            )
        return data, peer

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise RuntimeError("UDP transport is not open")
        return self._sock

    def __enter__(self) -> "UdpTransport":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

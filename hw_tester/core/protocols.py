"""Protocol definitions for the collaborators of a test session."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Tuple


class Transport(Protocol):
    """Minimal contract for the datagram link to the unit under test."""

    receive_timeout: Optional[float]

    def open(self) -> None:
        """Resolve the UUT endpoint and create the underlying socket."""
        ...

    def send_datagram(self, data: bytes) -> None:
        """Send one datagram to the UUT.

        Raises:
            SendError: If the datagram could not be sent in full.
        """
        ...

    def receive_datagram(
        self, expected_length: int, timeout: Optional[float] = None
    ) -> Tuple[bytes, Any]:
        """Block until one datagram arrives and return it with its sender.

        ``timeout`` bounds this call only; ``None`` keeps ``receive_timeout``.

        Raises:
            ReceiveError: If the datagram length differs from ``expected_length``.
            ReceiveTimeout: If nothing arrives in time.
        """
        ...

    def close(self) -> None:
        """Release the socket."""
        ...


class ResultStore(Protocol):
    """Persistence contract consumed by the orchestrator and the CLI."""

    def allocate_id(self) -> int:
        """Return the next unused test identifier."""
        ...

    def record_run(
        self, test_id: int, timestamp: str, duration_seconds: float, success: bool
    ) -> None:
        """Persist one completed run."""
        ...

    def lookup_run(self, test_id: int) -> str:
        """Render a stored run, or a "not found" text for unknown ids."""
        ...

    def export_all(self) -> str:
        """Render every stored run as CSV text."""
        ...

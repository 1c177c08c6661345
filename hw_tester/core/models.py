"""Domain models for test sessions and their wire messages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum, IntFlag
from typing import Iterable, List, Optional

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class Peripheral(IntFlag):
    """Peripheral bits carried in the command mask (0x01 is reserved)."""

    UART = 0x02
    SPI = 0x04
    I2C = 0x08

    @classmethod
    def all(cls) -> "Peripheral":
        return cls.UART | cls.SPI | cls.I2C

    @classmethod
    def requested(cls, mask: int) -> List["Peripheral"]:
        """Return the peripherals selected by ``mask`` in slot order."""
        return [member for member in (cls.UART, cls.SPI, cls.I2C) if mask & member]

    @property
    def label(self) -> str:
        return self.name or f"0x{int(self):02X}"


class OutcomeCode(IntEnum):
    SUCCESS = 0x01
    FAILURE = 0xFF


@dataclass(frozen=True, slots=True)
class CommandMessage:
    """Outbound instruction telling the UUT what to exercise."""

    test_id: int
    peripheral_mask: int
    iteration_count: int
    payload: bytes = b""

    @classmethod
    def build(
        cls, test_id: int, peripheral_mask: int, iteration_count: int, payload: bytes
    ) -> "CommandMessage":
        """Construct a command after checking the mask selects known peripherals."""

        if peripheral_mask & ~int(Peripheral.all()):
            raise ValueError(f"Unknown peripheral bits in mask 0x{peripheral_mask:02X}")
        if not peripheral_mask:
            raise ValueError("At least one peripheral must be requested")
        return cls(
            test_id=test_id,
            peripheral_mask=peripheral_mask,
            iteration_count=iteration_count,
            payload=bytes(payload),
        )

    @property
    def peripherals(self) -> List[Peripheral]:
        return Peripheral.requested(self.peripheral_mask)


@dataclass(frozen=True, slots=True)
class ResultMessage:
    """Inbound per-peripheral verdict echoed by the UUT."""

    test_id: int
    peripheral_code: int
    outcome_code: int

    @property
    def succeeded(self) -> bool:
        # Anything other than the canonical success byte counts as failure.
        return self.outcome_code == OutcomeCode.SUCCESS


@dataclass(slots=True)
class SlotResult:
    """Outcome recorded for one requested peripheral."""

    peripheral: Peripheral
    succeeded: bool
    outcome_code: Optional[int] = None
    detail: Optional[str] = None

    def describe(self) -> str:
        status = "Success" if self.succeeded else "Failure"
        if self.detail:
            return f"{self.peripheral.label}: {status} ({self.detail})"
        return f"{self.peripheral.label}: {status}"


@dataclass(frozen=True, slots=True)
class TestRunRecord:
    """Persisted summary of one completed session."""

    __test__ = False  # not a pytest test class

    test_id: int
    started_at: datetime
    duration_seconds: float
    success: bool

    @property
    def timestamp(self) -> str:
        return self.started_at.strftime(TIMESTAMP_FORMAT)

    def as_dict(self) -> dict[str, object]:
        return {
            "testId": self.test_id,
            "timestamp": self.timestamp,
            "durationSeconds": self.duration_seconds,
            "success": self.success,
        }


def compute_verdict(slots: Iterable[SlotResult]) -> bool:
    """AND every slot outcome together; an empty session is a failure."""

    outcomes = [slot.succeeded for slot in slots]
    return bool(outcomes) and all(outcomes)

"""Core primitives for hw-tester."""

from .models import (
    CommandMessage,
    OutcomeCode,
    Peripheral,
    ResultMessage,
    SlotResult,
    TestRunRecord,
    compute_verdict,
)
from .protocols import ResultStore, Transport

__all__ = [
    "CommandMessage",
    "OutcomeCode",
    "Peripheral",
    "ResultMessage",
    "ResultStore",
    "SlotResult",
    "TestRunRecord",
    "Transport",
    "compute_verdict",
]

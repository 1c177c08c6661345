"""Controller-side tooling for exercising peripherals on a remote unit under test."""

__version__ = "0.1.0"

"""Logging and metrics for the simulator."""

from chargesim.observability.logging import MessageLogger, setup_logging
from chargesim.observability.metrics import MetricsRegistry

__all__ = [
    "MessageLogger",
    "MetricsRegistry",
    "setup_logging",
]

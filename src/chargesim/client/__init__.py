"""Charging client (PGW) side: session driver, configuration and models."""

from chargesim.client.config import DriverConfig
from chargesim.client.driver import DriverResult, SessionDriver
from chargesim.client.models import (
    ClientSession,
    DriverStats,
    SessionAction,
    SessionEvent,
    SessionPhase,
    derive_imsi,
    transition,
)

__all__ = [
    "ClientSession",
    "DriverConfig",
    "DriverResult",
    "DriverStats",
    "SessionAction",
    "SessionDriver",
    "SessionEvent",
    "SessionPhase",
    "derive_imsi",
    "transition",
]

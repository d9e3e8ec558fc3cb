"""Charging server (OCS) side: session controller, RAR scheduling and control plane."""

from chargesim.server.api import ControlApiServer
from chargesim.server.config import ControllerConfig
from chargesim.server.control import ControlPlane
from chargesim.server.controller import SessionController
from chargesim.server.models import (
    ConnectionSet,
    DelayInstruction,
    InstructionStatus,
    RarInstruction,
    RarTiming,
    ServerSession,
)
from chargesim.server.policy import OutcomePolicy
from chargesim.server.scheduler import InstructionScheduler, RarSweep

__all__ = [
    "ConnectionSet",
    "ControlApiServer",
    "ControlPlane",
    "ControllerConfig",
    "DelayInstruction",
    "InstructionScheduler",
    "InstructionStatus",
    "OutcomePolicy",
    "RarInstruction",
    "RarSweep",
    "RarTiming",
    "ServerSession",
    "SessionController",
]

"""Diameter charging-session simulator.

This package simulates both ends of a Diameter credit-control (Gy)
conversation for load and conformance testing:

- SessionDriver: client side, drives subscriber sessions through
  CCR-i, CCR-u and CCR-t with retransmission and watchdog keepalive.
- SessionController: server side, answers sessions with a weighted
  outcome policy, delays answers and pushes Re-Auth requests.
- InstructionScheduler: runtime RAR scheduling against live sessions.
- ControlPlane: operator operations, exposed over HTTP by ControlApiServer.

Example:
    >>> from chargesim import ControllerConfig, DriverConfig, SessionController, SessionDriver
    >>> from chargesim.diameter.loopback import LoopbackLink
    >>> controller = SessionController(ControllerConfig())
    >>> link = LoopbackLink()
    >>> controller.attach(link.server)
    >>> driver = SessionDriver(DriverConfig(msisdns=["85255610347"]), link.client)
    >>> result = await driver.run()
"""

from chargesim.client.config import DriverConfig
from chargesim.client.driver import DriverResult, SessionDriver
from chargesim.server.config import ControllerConfig
from chargesim.server.control import ControlPlane
from chargesim.server.controller import SessionController
from chargesim.server.scheduler import InstructionScheduler, RarSweep

__version__ = "0.1.0"

__all__ = [
    "ControlPlane",
    "ControllerConfig",
    "DriverConfig",
    "DriverResult",
    "InstructionScheduler",
    "RarSweep",
    "SessionController",
    "SessionDriver",
]

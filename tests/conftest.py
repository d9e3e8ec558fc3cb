"""
Pytest configuration and fixtures for chargesim tests.

This module provides shared fixtures: fast driver and controller
configurations, a loopback link between the two sides and a factory for
hand-built credit-control requests.
"""

import random
from typing import Callable

import pytest

from chargesim.client.config import DriverConfig
from chargesim.diameter.loopback import LoopbackLink
from chargesim.diameter.message import (
    APP_CREDIT_CONTROL,
    CMD_CREDIT_CONTROL,
    INITIAL_REQUEST,
    Message,
)
from chargesim.observability.metrics import MetricsRegistry
from chargesim.server.config import ControllerConfig
from chargesim.server.controller import SessionController

CLIENT_HOST = "pgw-test01.kit.com"
CLIENT_REALM = "kit.com"
SERVER_HOST = "ocs-test01.epc.mnc006.mcc454.3gppnetwork.org"
SERVER_REALM = "epc.mnc006.mcc454.3gppnetwork.org"


# ============================================================================
# Configurations
# ============================================================================

@pytest.fixture
def driver_config() -> DriverConfig:
    """
    Driver configuration with short timers for fast tests.

    Returns:
        DriverConfig: Two updates, 1ms pacing, 200ms answer timeout
    """
    return DriverConfig(
        msisdns=["85255610347"],
        origin_host=CLIENT_HOST,
        origin_realm=CLIENT_REALM,
        device_ip="10.0.0.1",
        updates=2,
        update_interval_ms=1,
        retransmit_timeout_ms=200,
        max_retransmit=1,
    )


@pytest.fixture
def controller_config() -> ControllerConfig:
    """
    Controller configuration with a fixed identity and seed.
    """
    return ControllerConfig(
        origin_host=SERVER_HOST,
        origin_realm=SERVER_REALM,
        seed=1234,
        rar_timeout=0.5,
    )


@pytest.fixture
def metrics() -> MetricsRegistry:
    """Metrics registry isolated from the global Prometheus registry."""
    return MetricsRegistry()


# ============================================================================
# Wiring
# ============================================================================

@pytest.fixture
def link() -> LoopbackLink:
    """Loopback link; ``client`` for the driver, ``server`` for the controller."""
    return LoopbackLink()


@pytest.fixture
def controller(controller_config, metrics, link) -> SessionController:
    """
    Session controller serving the server end of ``link``.

    Args:
        controller_config: Injected controller configuration
        metrics: Injected metrics registry
        link: Injected loopback link
    """
    controller = SessionController(controller_config, metrics=metrics, rng=random.Random(99))
    controller.attach(link.server)
    return controller


@pytest.fixture
def ccr_factory() -> Callable[..., Message]:
    """
    Factory for minimal Credit-Control-Requests.

    Returns:
        Callable: ``make(connection, session_id, request_type, number)``
    """
    def make(
        connection,
        session_id: str,
        request_type: str = INITIAL_REQUEST,
        number: int = 0,
        origin_host: str = CLIENT_HOST,
        origin_realm: str = CLIENT_REALM,
    ) -> Message:
        ccr = connection.create_request(APP_CREDIT_CONTROL, CMD_CREDIT_CONTROL, session_id)
        ccr.body.extend([
            ("Auth-Application-Id", APP_CREDIT_CONTROL),
            ("Origin-Host", origin_host),
            ("Origin-Realm", origin_realm),
            ("CC-Request-Type", request_type),
            ("CC-Request-Number", number),
        ])
        return ccr

    return make


# ============================================================================
# Pytest Markers
# ============================================================================

def pytest_configure(config):
    """
    Register custom pytest markers.
    """
    config.addinivalue_line(
        "markers", "slow: Tests that wait on real timers for more than a second"
    )

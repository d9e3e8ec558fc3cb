"""Session controller configuration.

This module defines the configuration dataclass for the charging server
(OCS) side: identity, answer delay, RAR defaults and the control API
endpoint.
"""

import ipaddress
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from chargesim.client.config import random_host_label
from chargesim.exceptions import ConfigurationError
from chargesim.settings import build_config

logger = logging.getLogger(__name__)

DEFAULT_API_PORT = 8080


@dataclass
class ControllerConfig:
    """Configuration for ``SessionController``.

    Attributes:
        listener: Address advertised as Host-IP-Address in the CEA.
        port: Diameter listen port (informational for the loopback engine).
        origin_host: Origin-Host; a random ``ocs-xxxxxx`` host when unset.
        origin_realm: Origin-Realm.
        delay_ms: Default delay for credit-control answers.
        result_codes: Initial outcome weights merged into the policy.
        rar_session_ids: Session-Ids registered at start-up for the RAR sweep.
        rar_interval_ms: Re-auth every known session at this interval.
        rar_destination_host: Destination-Host of RARs when the session
            has not reported an Origin-Host.
        rar_destination_realm: Destination-Realm counterpart.
        ccr_count_interval: Log the CCR count and rate every n seconds.
        api: Control API endpoint, ``host:port`` or ``port``.
        rar_timeout: Seconds to wait for an RAA.
        seed: Seed of the outcome policy's random source.

    Example:
        >>> config = ControllerConfig(result_codes={"DIAMETER_CREDIT_LIMIT_REACHED": 1})
        >>> config.validate()
    """

    listener: str = "172.19.3.1"
    port: int = 3868
    origin_host: Optional[str] = None
    origin_realm: str = "epc.mnc006.mcc454.3gppnetwork.org"
    delay_ms: Optional[int] = None
    result_codes: Dict[str, float] = field(default_factory=dict)
    rar_session_ids: List[str] = field(default_factory=list)
    rar_interval_ms: Optional[int] = None
    rar_destination_host: str = "pgw11.yellow.kit"
    rar_destination_realm: str = "yellow.kit"
    ccr_count_interval: Optional[float] = None
    api: Optional[str] = None
    rar_timeout: float = 14.0
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.origin_host is None:
            self.origin_host = f"{random_host_label('ocs')}.{self.origin_realm}"

    @property
    def delay(self) -> Optional[float]:
        """Default credit-control answer delay in seconds."""
        if not self.delay_ms:
            return None
        return self.delay_ms / 1000.0

    @property
    def rar_interval(self) -> Optional[float]:
        if not self.rar_interval_ms:
            return None
        return self.rar_interval_ms / 1000.0

    def api_address(self) -> Optional[Tuple[str, int]]:
        """Parse ``api`` into ``(host, port)``.

        A bare port binds to ``localhost``. A port that is not an integer
        falls back to 8080 with a warning.
        """
        if not self.api:
            return None
        host, sep, port_text = str(self.api).rpartition(":")
        if not sep:
            host, port_text = "localhost", str(self.api)
        try:
            port = int(port_text)
        except ValueError:
            logger.warning("API port must be an integer; default to be %d", DEFAULT_API_PORT)
            port = DEFAULT_API_PORT
        return host or "localhost", port

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        try:
            ipaddress.ip_address(self.listener)
        except ValueError:
            raise ConfigurationError(f"Invalid listener address: {self.listener}")

        if self.port < 1 or self.port > 65535:
            raise ConfigurationError(f"Invalid port number: {self.port}")

        if self.delay_ms is not None and self.delay_ms < 0:
            raise ConfigurationError(f"Invalid delay_ms: {self.delay_ms}")

        if self.rar_interval_ms is not None and self.rar_interval_ms < 0:
            raise ConfigurationError(f"Invalid rar_interval_ms: {self.rar_interval_ms}")

        if self.ccr_count_interval is not None and self.ccr_count_interval <= 0:
            raise ConfigurationError(f"Invalid ccr_count_interval: {self.ccr_count_interval}")

        if self.rar_timeout <= 0:
            raise ConfigurationError(f"Invalid rar_timeout: {self.rar_timeout}")

        for name, weight in self.result_codes.items():
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not math.isfinite(weight) or weight < 0:
                raise ConfigurationError(f"Invalid weight for {name}: {weight!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ControllerConfig":
        """Create a ControllerConfig from a mapping (YAML section, env overrides)."""
        return build_config(cls, data)

"""Session driver configuration.

Timing values are milliseconds, matching the units operators use on the
command line. ``DriverConfig.validate`` is called before any session is
created; a ``ConfigurationError`` stops the process at start-up.
"""

import ipaddress
import random
import re
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from chargesim.exceptions import ConfigurationError
from chargesim.settings import build_config

MSISDN_PATTERN = re.compile(r"^\d{11}$")

DEFAULT_MSISDN = "85255610347"
DEFAULT_RETRANSMIT_TIMEOUT_MS = 14000


def random_host_label(prefix: str, rng: Optional[random.Random] = None) -> str:
    """Return ``<prefix>-<6 random alphanumerics>``."""
    rng = rng or random
    alphabet = string.ascii_lowercase + string.digits
    return f"{prefix}-{''.join(rng.choice(alphabet) for _ in range(6))}"


@dataclass
class DriverConfig:
    """Configuration for ``SessionDriver``.

    Attributes:
        msisdns: Explicit subscriber numbers.
        msisdn_start: First number of an optional 11-digit range.
        msisdn_end: Last number of the range (inclusive).
        device_ip: Framed-IP-Address for every session; random when unset.
        origin_host: Origin-Host for credit-control; the realm is appended
            when missing. A random ``pgw-xxxxxx`` host is used when unset.
        origin_realm: Origin-Realm for credit-control.
        destination_host: Destination-Host added to CCRs when set.
        destination_realm: Destination-Realm added to CCRs when set.
        peer_origin_host: Origin-Host for peer messages (CER, DWR, DPR).
        peer_origin_realm: Origin-Realm for peer messages.
        peer_destination_host: Expected CEA Origin-Host.
        peer_destination_realm: Expected CEA Origin-Realm.
        local_address: Host-IP-Address advertised in the CER.
        updates: Number of CCR-u sent before the CCR-t.
        update_interval_ms: Pause before each CCR-u and the CCR-t.
        dpr_delay_ms: Send DPR this long after a successful CCA-t.
        watchdog_interval_ms: Send DWR at this interval; disabled when unset.
        retransmit_timeout_ms: Time to wait for an answer per attempt.
        max_retransmit: Retransmissions allowed per request.
        keepalive: Keep the connection open after the batch completes.
        exchange_capabilities: Send a CER before starting sessions.
        slow_threshold_ms: CCR-u slower than this are reported.
        slowest_count: Number of slowest CCR-u kept in the statistics.

    Example:
        >>> config = DriverConfig(msisdn_start="85255610000", msisdn_end="85255610009")
        >>> config.validate()
        >>> len(config.enumerate_msisdns())
        11
    """

    msisdns: List[str] = field(default_factory=lambda: [DEFAULT_MSISDN])
    msisdn_start: Optional[str] = None
    msisdn_end: Optional[str] = None
    device_ip: Optional[str] = None

    origin_host: Optional[str] = None
    origin_realm: str = "kit.com"
    destination_host: Optional[str] = None
    destination_realm: Optional[str] = None
    peer_origin_host: Optional[str] = None
    peer_origin_realm: Optional[str] = None
    peer_destination_host: Optional[str] = None
    peer_destination_realm: Optional[str] = None
    local_address: str = "172.19.2.1"

    updates: int = 10
    update_interval_ms: int = 10
    dpr_delay_ms: Optional[int] = None
    watchdog_interval_ms: Optional[int] = None
    retransmit_timeout_ms: int = DEFAULT_RETRANSMIT_TIMEOUT_MS
    max_retransmit: int = 1
    keepalive: bool = False
    exchange_capabilities: bool = True

    slow_threshold_ms: int = 3000
    slowest_count: int = 10

    def __post_init__(self) -> None:
        if self.origin_host is None:
            self.origin_host = f"{random_host_label('pgw')}.{self.origin_realm}"
        elif not self.origin_host.endswith(self.origin_realm):
            self.origin_host = f"{self.origin_host}.{self.origin_realm}"
        if not self.retransmit_timeout_ms:
            self.retransmit_timeout_ms = DEFAULT_RETRANSMIT_TIMEOUT_MS

    # =========================================================================
    # Derived values
    # =========================================================================

    @property
    def peer_host(self) -> str:
        """Origin-Host used on peer messages."""
        return self.peer_origin_host or self.origin_host

    @property
    def peer_realm(self) -> str:
        """Origin-Realm used on peer messages."""
        return self.peer_origin_realm or self.origin_realm

    @property
    def expected_peer_host(self) -> Optional[str]:
        return self.peer_destination_host or self.destination_host

    @property
    def expected_peer_realm(self) -> Optional[str]:
        return self.peer_destination_realm or self.destination_realm

    @property
    def retransmit_timeout(self) -> float:
        """Per-attempt timeout in seconds."""
        return self.retransmit_timeout_ms / 1000.0

    @property
    def update_interval(self) -> float:
        return self.update_interval_ms / 1000.0

    @property
    def dpr_delay(self) -> Optional[float]:
        return None if self.dpr_delay_ms is None else self.dpr_delay_ms / 1000.0

    @property
    def watchdog_interval(self) -> Optional[float]:
        if not self.watchdog_interval_ms:
            return None
        return self.watchdog_interval_ms / 1000.0

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if (self.msisdn_start is None) != (self.msisdn_end is None):
            raise ConfigurationError("Both msisdn_start and msisdn_end must be given for a range")

        if self.msisdn_start is not None:
            for name, value in (("msisdn_start", self.msisdn_start), ("msisdn_end", self.msisdn_end)):
                if not MSISDN_PATTERN.match(str(value)):
                    raise ConfigurationError(
                        f"{name} must be an 11-digit number", {name: value}
                    )
            if int(self.msisdn_start) > int(self.msisdn_end):
                raise ConfigurationError(
                    "msisdn_start must not be greater than msisdn_end",
                    {"msisdn_start": self.msisdn_start, "msisdn_end": self.msisdn_end},
                )

        if not self.enumerate_msisdns():
            raise ConfigurationError("At least one MSISDN must be specified")

        if self.device_ip is not None:
            try:
                ipaddress.IPv4Address(self.device_ip)
            except ValueError:
                raise ConfigurationError(f"Invalid device_ip: {self.device_ip}")

        if self.updates < 0:
            raise ConfigurationError(f"Invalid updates: {self.updates}")

        if self.update_interval_ms < 0:
            raise ConfigurationError(f"Invalid update_interval_ms: {self.update_interval_ms}")

        if self.retransmit_timeout_ms <= 0:
            raise ConfigurationError(f"Invalid retransmit_timeout_ms: {self.retransmit_timeout_ms}")

        if self.max_retransmit < 0:
            raise ConfigurationError(f"Invalid max_retransmit: {self.max_retransmit}")

        if self.dpr_delay_ms is not None and self.dpr_delay_ms < 0:
            raise ConfigurationError(f"Invalid dpr_delay_ms: {self.dpr_delay_ms}")

        if self.watchdog_interval_ms is not None and self.watchdog_interval_ms < 0:
            raise ConfigurationError(f"Invalid watchdog_interval_ms: {self.watchdog_interval_ms}")

        if self.slowest_count < 0:
            raise ConfigurationError(f"Invalid slowest_count: {self.slowest_count}")

    def enumerate_msisdns(self) -> List[str]:
        """Return the explicit MSISDNs followed by the range, in order.

        The range is only expanded once both bounds are valid; call
        ``validate`` first to get an error for a malformed range.
        """
        numbers = [str(m) for m in self.msisdns]
        if (
            self.msisdn_start is not None
            and self.msisdn_end is not None
            and MSISDN_PATTERN.match(str(self.msisdn_start))
            and MSISDN_PATTERN.match(str(self.msisdn_end))
        ):
            start, end = int(self.msisdn_start), int(self.msisdn_end)
            numbers.extend(str(n) for n in range(start, end + 1))
        return numbers

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DriverConfig":
        """Create a DriverConfig from a mapping (YAML section, env overrides)."""
        return build_config(cls, data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "msisdns": list(self.msisdns),
            "msisdn_start": self.msisdn_start,
            "msisdn_end": self.msisdn_end,
            "origin_host": self.origin_host,
            "origin_realm": self.origin_realm,
            "destination_host": self.destination_host,
            "destination_realm": self.destination_realm,
            "updates": self.updates,
            "update_interval_ms": self.update_interval_ms,
            "dpr_delay_ms": self.dpr_delay_ms,
            "watchdog_interval_ms": self.watchdog_interval_ms,
            "retransmit_timeout_ms": self.retransmit_timeout_ms,
            "max_retransmit": self.max_retransmit,
            "keepalive": self.keepalive,
        }

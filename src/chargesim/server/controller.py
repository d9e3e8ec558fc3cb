"""Server session controller.

``SessionController`` plays the online charging server (OCS). It answers
peer commands with success, answers credit-control requests according to
the weighted outcome policy, keeps the session table and the set of live
connections, and applies per-command answer delays.

All tables live on the instance; several controllers can coexist in one
process.

Example:
    >>> controller = SessionController(ControllerConfig(delay_ms=50))
    >>> controller.attach(link.server)
    >>> await controller.start()
    >>> controller.session_ids()
    ['pgw-1a2b3c.kit.com;20240101000000;1;42;85255610347']
"""

import asyncio
import ipaddress
import logging
import random
import time
from typing import Dict, List, Optional

from chargesim.diameter.engine import IncomingRequest, PeerConnection, describe
from chargesim.diameter.message import (
    CMD_CAPABILITIES_EXCHANGE,
    CMD_CREDIT_CONTROL,
    DIAMETER_COMMAND_UNSUPPORTED,
    DIAMETER_SUCCESS,
    PEER_COMMANDS,
    Message,
)
from chargesim.exceptions import ConfigurationError, TransportUnavailableError
from chargesim.observability.metrics import MetricsRegistry
from chargesim.server.config import ControllerConfig
from chargesim.server.models import ConnectionSet, DelayInstruction, ServerSession
from chargesim.server.policy import OutcomePolicy
from chargesim.server.scheduler import InstructionScheduler, RarSweep

logger = logging.getLogger(__name__)

VENDOR_ID_3GPP = 10415
PRODUCT_NAME = "chargesim OCS"
HOST_IP_V6_PREFIX = "fd1e:1dff:97ed::"

# Granted quota returned on every successful credit-control answer
GRANTED_CC_TIME = 99999
GRANTED_TOTAL_OCTETS = 31457280
VOLUME_QUOTA_THRESHOLD = 6291456
VALIDITY_TIME = 3600
QUOTA_HOLDING_TIME = 0


def mapped_ipv6(listener: str) -> str:
    """Embed an IPv4 listener address in the simulator's IPv6 prefix.

    Example:
        >>> mapped_ipv6("172.19.3.1")
        'fd1e:1dff:97ed::ac13:301'
    """
    packed = ipaddress.IPv4Address(listener).packed
    high = int.from_bytes(packed[:2], "big")
    low = int.from_bytes(packed[2:], "big")
    return f"{HOST_IP_V6_PREFIX}{high:x}:{low:x}"


class SessionController:
    """Answers charging sessions from any number of peer connections.

    Attributes:
        config: Controller configuration.
        connections: Live peer connections.
        sessions: Session table keyed by Session-Id.
        policy: Weighted outcome policy for credit-control answers.
        delays: Answer delay per command name.
        scheduler: RAR instruction scheduler.
    """

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        metrics: Optional[MetricsRegistry] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the controller.

        Args:
            config: Controller configuration; validated here.
            metrics: Optional metrics registry.
            rng: Random source for the outcome policy and connection
                fallback; seeded from ``config.seed`` when not given.

        Raises:
            ConfigurationError: If the configuration is invalid.
        """
        self.config = config or ControllerConfig()
        self.config.validate()
        self._metrics = metrics
        self._rng = rng or random.Random(self.config.seed)

        self.connections = ConnectionSet(self._rng)
        self.sessions: Dict[str, ServerSession] = {
            sid: ServerSession(sid) for sid in self.config.rar_session_ids
        }
        self.policy = OutcomePolicy(self.config.result_codes, rng=self._rng)
        self.delays: Dict[str, DelayInstruction] = {}
        self.scheduler = InstructionScheduler(self, metrics=metrics)
        self.sweep: Optional[RarSweep] = None
        if self.config.rar_interval:
            self.sweep = RarSweep(self, self.config.rar_interval)

        self.total_ccr = 0
        self.first_ccr_at: Optional[float] = None
        self._ccr_reporter: Optional[asyncio.Task] = None

        logger.info(
            "Controller %s / %s ready", self.config.origin_host, self.config.origin_realm
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic RAR sweep and the CCR count reporter, if configured."""
        if self.sweep is not None:
            self.sweep.start()
        if self.config.ccr_count_interval and self._ccr_reporter is None:
            self._ccr_reporter = asyncio.create_task(self._report_ccr_count(self.config.ccr_count_interval))

    async def stop(self) -> None:
        """Stop background tasks and release every instruction timer."""
        if self.sweep is not None:
            await self.sweep.stop()
        if self._ccr_reporter is not None:
            self._ccr_reporter.cancel()
            await asyncio.gather(self._ccr_reporter, return_exceptions=True)
            self._ccr_reporter = None
        await self.scheduler.shutdown()

    # =========================================================================
    # Connections
    # =========================================================================

    def attach(self, connection: PeerConnection) -> None:
        """Start serving a peer connection."""
        connection.on_request(self.on_request)
        connection.on_close(self.on_connection_closed)
        connection.on_error(self.on_connection_error)
        self._add_connection(connection)

    def _add_connection(self, connection: PeerConnection) -> None:
        if self.connections.add(connection):
            logger.info("Peer connected from %s", connection.remote_address)
            self._update_gauges()

    def on_connection_closed(self, connection: PeerConnection) -> None:
        """Drop a closed connection. Sessions bound to it are kept."""
        if self.connections.remove(connection):
            logger.info("Peer %s disconnected", connection.remote_address)
            self._update_gauges()

    def on_connection_error(self, connection: PeerConnection, error: BaseException) -> None:
        """Log a transport error and drop the connection."""
        logger.error("Error on connection %s: %s", connection.remote_address, error)
        self.on_connection_closed(connection)

    def resolve_connection(self, session_id: str) -> Optional[PeerConnection]:
        """Connection bound to a session if live, else a random live one."""
        session = self.sessions.get(session_id)
        return self.connections.resolve(session.connection_id if session else None)

    def require_connection(self, session_id: str) -> PeerConnection:
        """Like ``resolve_connection``, for callers that cannot proceed without one.

        Raises:
            TransportUnavailableError: If no connection is live.
        """
        connection = self.resolve_connection(session_id)
        if connection is None:
            raise TransportUnavailableError("No connection available!", {"session_id": session_id})
        return connection

    # =========================================================================
    # Requests
    # =========================================================================

    async def on_request(self, connection: PeerConnection, incoming: IncomingRequest) -> None:
        """Answer one inbound request."""
        self._add_connection(connection)
        message = incoming.message
        if self._metrics:
            self._metrics.record_server_request(message.command)

        if message.command in PEER_COMMANDS:
            response = self._answer_peer(incoming)
        elif message.command == CMD_CREDIT_CONTROL:
            response = self._answer_credit_control(connection, incoming)
        else:
            logger.warning("%s Unsupported command %s", describe(connection), message.display_name)
            response = incoming.response
            response.flags.error = True
            response.body.extend(self._identity(DIAMETER_COMMAND_UNSUPPORTED))

        delay = self.answer_delay(message.command)
        if delay:
            await asyncio.sleep(delay)
        incoming.respond(response)

    def _identity(self, result_code: str) -> list:
        return [
            ("Result-Code", result_code),
            ("Origin-Host", self.config.origin_host),
            ("Origin-Realm", self.config.origin_realm),
        ]

    def _answer_peer(self, incoming: IncomingRequest) -> Message:
        response = incoming.response
        response.body.extend(self._identity(DIAMETER_SUCCESS))
        if incoming.message.command == CMD_CAPABILITIES_EXCHANGE:
            response.body.extend([
                ("Host-IP-Address", self.config.listener),
                ("Host-IP-Address", mapped_ipv6(self.config.listener)),
                ("Vendor-Id", VENDOR_ID_3GPP),
                ("Product-Name", PRODUCT_NAME),
            ])
        return response

    def _answer_credit_control(self, connection: PeerConnection, incoming: IncomingRequest) -> Message:
        request = incoming.message
        response = incoming.response
        session_id = request.session_id
        session = self._record_session(connection, request)

        result_code = self.policy.draw()
        if self._metrics:
            self._metrics.record_outcome(result_code)

        response.body.extend(self._identity(result_code))
        response.body.extend([
            ("Destination-Host", request.get("Origin-Host")),
            ("Destination-Realm", request.get("Origin-Realm")),
        ])
        if result_code != DIAMETER_SUCCESS:
            logger.info("%s Answering %s with %s", describe(connection), session_id, result_code)
            return response

        for name in ("Auth-Application-Id", "CC-Request-Type"):
            value = request.get(name)
            if value is not None:
                response.body.append((name, value))

        request_number = request.get("CC-Request-Number")
        if isinstance(request_number, int) and not isinstance(request_number, bool):
            response.body.append(("CC-Request-Number", request_number))

        response.body.append(("Multiple-Services-Credit-Control", [
            ("Granted-Service-Unit", [
                ("CC-Time", GRANTED_CC_TIME),
                ("CC-Total-Octets", GRANTED_TOTAL_OCTETS),
            ]),
            ("Volume-Quota-Threshold", VOLUME_QUOTA_THRESHOLD),
            ("Result-Code", 2001),
            ("Validity-Time", VALIDITY_TIME),
            ("Quota-Holding-Time", QUOTA_HOLDING_TIME),
        ]))

        if isinstance(request_number, int) and not isinstance(request_number, bool) and session_id:
            self.scheduler.on_request_number(session.session_id, request_number)
        return response

    def _record_session(self, connection: PeerConnection, request: Message) -> ServerSession:
        if self.total_ccr == 0:
            self.first_ccr_at = time.monotonic()
        self.total_ccr += 1

        session_id = request.session_id or ""
        session = self.sessions.get(session_id)
        if session is None:
            session = ServerSession(session_id)
            self.sessions[session_id] = session
            logger.debug("New session %s", session_id)
        session.touch(connection.connection_id)

        for key, name in (
            ("lastCCRequestType", "CC-Request-Type"),
            ("lastCCRequestNumber", "CC-Request-Number"),
            ("originHost", "Origin-Host"),
            ("originRealm", "Origin-Realm"),
        ):
            value = request.get(name)
            if value is not None:
                session.avp[key] = value

        self._update_gauges()
        return session

    # =========================================================================
    # Session table
    # =========================================================================

    def session_ids(self) -> List[str]:
        return list(self.sessions)

    def get_session(self, session_id: str) -> Optional[ServerSession]:
        return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        """Remove a session. A later request with the same id starts afresh."""
        removed = self.sessions.pop(session_id, None) is not None
        if removed:
            self._update_gauges()
        return removed

    # =========================================================================
    # Delays
    # =========================================================================

    def set_delay(self, command: str, delay_ms: int) -> DelayInstruction:
        """Delay every answer to ``command`` by ``delay_ms``.

        Raises:
            ConfigurationError: On an empty command or a non-integer delay.
        """
        if not isinstance(command, str) or not command:
            raise ConfigurationError('Delay instruction must consist of "command" (string) and "delay" (integer)')
        if isinstance(delay_ms, bool) or not isinstance(delay_ms, int) or delay_ms < 0:
            raise ConfigurationError('Delay instruction must consist of "command" (string) and "delay" (integer)')
        instruction = DelayInstruction(command, delay_ms)
        self.delays[command] = instruction
        logger.info("Answers to %s delayed by %dms", command, delay_ms)
        return instruction

    def delete_delay(self, command: str) -> bool:
        return self.delays.pop(command, None) is not None

    def answer_delay(self, command: str) -> float:
        """Seconds to hold the answer to ``command``.

        A delay-table entry wins; otherwise the configured default applies
        to credit-control answers only.
        """
        instruction = self.delays.get(command)
        if instruction is not None:
            return instruction.delay
        if command == CMD_CREDIT_CONTROL and self.config.delay:
            return self.config.delay
        return 0.0

    # =========================================================================
    # Counters
    # =========================================================================

    def ccr_rate(self) -> float:
        """CCRs per second since the first CCR."""
        if not self.total_ccr or self.first_ccr_at is None:
            return 0.0
        elapsed = time.monotonic() - self.first_ccr_at
        return self.total_ccr / elapsed if elapsed > 0 else 0.0

    async def _report_ccr_count(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.total_ccr and self.first_ccr_at is not None:
                elapsed = time.monotonic() - self.first_ccr_at
                logger.info(
                    "CCR total: %d elapsed: %.3fs rate: %.3f r/s",
                    self.total_ccr, elapsed, self.ccr_rate(),
                )

    def _update_gauges(self) -> None:
        if self._metrics:
            self._metrics.server_sessions.set(len(self.sessions))
            self._metrics.server_connections.set(len(self.connections))

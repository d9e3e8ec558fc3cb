"""Client session driver.

``SessionDriver`` plays the charging client (PGW) side. It runs one task
per subscriber session on a single upstream connection; each task walks
its session through CCR-i, the configured number of CCR-u and a CCR-t,
sending one request at a time.

Every request attempt is bounded by the retransmission timeout. On
timeout the same request is resent with the T flag set until the
retransmission budget is spent, at which point the session fails and the
driver disconnects the peer (DPR, then close). A negative Result-Code
fails only the session that received it.

Example:
    >>> link = LoopbackLink()
    >>> controller.attach(link.server)
    >>> driver = SessionDriver(DriverConfig(updates=2), link.client)
    >>> result = await driver.run()
    >>> result.exit_code
    0
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from chargesim.client.config import DriverConfig
from chargesim.client.messages import (
    answer_server_request,
    build_ccr,
    build_cer,
    build_dpr,
    build_dwr,
)
from chargesim.client.models import (
    ClientSession,
    DriverStats,
    SessionAction,
    SessionEvent,
    SessionIdGenerator,
    SessionPhase,
    ntp_timestamp,
)
from chargesim.diameter.engine import IncomingRequest, PeerConnection
from chargesim.diameter.message import (
    CMD_RE_AUTH,
    INITIAL_REQUEST,
    TERMINATION_REQUEST,
    UPDATE_REQUEST,
    Message,
    is_success,
)
from chargesim.exceptions import (
    AnswerError,
    ProtocolEngineError,
    RequestTimeoutError,
    RetransmissionExhausted,
)
from chargesim.observability.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

_LABELS = {
    INITIAL_REQUEST: "CCR-i",
    UPDATE_REQUEST: "CCR-u",
    TERMINATION_REQUEST: "CCR-t",
}


@dataclass
class DriverResult:
    """Outcome of a driver run.

    Attributes:
        sessions: Every session with its final phase.
        stats: Counters collected during the run.
        disconnected: Whether the peer was disconnected.
        keepalive: Whether the run kept the connection alive; such runs
            always exit with code 0.
    """

    sessions: List[ClientSession]
    stats: DriverStats
    disconnected: bool = False
    keepalive: bool = False

    @property
    def closed(self) -> List[ClientSession]:
        return [s for s in self.sessions if s.phase is SessionPhase.CLOSED]

    @property
    def failed(self) -> List[ClientSession]:
        return [s for s in self.sessions if s.phase is SessionPhase.FAILED]

    @property
    def exit_code(self) -> int:
        """Non-zero only when every session failed and keepalive is off."""
        if self.sessions and len(self.failed) == len(self.sessions) and not self.keepalive:
            return 1
        return 0

    def summary(self) -> Dict[str, int]:
        return {
            "sessions": len(self.sessions),
            "closed": len(self.closed),
            "failed": len(self.failed),
        }


class SessionDriver:
    """Drives simulated subscriber sessions over one peer connection.

    Attributes:
        config: Driver configuration.
        connection: Upstream protocol engine connection.

    Example:
        >>> driver = SessionDriver(DriverConfig(msisdns=["85255610347"]), connection)
        >>> result = await driver.run()
        >>> print(result.summary())
    """

    def __init__(
        self,
        config: DriverConfig,
        connection: PeerConnection,
        metrics: Optional[MetricsRegistry] = None,
        rng: Optional[random.Random] = None,
        force_exit: Callable[[int], None] = os._exit,
    ) -> None:
        """Initialize the driver and enumerate its sessions.

        Args:
            config: Driver configuration; validated here.
            connection: Upstream connection.
            metrics: Optional metrics registry.
            rng: Random source for session ids and device addresses.
            force_exit: Called on a second shutdown request.

        Raises:
            ConfigurationError: If the configuration is invalid. No
                session is created in that case.
        """
        config.validate()
        self.config = config
        self.connection = connection
        self._metrics = metrics
        self._rng = rng or random.Random()
        self._force_exit = force_exit

        self._session_ids = SessionIdGenerator(config.origin_host, self._rng)
        self._peer_session_id = self._session_ids.next(config.peer_host)
        self._sessions = [
            ClientSession.create(msisdn, self._session_ids, config.device_ip, self._rng)
            for msisdn in config.enumerate_msisdns()
        ]
        self._stats = DriverStats(
            slow_threshold=config.slow_threshold_ms / 1000.0,
            slowest_limit=config.slowest_count,
        )

        self._stopping = False
        self._disconnected = asyncio.Event()
        self._disconnect_task: Optional[asyncio.Task] = None
        self._dpr_timer: Optional[asyncio.TimerHandle] = None
        self._watchdog_task: Optional[asyncio.Task] = None

        connection.on_request(self._handle_server_request)
        connection.on_close(self._on_connection_closed)

        logger.info("Driver created with %d session(s)", len(self._sessions))

    @property
    def sessions(self) -> List[ClientSession]:
        return list(self._sessions)

    @property
    def stats(self) -> DriverStats:
        return self._stats

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    # =========================================================================
    # Session operations
    # =========================================================================

    async def start_session(self, session: ClientSession) -> SessionAction:
        """Send the CCR-i of a session.

        Returns:
            SCHEDULE_UPDATE or SCHEDULE_TERMINATE on success, FAIL on a
            negative answer, DISCONNECT_PEER on exhausted retransmission.
        """
        session.apply(SessionEvent.SEND, self.config.updates)
        session.request_number = 0
        session.initial_timestamp = ntp_timestamp()
        return await self._send(session, INITIAL_REQUEST, session.initial_timestamp)

    async def send_update(self, session: ClientSession) -> SessionAction:
        """Send the next CCR-u of a session."""
        session.apply(SessionEvent.SEND, self.config.updates)
        return await self._send(session, UPDATE_REQUEST, ntp_timestamp())

    async def send_terminate(self, session: ClientSession) -> SessionAction:
        """Send the CCR-t of a session.

        CC-Time in the reported usage is the time elapsed since the CCR-i.
        """
        session.apply(SessionEvent.SEND, self.config.updates)
        session.terminate_timestamp = ntp_timestamp()
        return await self._send(session, TERMINATION_REQUEST, session.terminate_timestamp)

    async def _send(self, session: ClientSession, request_type: str, event_timestamp: int) -> SessionAction:
        label = _LABELS[request_type]
        request = build_ccr(self.connection, self.config, session, request_type, event_timestamp)
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            answer = await self._exchange(session, request, request_type)
        except RetransmissionExhausted as e:
            session.failure_reason = f"{label} #{session.request_number}: {e}"
            logger.error(
                "%s for %s #%d failed: %s", label, session.msisdn, session.request_number, e
            )
            return self._finish(session, SessionEvent.RETRANSMIT_EXHAUSTED)

        elapsed = loop.time() - started
        result_code = answer.get("Result-Code")
        session.last_result_code = result_code
        self._stats.record_result(request_type, result_code)
        if self._metrics:
            self._metrics.record_client_answer(request_type, result_code)

        answered_number = answer.get("CC-Request-Number")
        if answered_number is not None and answered_number != session.request_number:
            logger.warning(
                "%s for %s answered with CC-Request-Number %s, expected %d",
                label, session.msisdn, answered_number, session.request_number,
            )

        if request_type == UPDATE_REQUEST:
            self._stats.record_update_latency(session.session_id, session.request_number, elapsed)
            if self._metrics:
                self._metrics.client_update_latency_seconds.observe(elapsed)

        if not is_success(result_code):
            session.failure_reason = f"{label} #{session.request_number} answered {result_code}"
            logger.warning(
                "%s for %s #%d is not successful, Result-Code is %s",
                label, session.msisdn, session.request_number, result_code,
            )
            return self._finish(session, SessionEvent.ANSWER_FAILURE)

        logger.debug(
            "%s for %s #%d => %s (%.3fs)",
            label, session.msisdn, session.request_number, result_code, elapsed,
        )
        session.history.append((request_type, session.request_number))
        if request_type == UPDATE_REQUEST:
            session.updates_sent += 1

        action = self._finish(session, SessionEvent.ANSWER_SUCCESS)
        if not session.phase.is_terminal:
            session.request_number += 1
        return action

    async def _exchange(self, session: ClientSession, request: Message, request_type: str) -> Message:
        """Send a request, resending it on timeout.

        Raises:
            RetransmissionExhausted: When the first send and every allowed
                retransmission timed out, or the engine failed otherwise.
        """
        session.retransmissions = 0
        attempts = 0
        while True:
            attempts += 1
            self._stats.requests += 1
            if self._metrics:
                self._metrics.record_client_request(request.command, request_type)
            try:
                answer = await self.connection.send_request(request, self.config.retransmit_timeout)
            except RequestTimeoutError as e:
                self._stats.timeouts += 1
                if session.retransmissions >= self.config.max_retransmit:
                    raise RetransmissionExhausted(
                        "No answer after retransmission", {"session_id": session.session_id}, attempts
                    ) from e
                session.retransmissions += 1
                session.total_retransmissions += 1
                self._stats.retransmissions += 1
                if self._metrics:
                    self._metrics.record_retransmission(request_type)
                request.flags.potentially_retransmitted = True
                logger.warning(
                    "Timeout for %s #%d, doing retransmission #%d",
                    session.msisdn, session.request_number, session.retransmissions,
                )
                continue
            except ProtocolEngineError as e:
                raise RetransmissionExhausted(
                    f"Request failed: {e}", {"session_id": session.session_id}, attempts
                ) from e
            self._stats.answers += 1
            return answer

    def _finish(self, session: ClientSession, event: SessionEvent) -> SessionAction:
        action = session.apply(event, self.config.updates)
        if session.phase.is_terminal:
            self._record_outcome(session)
        return action

    def _record_outcome(self, session: ClientSession) -> None:
        if self._metrics:
            self._metrics.record_session_outcome(session.phase.value)
            self._metrics.client_active_sessions.dec()

    async def _run_session(self, session: ClientSession) -> None:
        """Drive one session until it is closed or failed."""
        logger.info("Working on %s (%s)", session.msisdn, session.session_id)
        action = await self.start_session(session)

        while True:
            if action in (SessionAction.SCHEDULE_UPDATE, SessionAction.SCHEDULE_TERMINATE):
                await asyncio.sleep(self.config.update_interval)
                if self._stopping or self.disconnected:
                    self._abort(session, "stopped before next request")
                    return
                if action is SessionAction.SCHEDULE_UPDATE:
                    action = await self.send_update(session)
                else:
                    action = await self.send_terminate(session)
            elif action is SessionAction.CLOSE:
                logger.info("Session %s closed after %d update(s)", session.msisdn, session.updates_sent)
                if self.config.dpr_delay is not None:
                    self._schedule_dpr(self.config.dpr_delay)
                return
            elif action is SessionAction.DISCONNECT_PEER:
                self._schedule_disconnect(f"{session.msisdn}: {session.failure_reason}")
                return
            else:
                return

    def _abort(self, session: ClientSession, reason: str) -> None:
        if session.phase.is_terminal:
            return
        session.failure_reason = session.failure_reason or reason
        session.apply(SessionEvent.ABORT, self.config.updates)
        self._record_outcome(session)
        logger.warning("Session %s abandoned: %s", session.msisdn, reason)

    # =========================================================================
    # Peer operations
    # =========================================================================

    async def exchange_capabilities(self) -> bool:
        """Send a CER and check the CEA identity.

        Returns:
            True when a successful CEA was received.
        """
        cer = build_cer(self.connection, self.config, self._peer_session_id)
        try:
            cea = await self._peer_exchange(cer)
        except (ProtocolEngineError, AnswerError) as e:
            logger.error("Error sending CER: %s", e)
            return False

        host, realm = cea.get("Origin-Host"), cea.get("Origin-Realm")
        expected_host, expected_realm = self.config.expected_peer_host, self.config.expected_peer_realm
        if expected_host and host != expected_host:
            logger.warning("CEA Origin-Host <%s> does not agree with the expected value <%s>", host, expected_host)
        if expected_realm and realm != expected_realm:
            logger.warning("CEA Origin-Realm <%s> does not agree with the expected value <%s>", realm, expected_realm)
        return True

    async def send_watchdog(self) -> bool:
        """Send one DWR. Failures are logged only.

        Returns:
            True when a successful DWA was received.
        """
        dwr = build_dwr(self.connection, self.config, self._peer_session_id)
        if self._metrics:
            self._metrics.record_client_request(dwr.command)
        try:
            await self._peer_exchange(dwr)
        except (ProtocolEngineError, AnswerError) as e:
            logger.warning("Error sending DWR: %s", e)
            return False
        return True

    async def _peer_exchange(self, request: Message) -> Message:
        """Send a peer request and check the Result-Code of its answer.

        Raises:
            ProtocolEngineError: If no answer arrives.
            AnswerError: If the answer is not successful.
        """
        answer = await self.connection.send_request(request, self.config.retransmit_timeout)
        result_code = answer.get("Result-Code")
        if not is_success(result_code):
            raise AnswerError(
                f"{answer.display_name} is not successful",
                {"peer": self.connection.remote_address},
                result_code,
            )
        return answer

    async def _watchdog_loop(self, interval: float) -> None:
        while not self.disconnected:
            await asyncio.sleep(interval)
            if self.disconnected:
                return
            await self.send_watchdog()

    async def disconnect_peer(self, reason: str = "requested") -> None:
        """Send DPR once, then close the connection."""
        await self._schedule_disconnect(reason)

    def _schedule_disconnect(self, reason: str) -> asyncio.Task:
        if self._disconnect_task is None:
            self._disconnect_task = asyncio.get_running_loop().create_task(self._disconnect(reason))
        return self._disconnect_task

    def _schedule_dpr(self, delay: float) -> None:
        if self._dpr_timer is None and self._disconnect_task is None:
            logger.info("DPR in %.3fs", delay)
            self._dpr_timer = asyncio.get_running_loop().call_later(
                delay, self._schedule_disconnect, "CCA-t received"
            )

    async def _disconnect(self, reason: str) -> None:
        if self._dpr_timer is not None:
            self._dpr_timer.cancel()
        logger.info("Sending DPR (%s)", reason)
        try:
            if self.connection.is_open:
                dpr = build_dpr(self.connection, self.config, self._peer_session_id)
                if self._metrics:
                    self._metrics.record_client_request(dpr.command)
                await self._peer_exchange(dpr)
        except (ProtocolEngineError, AnswerError) as e:
            logger.warning("Error sending DPR: %s", e)
        finally:
            await self.connection.close()
            self._disconnected.set()

    def request_shutdown(self) -> None:
        """Handle a termination signal.

        The first call marks the driver stopping and disconnects the peer;
        a second call exits the process immediately.
        """
        if self._stopping:
            logger.error("Forcibly exit")
            self._force_exit(1)
            return
        self._stopping = True
        logger.warning("Shutdown requested")
        self._schedule_disconnect("shutdown")

    async def _handle_server_request(self, connection: PeerConnection, incoming: IncomingRequest) -> None:
        if incoming.message.command == CMD_RE_AUTH:
            logger.info("Received RAR on Session-Id %s", incoming.message.session_id)
        incoming.respond(answer_server_request(incoming, self.config))

    def _on_connection_closed(self, connection: PeerConnection) -> None:
        if not self.disconnected:
            logger.warning("Connection to %s closed", connection.remote_address)
        self._disconnected.set()

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> DriverResult:
        """Run every session and return the outcome.

        Sessions run concurrently. The call returns once every session is
        closed or failed and any DPR scheduled after a CCA-t has been sent.
        With ``keepalive`` the connection (and watchdog) stay up until
        the peer is disconnected. Sessions still running when the peer is
        disconnected are abandoned.
        """
        if self._metrics:
            self._metrics.client_active_sessions.set(len(self._sessions))

        if self.config.exchange_capabilities and not await self.exchange_capabilities():
            for session in self._sessions:
                self._abort(session, "capabilities exchange failed")
            await self.connection.close()
            self._disconnected.set()
            return self._result()

        if self.config.watchdog_interval:
            self._watchdog_task = asyncio.create_task(self._watchdog_loop(self.config.watchdog_interval))

        tasks = {asyncio.create_task(self._run_session(s)) for s in self._sessions}
        waiter = asyncio.create_task(self._disconnected.wait())
        try:
            remaining = set(tasks)
            while remaining and not self.disconnected:
                done, _ = await asyncio.wait(remaining | {waiter}, return_when=asyncio.FIRST_COMPLETED)
                remaining -= done

            for task in remaining:
                task.cancel()
            await asyncio.gather(*remaining, return_exceptions=True)
            for task in tasks - remaining:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Session task failed: %s", task.exception())

            for session in self._sessions:
                self._abort(session, "peer disconnected")

            logger.info(
                "Batch done: %d closed, %d failed",
                sum(s.phase is SessionPhase.CLOSED for s in self._sessions),
                sum(s.phase is SessionPhase.FAILED for s in self._sessions),
            )
            self._log_update_stats()

            if self.config.keepalive or self._dpr_timer is not None or self._disconnect_task is not None:
                await self._disconnected.wait()
            if self._disconnect_task is not None:
                await self._disconnect_task
        finally:
            waiter.cancel()
            if self._watchdog_task is not None:
                self._watchdog_task.cancel()
                await asyncio.gather(self._watchdog_task, return_exceptions=True)

        return self._result()

    def _result(self) -> DriverResult:
        return DriverResult(
            sessions=list(self._sessions),
            stats=self._stats,
            disconnected=self.disconnected,
            keepalive=self.config.keepalive,
        )

    def _log_update_stats(self) -> None:
        stats = self._stats
        if not stats.update_count:
            return
        logger.info("total time used for CCR-u: %.3fs", stats.update_latency_total)
        logger.info("total number of CCR-u: %d", stats.update_count)
        logger.info("average time for CCR-u: %.3fs", stats.average_update_latency)
        logger.info(
            "CCR-u slower than %.1f seconds: %d", stats.slow_threshold, len(stats.slow_updates)
        )

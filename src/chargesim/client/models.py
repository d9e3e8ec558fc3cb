"""Client session models and state machine.

This module defines the client-side session entity, the per-session state
machine and the statistics collected by the session driver.

The state machine is a pure function: ``transition(phase, event,
updates_remaining)`` returns the next phase and the side effect the
driver must perform. It never touches a connection, so every path can be
unit tested without a transport.
"""

import hashlib
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from chargesim.exceptions import InvalidStateTransition

# Seconds between the NTP epoch (1900) and the Unix epoch (1970)
NTP_EPOCH_OFFSET = 2208988800

IMSI_PREFIX = "454"


# =============================================================================
# Enums
# =============================================================================


class SessionPhase(Enum):
    """Client session lifecycle phases.

    Phases:
        INIT: Session enumerated, nothing sent yet.
        AWAITING_INITIAL: CCR-i in flight.
        UPDATING: Waiting for the update interval before the next CCR-u.
        AWAITING_UPDATE: CCR-u in flight.
        TERMINATING: Waiting for the update interval before the CCR-t.
        AWAITING_TERMINATE: CCR-t in flight.
        CLOSED: CCA-t received with success.
        FAILED: Negative answer, exhausted retransmission or abort.
    """

    INIT = "init"
    AWAITING_INITIAL = "awaiting_initial"
    UPDATING = "updating"
    AWAITING_UPDATE = "awaiting_update"
    TERMINATING = "terminating"
    AWAITING_TERMINATE = "awaiting_terminate"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.CLOSED, SessionPhase.FAILED)


class SessionEvent(Enum):
    """Events fed into the state machine."""

    SEND = "send"
    ANSWER_SUCCESS = "answer_success"
    ANSWER_FAILURE = "answer_failure"
    RETRANSMIT_EXHAUSTED = "retransmit_exhausted"
    ABORT = "abort"


class SessionAction(Enum):
    """Side effects requested by the state machine."""

    SEND_INITIAL = "send_initial"
    SEND_UPDATE = "send_update"
    SEND_TERMINATE = "send_terminate"
    SCHEDULE_UPDATE = "schedule_update"
    SCHEDULE_TERMINATE = "schedule_terminate"
    CLOSE = "close"
    FAIL = "fail"
    DISCONNECT_PEER = "disconnect_peer"
    NONE = "none"


AWAITING_PHASES = frozenset({
    SessionPhase.AWAITING_INITIAL,
    SessionPhase.AWAITING_UPDATE,
    SessionPhase.AWAITING_TERMINATE,
})

_SEND_TRANSITIONS: Dict[SessionPhase, Tuple[SessionPhase, SessionAction]] = {
    SessionPhase.INIT: (SessionPhase.AWAITING_INITIAL, SessionAction.SEND_INITIAL),
    SessionPhase.UPDATING: (SessionPhase.AWAITING_UPDATE, SessionAction.SEND_UPDATE),
    SessionPhase.TERMINATING: (SessionPhase.AWAITING_TERMINATE, SessionAction.SEND_TERMINATE),
}


def transition(
    phase: SessionPhase,
    event: SessionEvent,
    updates_remaining: int = 0,
) -> Tuple[SessionPhase, SessionAction]:
    """Compute the next phase and side effect for a session.

    Args:
        phase: Current phase.
        event: Event that occurred.
        updates_remaining: CCR-u still to send; decides between another
            update and the terminate step after a successful answer.

    Returns:
        Tuple of (next phase, action).

    Raises:
        InvalidStateTransition: If the event is not valid in ``phase``.

    Example:
        >>> transition(SessionPhase.AWAITING_INITIAL, SessionEvent.ANSWER_SUCCESS, 0)
        (<SessionPhase.TERMINATING: 'terminating'>, <SessionAction.SCHEDULE_TERMINATE: 'schedule_terminate'>)
    """
    if phase.is_terminal:
        raise InvalidStateTransition(
            f"Session already {phase.value}", {"event": event.value}
        )

    if event is SessionEvent.ABORT:
        return SessionPhase.FAILED, SessionAction.NONE

    if event is SessionEvent.SEND:
        if phase in _SEND_TRANSITIONS:
            return _SEND_TRANSITIONS[phase]
    elif phase in AWAITING_PHASES:
        if event is SessionEvent.ANSWER_FAILURE:
            return SessionPhase.FAILED, SessionAction.FAIL
        if event is SessionEvent.RETRANSMIT_EXHAUSTED:
            return SessionPhase.FAILED, SessionAction.DISCONNECT_PEER
        if event is SessionEvent.ANSWER_SUCCESS:
            if phase is SessionPhase.AWAITING_TERMINATE:
                return SessionPhase.CLOSED, SessionAction.CLOSE
            if updates_remaining > 0:
                return SessionPhase.UPDATING, SessionAction.SCHEDULE_UPDATE
            return SessionPhase.TERMINATING, SessionAction.SCHEDULE_TERMINATE

    raise InvalidStateTransition(
        f"Invalid transition: {event.value} in {phase.value}",
        {"phase": phase.value, "event": event.value},
    )


# =============================================================================
# Identity helpers
# =============================================================================


def derive_imsi(msisdn: str) -> str:
    """Derive a stable IMSI from an MSISDN.

    The IMSI is ``454`` followed by the first 12 decimal digits of the
    SHA-1 digest of the MSISDN read as an integer.
    """
    digest = int(hashlib.sha1(msisdn.encode()).hexdigest(), 16)
    return f"{IMSI_PREFIX}{str(digest)[:12]}"


def random_device_ip(rng: Optional[random.Random] = None) -> str:
    """Return a random IPv4 address with the first octet in 1..253."""
    rng = rng or random
    return ".".join(
        str(octet)
        for octet in (rng.randint(1, 253), rng.randint(0, 254), rng.randint(0, 254), rng.randint(0, 254))
    )


def ntp_timestamp(now: Optional[float] = None) -> int:
    """Return the current time in whole seconds since the NTP epoch."""
    return int(time.time() if now is None else now) + NTP_EPOCH_OFFSET


class SessionIdGenerator:
    """Produce ``<host>;<yyyymmddHHMMSS>;<seq>;<random>`` session ids.

    The timestamp part is fixed when the generator is created and the
    sequence starts at 1, so ids are unique within one driver.
    """

    def __init__(self, origin_host: str, rng: Optional[random.Random] = None) -> None:
        self._origin_host = origin_host
        self._high = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        self._low = 0
        self._rng = rng or random.Random()

    def next(self, host: Optional[str] = None) -> str:
        self._low += 1
        return ";".join((
            host or self._origin_host,
            self._high,
            str(self._low),
            str(self._rng.randint(0, 2**53 - 1)),
        ))


# =============================================================================
# Dataclasses
# =============================================================================


@dataclass
class ClientSession:
    """Simulated subscriber session.

    Attributes:
        session_id: Session-Id (``...;<msisdn>``).
        msisdn: Subscriber E.164 number.
        imsi: IMSI derived from the MSISDN.
        device_ip: Framed-IP-Address of the device.
        request_number: CC-Request-Number of the current request.
        initial_timestamp: NTP timestamp of the CCR-i.
        terminate_timestamp: NTP timestamp of the CCR-t.
        retransmissions: Retransmissions of the in-flight request.
        total_retransmissions: Retransmissions over the whole session.
        phase: Current lifecycle phase.
        updates_sent: Number of CCR-u answered with success.
        failure_reason: Why the session failed, if it did.
        last_result_code: Result-Code of the last answer.
        history: ``(CC-Request-Type, CC-Request-Number)`` of accepted requests.
    """

    session_id: str
    msisdn: str
    imsi: str
    device_ip: str
    request_number: int = 0
    initial_timestamp: Optional[int] = None
    terminate_timestamp: Optional[int] = None
    retransmissions: int = 0
    total_retransmissions: int = 0
    phase: SessionPhase = SessionPhase.INIT
    updates_sent: int = 0
    failure_reason: Optional[str] = None
    last_result_code: Any = None
    history: List[Tuple[str, int]] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        msisdn: str,
        session_ids: SessionIdGenerator,
        device_ip: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ) -> "ClientSession":
        """Create a session for a subscriber.

        Args:
            msisdn: Subscriber number.
            session_ids: Generator for the Session-Id prefix.
            device_ip: Fixed device address; random when None.
            rng: Random source for the device address.
        """
        return cls(
            session_id=f"{session_ids.next()};{msisdn}",
            msisdn=msisdn,
            imsi=derive_imsi(msisdn),
            device_ip=device_ip or random_device_ip(rng),
        )

    def apply(self, event: SessionEvent, updates_total: int) -> SessionAction:
        """Feed an event to the state machine and store the new phase.

        Args:
            event: Event that occurred.
            updates_total: Configured CCR-u budget.

        Returns:
            Action the driver must perform.
        """
        remaining = updates_total - self.updates_sent
        self.phase, action = transition(self.phase, event, remaining)
        return action

    @property
    def elapsed_seconds(self) -> int:
        """Seconds between CCR-i and CCR-t (or now)."""
        if self.initial_timestamp is None:
            return 0
        end = self.terminate_timestamp or ntp_timestamp()
        return end - self.initial_timestamp

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "session_id": self.session_id,
            "msisdn": self.msisdn,
            "imsi": self.imsi,
            "device_ip": self.device_ip,
            "phase": self.phase.value,
            "request_number": self.request_number,
            "updates_sent": self.updates_sent,
            "retransmissions": self.total_retransmissions,
            "failure_reason": self.failure_reason,
            "last_result_code": self.last_result_code,
        }


@dataclass
class SlowUpdate:
    """A CCR-u with its answer latency."""

    session_id: str
    request_number: int
    seconds: float


@dataclass
class DriverStats:
    """Counters collected by the session driver.

    Attributes:
        requests: Requests sent, retransmissions included.
        answers: Answers received.
        retransmissions: Requests resent after a timeout.
        timeouts: Attempts that timed out.
        result_codes: Result-Code counts per CC-Request-Type.
        update_latency_total: Sum of CCR-u latencies in seconds.
        update_count: Number of CCR-u answered.
        slow_updates: CCR-u slower than the threshold.
        slowest: Slowest CCR-u, longest first.
    """

    slow_threshold: float = 3.0
    slowest_limit: int = 10
    requests: int = 0
    answers: int = 0
    retransmissions: int = 0
    timeouts: int = 0
    result_codes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    update_latency_total: float = 0.0
    update_count: int = 0
    slow_updates: List[SlowUpdate] = field(default_factory=list)
    slowest: List[SlowUpdate] = field(default_factory=list)

    def record_result(self, request_type: str, result_code: Any) -> None:
        codes = self.result_codes.setdefault(request_type, {})
        key = str(result_code)
        codes[key] = codes.get(key, 0) + 1

    def record_update_latency(self, session_id: str, request_number: int, seconds: float) -> None:
        """Account one answered CCR-u."""
        self.update_latency_total += seconds
        self.update_count += 1
        entry = SlowUpdate(session_id, request_number, seconds)
        if seconds > self.slow_threshold:
            self.slow_updates.append(entry)

        index = 0
        while index < len(self.slowest) and self.slowest[index].seconds >= seconds:
            index += 1
        self.slowest.insert(index, entry)
        del self.slowest[self.slowest_limit:]

    @property
    def average_update_latency(self) -> float:
        if not self.update_count:
            return 0.0
        return self.update_latency_total / self.update_count

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "requests": self.requests,
            "answers": self.answers,
            "retransmissions": self.retransmissions,
            "timeouts": self.timeouts,
            "result_codes": self.result_codes,
            "update_latency_total": self.update_latency_total,
            "update_count": self.update_count,
            "update_latency_average": self.average_update_latency,
            "slow_updates": len(self.slow_updates),
            "slowest": [
                {"session_id": s.session_id, "request_number": s.request_number, "seconds": s.seconds}
                for s in self.slowest
            ],
        }

"""Server-side models.

This module defines the session table entry, the live connection set and
the instruction records used by the session controller and the
instruction scheduler.
"""

import asyncio
import base64
import hashlib
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from chargesim.diameter.engine import PeerConnection


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def format_ms(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y/%m/%d %H:%M:%S")


# =============================================================================
# Enums
# =============================================================================


class RarTiming(Enum):
    """When an RAR instruction fires.

    Timings:
        ONCE: Once, ``value`` milliseconds after submission.
        PERIODIC: Every ``value`` milliseconds until cancelled.
        AFTER: On the first credit-control request whose request number
            exceeds ``value``.
    """

    ONCE = "once"
    PERIODIC = "periodic"
    AFTER = "after"


class InstructionStatus(Enum):
    """RAR instruction lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InstructionStatus.FINISHED, InstructionStatus.ERROR, InstructionStatus.CANCELLED)


# =============================================================================
# Sessions and connections
# =============================================================================


@dataclass
class ServerSession:
    """Entry of the server session table.

    Attributes:
        session_id: Session-Id.
        avp: Attribute bag (lastCCRequestType, lastCCRequestNumber,
            originHost, originRealm).
        last_activity: Epoch milliseconds of the last request.
        connection_id: Id of the connection that last carried the session.
            A lookup key into the connection set, never the connection.
    """

    session_id: str
    avp: Dict[str, Any] = field(default_factory=dict)
    last_activity: Optional[int] = None
    connection_id: Optional[str] = None

    def touch(self, connection_id: str, timestamp_ms: Optional[int] = None) -> None:
        self.connection_id = connection_id
        self.last_activity = now_ms() if timestamp_ms is None else timestamp_ms

    def to_dict(self, connections: "ConnectionSet") -> Dict[str, Any]:
        """Convert to the control-plane representation."""
        connection = connections.get(self.connection_id) if self.connection_id else None
        return {
            "avp": dict(self.avp),
            "last": self.last_activity,
            "lastFormatted": format_ms(self.last_activity) if self.last_activity else None,
            "from": connection.remote_address if connection else None,
        }


class ConnectionSet:
    """Live peer connections keyed by connection id.

    Example:
        >>> connections = ConnectionSet()
        >>> connections.add(link.server)
        >>> connections.resolve(session.connection_id)
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._connections: Dict[str, PeerConnection] = {}
        self._rng = rng or random.Random()

    def add(self, connection: PeerConnection) -> bool:
        """Add a connection. Returns False if it was already a member."""
        if connection.connection_id in self._connections:
            return False
        self._connections[connection.connection_id] = connection
        return True

    def remove(self, connection: PeerConnection) -> bool:
        return self._connections.pop(connection.connection_id, None) is not None

    def get(self, connection_id: str) -> Optional[PeerConnection]:
        return self._connections.get(connection_id)

    def addresses(self) -> List[str]:
        return [c.remote_address for c in self._connections.values()]

    def resolve(self, connection_id: Optional[str] = None) -> Optional[PeerConnection]:
        """Pick a transport for a session.

        Args:
            connection_id: Connection bound to the session, if known.

        Returns:
            The bound connection when still live, else a uniformly random
            live connection, else None.
        """
        if connection_id is not None:
            bound = self._connections.get(connection_id)
            if bound is not None and bound.is_open:
                return bound
        live = [c for c in self._connections.values() if c.is_open]
        if not live:
            return None
        return self._rng.choice(live)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return isinstance(connection, PeerConnection) and connection.connection_id in self._connections

    def __iter__(self) -> Iterator[PeerConnection]:
        return iter(list(self._connections.values()))


# =============================================================================
# Instructions
# =============================================================================


def instruction_id(session_id: str, timing: str, value: Any) -> str:
    """Deterministic id of an RAR instruction.

    The id is the unpadded url-safe base64 SHA-1 of the compact JSON of
    ``{"session-id": ..., "instruction": {"timing": ..., "value": ...}}``,
    so resubmitting the same instruction yields the same id.
    """
    canonical = json.dumps(
        {"session-id": session_id, "instruction": {"timing": timing, "value": value}},
        separators=(",", ":"),
    )
    digest = hashlib.sha1(canonical.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


@dataclass
class RarInstruction:
    """Scheduled Re-Auth toward one session.

    Attributes:
        id: Deterministic instruction id.
        session_id: Target Session-Id.
        timing: Trigger kind.
        value: Milliseconds for once/periodic, request-number threshold for after.
        status: Lifecycle status.
        created_at: Epoch milliseconds of submission.
        fired: Number of RARs sent for this instruction.
        handle: Pending timer; owned by the scheduler and never serialised.
    """

    id: str
    session_id: str
    timing: RarTiming
    value: int
    status: InstructionStatus = InstructionStatus.CREATED
    created_at: int = field(default_factory=now_ms)
    fired: int = 0
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False, compare=False)

    @property
    def delay(self) -> float:
        """Timer delay in seconds (0 for after-instructions)."""
        if self.timing is RarTiming.AFTER:
            return 0.0
        return self.value / 1000.0

    def release(self) -> None:
        """Cancel and drop the pending timer, if any."""
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the control-plane representation."""
        return {
            "id": self.id,
            "session-id": self.session_id,
            "instruction": {"timing": self.timing.value, "value": self.value},
            "timestamp": self.created_at,
            "status": self.status.value,
            "fired": self.fired,
        }


@dataclass
class DelayInstruction:
    """Answer delay for one command name.

    Attributes:
        command: Command name, e.g. ``Credit-Control``.
        delay_ms: Delay in milliseconds.
        created_at: Epoch milliseconds of creation.
    """

    command: str
    delay_ms: int
    created_at: int = field(default_factory=now_ms)

    @property
    def delay(self) -> float:
        return self.delay_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.created_at, "delay": self.delay_ms}

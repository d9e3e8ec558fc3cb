"""Diameter message and AVP list model.

Messages carry their AVPs as an ordered list of ``(name, value)`` pairs.
Grouped AVPs hold a nested list of pairs as their value. Sibling order is
preserved and lookups return the first AVP with a matching name.

Example:
    >>> request = create_request(APP_CREDIT_CONTROL, CMD_CREDIT_CONTROL, "sid;1")
    >>> request.body.append(("CC-Request-Number", 0))
    >>> find_value(request.body, "CC-Request-Number")
    0
    >>> answer = request.create_answer()
    >>> find_value(answer.body, "Session-Id")
    'sid;1'
"""

import copy
import itertools
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

AVP = Tuple[str, Any]
AVPList = List[AVP]


# =============================================================================
# Applications and commands
# =============================================================================

APP_COMMON = "Diameter Common Messages"
APP_CREDIT_CONTROL = "Diameter Credit Control Application"

APPLICATION_IDS: Dict[str, int] = {
    APP_COMMON: 0,
    APP_CREDIT_CONTROL: 4,
}

CMD_CAPABILITIES_EXCHANGE = "Capabilities-Exchange"
CMD_RE_AUTH = "Re-Auth"
CMD_CREDIT_CONTROL = "Credit-Control"
CMD_DEVICE_WATCHDOG = "Device-Watchdog"
CMD_DISCONNECT_PEER = "Disconnect-Peer"

COMMAND_CODES: Dict[str, int] = {
    CMD_CAPABILITIES_EXCHANGE: 257,
    CMD_RE_AUTH: 258,
    CMD_CREDIT_CONTROL: 272,
    CMD_DEVICE_WATCHDOG: 280,
    CMD_DISCONNECT_PEER: 282,
}

# Commands answered by the base protocol rather than the application
PEER_COMMANDS = frozenset({
    CMD_CAPABILITIES_EXCHANGE,
    CMD_DEVICE_WATCHDOG,
    CMD_DISCONNECT_PEER,
})

# CC-Request-Type values
INITIAL_REQUEST = "INITIAL_REQUEST"
UPDATE_REQUEST = "UPDATE_REQUEST"
TERMINATION_REQUEST = "TERMINATION_REQUEST"


# =============================================================================
# Result codes
# =============================================================================

DIAMETER_SUCCESS = "DIAMETER_SUCCESS"
DIAMETER_COMMAND_UNSUPPORTED = "DIAMETER_COMMAND_UNSUPPORTED"
DIAMETER_UNABLE_TO_COMPLY = "DIAMETER_UNABLE_TO_COMPLY"
DIAMETER_CREDIT_LIMIT_REACHED = "DIAMETER_CREDIT_LIMIT_REACHED"

RESULT_CODES: Dict[str, int] = {
    DIAMETER_SUCCESS: 2001,
    "DIAMETER_LIMITED_SUCCESS": 2002,
    DIAMETER_COMMAND_UNSUPPORTED: 3001,
    "DIAMETER_UNABLE_TO_DELIVER": 3002,
    "DIAMETER_TOO_BUSY": 3004,
    "DIAMETER_END_USER_SERVICE_DENIED": 4010,
    "DIAMETER_CREDIT_CONTROL_NOT_APPLICABLE": 4011,
    DIAMETER_CREDIT_LIMIT_REACHED: 4012,
    "DIAMETER_AUTHORIZATION_REJECTED": 5003,
    "DIAMETER_UNKNOWN_SESSION_ID": 5002,
    DIAMETER_UNABLE_TO_COMPLY: 5012,
    "DIAMETER_USER_UNKNOWN": 5030,
    "DIAMETER_RATING_FAILED": 5031,
}


def is_success(result_code: Any) -> bool:
    """Check whether a Result-Code value denotes success (2xxx).

    Args:
        result_code: Result-Code as a name or a number.

    Returns:
        True for DIAMETER_SUCCESS, DIAMETER_LIMITED_SUCCESS or any 2xxx code.
    """
    if isinstance(result_code, str):
        result_code = RESULT_CODES.get(result_code, result_code)
    return isinstance(result_code, int) and 2000 <= result_code < 3000


# =============================================================================
# AVP list helpers
# =============================================================================


def find_value(avps: AVPList, name: str, default: Any = None) -> Any:
    """Return the value of the first AVP named ``name``.

    Args:
        avps: AVP list to search.
        name: AVP name.
        default: Value returned when no AVP matches.

    Returns:
        The AVP value, or ``default``.
    """
    for avp_name, value in avps:
        if avp_name == name:
            return value
    return default


def find_all(avps: AVPList, name: str) -> List[Any]:
    """Return the values of every AVP named ``name``, in order."""
    return [value for avp_name, value in avps if avp_name == name]


def iter_avps(avps: AVPList, depth: int = 0) -> Iterator[Tuple[int, str, Any]]:
    """Walk an AVP tree depth first.

    Yields:
        ``(depth, name, value)`` for every AVP; grouped AVPs yield ``None``
        as value and are followed by their children.
    """
    for name, value in avps:
        if isinstance(value, list):
            yield depth, name, None
            yield from iter_avps(value, depth + 1)
        else:
            yield depth, name, value


# =============================================================================
# Messages
# =============================================================================


@dataclass
class MessageFlags:
    """Diameter header flags.

    Attributes:
        request: R bit, set on requests.
        proxiable: P bit.
        error: E bit, set on protocol error answers.
        potentially_retransmitted: T bit, set on retransmissions.
    """

    request: bool = True
    proxiable: bool = False
    error: bool = False
    potentially_retransmitted: bool = False


_hop_by_hop = itertools.count(random.randint(1, 0x7FFFFFFF))
_end_to_end = itertools.count(random.randint(1, 0x7FFFFFFF))


@dataclass
class Message:
    """A Diameter request or answer.

    Attributes:
        application: Application name (e.g. APP_CREDIT_CONTROL).
        command: Command name (e.g. CMD_CREDIT_CONTROL).
        flags: Header flags.
        body: Ordered AVP list.
        hop_by_hop_id: Hop-by-hop identifier, shared by request and answer.
        end_to_end_id: End-to-end identifier, shared by request and answer.
    """

    application: str
    command: str
    flags: MessageFlags = field(default_factory=MessageFlags)
    body: AVPList = field(default_factory=list)
    hop_by_hop_id: int = field(default_factory=lambda: next(_hop_by_hop))
    end_to_end_id: int = field(default_factory=lambda: next(_end_to_end))

    @property
    def is_request(self) -> bool:
        """True for requests, False for answers."""
        return self.flags.request

    @property
    def session_id(self) -> Optional[str]:
        """Session-Id AVP value, if present."""
        return find_value(self.body, "Session-Id")

    @property
    def command_code(self) -> int:
        """Numeric command code, 0 if the command is unknown."""
        return COMMAND_CODES.get(self.command, 0)

    @property
    def application_id(self) -> int:
        """Numeric application id, -1 if the application is unknown."""
        return APPLICATION_IDS.get(self.application, -1)

    @property
    def display_name(self) -> str:
        """Command name suffixed with -Request or -Answer."""
        return f"{self.command}-{'Request' if self.is_request else 'Answer'}"

    def get(self, name: str, default: Any = None) -> Any:
        """Shortcut for ``find_value(self.body, name, default)``."""
        return find_value(self.body, name, default)

    def create_answer(self) -> "Message":
        """Create the answer skeleton for this request.

        The answer shares command, application and identifiers with the
        request and starts with the request's Session-Id, if any.

        Returns:
            New answer message.
        """
        body: AVPList = []
        if self.session_id is not None:
            body.append(("Session-Id", self.session_id))
        return Message(
            application=self.application,
            command=self.command,
            flags=MessageFlags(request=False, proxiable=self.flags.proxiable),
            body=body,
            hop_by_hop_id=self.hop_by_hop_id,
            end_to_end_id=self.end_to_end_id,
        )

    def copy(self) -> "Message":
        """Return a deep copy of the message."""
        return copy.deepcopy(self)


def create_request(application: str, command: str, session_id: Optional[str] = None) -> Message:
    """Create a request message.

    Args:
        application: Application name.
        command: Command name.
        session_id: Session-Id placed first in the body, if given.

    Returns:
        New request message.
    """
    body: AVPList = []
    if session_id is not None:
        body.append(("Session-Id", session_id))
    return Message(application=application, command=command, body=body)

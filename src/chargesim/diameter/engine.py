"""Abstract protocol engine interface.

The simulation core never encodes or frames Diameter messages itself. It
talks to a protocol engine through ``PeerConnection``, which offers three
primitives:

- ``create_request(application, command, session_id)``
- ``send_request(message, timeout)``: awaits the answer or raises
  ``RequestTimeoutError``
- an inbound-request event delivering ``IncomingRequest`` objects, each
  carrying a pre-built answer skeleton and a ``respond`` callback

Classes:
    IncomingRequest: Inbound request with its answer callback
    PeerConnection: Abstract base class for engine connections
"""

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from chargesim.diameter.message import Message, create_request

logger = logging.getLogger(__name__)

# Direction markers handed to message observers
INBOUND = "->[]"
OUTBOUND = "<-[]"

RequestHandler = Callable[["PeerConnection", "IncomingRequest"], Awaitable[None]]
CloseHandler = Callable[["PeerConnection"], None]
ErrorHandler = Callable[["PeerConnection", BaseException], None]
MessageObserver = Callable[[Message, str], None]


@dataclass
class IncomingRequest:
    """An unsolicited request received on a connection.

    Attributes:
        message: The received request.
        response: Answer skeleton (Session-Id and identifiers already set).
        callback: Engine callback that emits an answer on the connection.
    """

    message: Message
    response: Message
    callback: Callable[[Message], None] = field(repr=False)
    answered: bool = False

    def respond(self, answer: Optional[Message] = None) -> None:
        """Emit the answer, ``response`` by default. Subsequent calls are ignored."""
        if self.answered:
            logger.debug("Duplicate answer for %s ignored", self.message.display_name)
            return
        self.answered = True
        self.callback(answer if answer is not None else self.response)


class PeerConnection(abc.ABC):
    """Abstract connection to a Diameter peer.

    Subclasses implement ``send_request``, ``close`` and the address
    properties; this base class keeps the handler registries and offers
    ``_dispatch_request``, ``_notify_closed`` and ``_notify_error`` for
    subclasses to call.

    Example:
        >>> class MyConnection(PeerConnection):
        ...     async def send_request(self, message, timeout):
        ...         # Engine-specific transmission
        ...         pass
    """

    def __init__(self) -> None:
        self._request_handlers: List[RequestHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._error_handlers: List[ErrorHandler] = []
        self._observers: List[MessageObserver] = []

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    @abc.abstractmethod
    def connection_id(self) -> str:
        """Stable identifier of this connection."""

    @property
    @abc.abstractmethod
    def remote_address(self) -> str:
        """Peer address as ``host:port``."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        """Whether the connection can still carry messages."""

    # =========================================================================
    # Primitives
    # =========================================================================

    def create_request(self, application: str, command: str, session_id: Optional[str] = None) -> Message:
        """Create a request bound for this connection.

        Args:
            application: Application name.
            command: Command name.
            session_id: Session-Id of the request.

        Returns:
            New request message.
        """
        return create_request(application, command, session_id)

    @abc.abstractmethod
    async def send_request(self, message: Message, timeout: float) -> Message:
        """Send a request and wait for its answer.

        Args:
            message: Request to send.
            timeout: Seconds to wait for the answer.

        Returns:
            The answer message.

        Raises:
            RequestTimeoutError: If no answer arrives within ``timeout``.
            ConnectionClosedError: If the connection is or becomes closed.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""

    # =========================================================================
    # Events
    # =========================================================================

    def on_request(self, handler: RequestHandler) -> None:
        """Register a coroutine handling inbound requests."""
        self._request_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Register a callback invoked once the connection is closed."""
        self._close_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        """Register a callback invoked on transport errors."""
        self._error_handlers.append(handler)

    def add_message_observer(self, observer: MessageObserver) -> None:
        """Register a callback seeing every message sent or received.

        The observer is called with the message and ``INBOUND`` or
        ``OUTBOUND``.
        """
        self._observers.append(observer)

    def _observe(self, message: Message, direction: str) -> None:
        for observer in self._observers:
            try:
                observer(message, direction)
            except Exception as e:
                logger.exception("Error in message observer: %s", e)

    async def _dispatch_request(self, incoming: IncomingRequest) -> None:
        """Hand an inbound request to the registered handlers."""
        if not self._request_handlers:
            logger.warning(
                "No handler for %s on %s", incoming.message.display_name, self.remote_address
            )
            return
        for handler in self._request_handlers:
            await handler(self, incoming)

    def _notify_closed(self) -> None:
        for handler in self._close_handlers:
            try:
                handler(self)
            except Exception as e:
                logger.exception("Error in close handler: %s", e)

    def _notify_error(self, error: BaseException) -> None:
        for handler in self._error_handlers:
            try:
                handler(self, error)
            except Exception as e:
                logger.exception("Error in error handler: %s", e)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.remote_address!r})"


def describe(connection: Any) -> str:
    """Short ``<<host:port>>`` tag used in log lines."""
    return f"<<{connection.remote_address}>>"

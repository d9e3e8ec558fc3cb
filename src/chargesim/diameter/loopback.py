"""In-process protocol engine.

``LoopbackLink`` joins two ``PeerConnection`` endpoints inside one event
loop. Messages are copied on delivery, so neither side can mutate what
the other one holds. Answers are matched to pending requests by
hop-by-hop identifier; an answer arriving after its request timed out is
dropped.

Example:
    >>> link = LoopbackLink()
    >>> controller.attach(link.server)
    >>> answer = await link.client.send_request(request, timeout=14.0)
"""

import asyncio
import itertools
import logging
from typing import Dict, Optional, Set

from chargesim.diameter.engine import INBOUND, OUTBOUND, IncomingRequest, PeerConnection
from chargesim.diameter.message import Message
from chargesim.exceptions import ConnectionClosedError, RequestTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_ADDRESS = "127.0.0.1:41000"
DEFAULT_SERVER_ADDRESS = "127.0.0.1:3868"

_link_ids = itertools.count(1)


class LoopbackConnection(PeerConnection):
    """One endpoint of a ``LoopbackLink``."""

    def __init__(self, connection_id: str, local_address: str, remote_address: str) -> None:
        super().__init__()
        self._connection_id = connection_id
        self._local_address = local_address
        self._remote_address = remote_address
        self._peer: Optional["LoopbackConnection"] = None
        self._open = True
        self._pending: Dict[int, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def local_address(self) -> str:
        return self._local_address

    @property
    def remote_address(self) -> str:
        return self._remote_address

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def pending_count(self) -> int:
        """Number of requests awaiting an answer."""
        return len(self._pending)

    async def send_request(self, message: Message, timeout: float) -> Message:
        if not self._open or self._peer is None:
            raise ConnectionClosedError(
                "Connection is closed", {"connection": self._connection_id}
            )

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[message.hop_by_hop_id] = future

        try:
            self._observe(message, OUTBOUND)
            loop.call_soon(self._peer._receive_request, message.copy())
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                raise RequestTimeoutError(
                    f"No answer to {message.display_name}",
                    {"session_id": message.session_id},
                    timeout=timeout,
                )
        finally:
            if self._pending.get(message.hop_by_hop_id) is future:
                del self._pending[message.hop_by_hop_id]

    async def close(self) -> None:
        if not self._open:
            return
        self._shutdown()
        if self._peer is not None:
            self._peer._shutdown()

    def fail(self, error: BaseException) -> None:
        """Simulate a transport error: notify error handlers, then close both ends."""
        if not self._open:
            return
        self._notify_error(error)
        self._shutdown()
        if self._peer is not None:
            self._peer._shutdown()

    # =========================================================================
    # Delivery
    # =========================================================================

    def _receive_request(self, message: Message) -> None:
        if not self._open:
            logger.debug("Dropping %s on closed connection", message.display_name)
            return

        self._observe(message, INBOUND)
        incoming = IncomingRequest(
            message=message,
            response=message.create_answer(),
            callback=self._send_answer,
        )
        task = asyncio.get_running_loop().create_task(self._dispatch_request(incoming))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _send_answer(self, answer: Message) -> None:
        if not self._open or self._peer is None:
            logger.debug("Dropping %s on closed connection", answer.display_name)
            return
        self._observe(answer, OUTBOUND)
        asyncio.get_running_loop().call_soon(self._peer._receive_answer, answer.copy())

    def _receive_answer(self, answer: Message) -> None:
        if not self._open:
            return
        self._observe(answer, INBOUND)
        future = self._pending.get(answer.hop_by_hop_id)
        if future is None or future.done():
            logger.debug(
                "Late %s dropped (hop-by-hop %d)", answer.display_name, answer.hop_by_hop_id
            )
            return
        future.set_result(answer)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Request handler failed on %s: %s", self._connection_id, error)

    def _shutdown(self) -> None:
        if not self._open:
            return
        self._open = False
        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ConnectionClosedError(
                        "Connection closed while waiting for answer",
                        {"connection": self._connection_id},
                    )
                )
        self._pending.clear()
        logger.debug("Connection %s closed", self._connection_id)
        self._notify_closed()


class LoopbackLink:
    """A connected pair of loopback endpoints.

    Attributes:
        client: Endpoint used by the session driver.
        server: Endpoint handed to the session controller.
    """

    def __init__(
        self,
        client_address: str = DEFAULT_CLIENT_ADDRESS,
        server_address: str = DEFAULT_SERVER_ADDRESS,
    ) -> None:
        link_id = next(_link_ids)
        self.client = LoopbackConnection(f"loop-{link_id}-c", client_address, server_address)
        self.server = LoopbackConnection(f"loop-{link_id}-s", server_address, client_address)
        self.client._peer = self.server
        self.server._peer = self.client

    async def close(self) -> None:
        """Close both endpoints."""
        await self.client.close()

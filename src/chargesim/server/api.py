"""HTTP/JSON adapter for the control plane.

A minimal HTTP/1.1 server on ``asyncio.start_server``: one request per
connection, JSON in and out. Path segments are URL-decoded, so Session-Ids
containing ``;`` can be addressed as ``%3B``.

Routes (all under ``/api``):

    GET    /api                              API versions
    GET    /api/1                            resource names
    GET    /api/1/sockets                    live peer addresses
    GET    /api/1/session-ids                session ids
    GET    /api/1/session-ids/{id}           session details
    DELETE /api/1/session-ids/{id}           remove a session
    GET    /api/1/ccr-result-codes           outcome weights
    POST   /api/1/ccr-result-codes           merge weights
    DELETE /api/1/ccr-result-codes           reset weights
    GET    /api/1/rar                        RAR instructions
    POST   /api/1/rar                        add an instruction
    PATCH  /api/1/rar/{id}                   cancel an instruction
    DELETE /api/1/rar/{id}                   remove an instruction
    GET    /api/1/delay                      answer delays
    POST   /api/1/delay                      set a delay
    DELETE /api/1/delay/{command}            remove a delay

Example:
    >>> api = ControlApiServer(ControlPlane(controller), "localhost", 8080)
    >>> await api.start()
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from chargesim.server.control import ControlPlane

logger = logging.getLogger(__name__)

STATUS_TEXT = {200: "OK", 400: "Bad Request", 404: "Not Found", 405: "Method Not Allowed", 500: "Internal Server Error"}

NOT_FOUND = {"error": "Not found"}


class ControlApiServer:
    """Serve a ``ControlPlane`` over HTTP."""

    def __init__(self, control: ControlPlane, host: str = "localhost", port: int = 8080) -> None:
        self.control = control
        self.host = host
        self.port = port
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started on port 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Bind and start accepting requests.

        Raises:
            OSError: If the address cannot be bound.
        """
        try:
            self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            if e.errno == 98:
                raise OSError(f"Port {self.port} is already in use. Try a different --api port") from e
            raise
        logger.info("Control API listening on http://%s:%s/api", self.host, self.bound_port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Control API stopped")

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request_line = await reader.readline()
            if not request_line:
                return
            parts = request_line.decode().strip().split()
            if len(parts) < 2:
                return
            method, path = parts[0].upper(), parts[1]

            headers = {}
            while True:
                line = await reader.readline()
                if line in (b"\r\n", b"\n") or not line:
                    break
                key, sep, value = line.decode().strip().partition(":")
                if sep:
                    headers[key.strip().lower()] = value.strip()

            body = b""
            content_length = int(headers.get("content-length", 0) or 0)
            if content_length > 0:
                body = await reader.readexactly(content_length)

            status, data = self.handle(method, path, body.decode() if body else None)
            await self._send_json_response(writer, data, status)

        except (ConnectionResetError, BrokenPipeError, asyncio.IncompleteReadError) as e:
            logger.debug("Client connection closed: %s", e)
        except Exception as e:
            logger.error("Control API connection error: %s", e)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError, OSError):
                pass

    async def _send_json_response(self, writer: asyncio.StreamWriter, data: Any, status: int = 200) -> None:
        body = json.dumps(data).encode()
        head = (
            f"HTTP/1.1 {status} {STATUS_TEXT.get(status, 'Unknown')}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        ).encode()
        writer.write(head + body)
        await writer.drain()

    # =========================================================================
    # Routing
    # =========================================================================

    def handle(self, method: str, path: str, body: Optional[str] = None) -> Tuple[int, Any]:
        """Route one request.

        Args:
            method: HTTP method.
            path: Request path, query string allowed.
            body: Raw request body.

        Returns:
            ``(http_status, json_payload)``.
        """
        path = path.split("?", 1)[0]
        segments = [unquote(s) for s in path.strip("/").split("/") if s]
        if not segments or segments[0] != "api":
            return 404, NOT_FOUND

        data: Any = None
        if body:
            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                return 400, {"status": 1, "message": "Request body must be JSON"}

        logger.debug("%s %s", method, path)
        return self._route(method, segments[1:], data)

    def _route(self, method: str, segments: List[str], data: Any) -> Tuple[int, Any]:
        control = self.control
        if not segments:
            return (200, control.versions()) if method == "GET" else (405, NOT_FOUND)
        if segments[0] != "1":
            return 404, NOT_FOUND

        resource = segments[1] if len(segments) > 1 else None
        key = segments[2] if len(segments) > 2 else None
        if len(segments) > 3:
            return 404, NOT_FOUND

        if resource is None:
            return (200, control.resources()) if method == "GET" else (405, NOT_FOUND)

        routes: Dict[Tuple[str, str, bool], Any] = {
            ("GET", "sockets", False): control.list_connections,
            ("GET", "connections", False): control.list_connections,
            ("GET", "session-ids", False): control.list_sessions,
            ("GET", "session-ids", True): lambda: control.get_session(key),
            ("DELETE", "session-ids", True): lambda: control.delete_session(key),
            ("GET", "ccr-result-codes", False): control.get_result_codes,
            ("POST", "ccr-result-codes", False): lambda: control.update_result_codes(data),
            ("DELETE", "ccr-result-codes", False): control.clear_result_codes,
            ("GET", "rar", False): control.list_rar,
            ("POST", "rar", False): lambda: control.add_rar(data),
            ("PATCH", "rar", True): lambda: control.update_rar(key, data),
            ("DELETE", "rar", True): lambda: control.delete_rar(key),
            ("GET", "delay", False): control.list_delays,
            ("POST", "delay", False): lambda: control.set_delay(data),
            ("DELETE", "delay", True): lambda: control.delete_delay(key),
        }
        handler = routes.get((method, resource, key is not None))
        if handler is None:
            return 404, NOT_FOUND
        return 200, handler()

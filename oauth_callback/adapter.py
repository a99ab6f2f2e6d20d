"""Loopback HTTP listener built on asyncio streams.

This is the only module that touches sockets. It turns raw HTTP/1.1
requests into CallbackRequest objects, hands them to a synchronous
handler and writes the CallbackResponse back. It knows nothing about
OAuth; the callback server supplies the handler.
"""

import asyncio
import errno
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

from .errors import CallbackError, PortInUseError

logger = logging.getLogger(__name__)

# Upper bound on header lines read per request (browsers send ~15)
MAX_HEADER_LINES = 100

# Browsers open spare connections that may never carry a request
READ_TIMEOUT = 10.0  # seconds

_ADDR_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}


@dataclass
class CallbackRequest:
    """Runtime-neutral view of an incoming HTTP request.

    Attributes:
        method: HTTP method (e.g. "GET")
        target: Raw request target, path plus query (e.g. "/callback?code=x")
        headers: Header names lowercased, repeated headers joined with ", "
        host: Host the listener is bound to, used to build the absolute URL
    """

    method: str
    target: str
    headers: dict[str, str] = field(default_factory=dict)
    host: str = "localhost"

    @property
    def url(self) -> str:
        """Absolute URL of the request."""
        host = self.headers.get("host", self.host)
        return f"http://{host}{self.target}"

    @property
    def path(self) -> str:
        return urlparse(self.target).path

    @property
    def query(self) -> dict[str, str]:
        """Query parameters, first value wins for repeated keys."""
        params = parse_qs(urlparse(self.target).query, keep_blank_values=True)
        return {key: values[0] for key, values in params.items() if values}


@dataclass
class CallbackResponse:
    """Response produced by the request handler."""

    status: HTTPStatus
    body: str = ""
    content_type: str = "text/plain"

    def encode(self) -> bytes:
        """Serialize to an HTTP/1.1 response."""
        body = self.body.encode("utf-8")
        headers = [
            f"HTTP/1.1 {self.status.value} {self.status.phrase}",
            f"Content-Type: {self.content_type}; charset=utf-8",
            f"Content-Length: {len(body)}",
        ]
        if self.content_type == "text/html":
            headers += [
                "X-Content-Type-Options: nosniff",
                "X-Frame-Options: DENY",
                "Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'",
                "Cache-Control: no-store",
            ]
        headers.append("Connection: close")
        return ("\r\n".join(headers) + "\r\n\r\n").encode("utf-8") + body


RequestHandler = Callable[[CallbackRequest], CallbackResponse]


class LoopbackListener:
    """Ephemeral HTTP listener bound to a loopback address.

    Usage:
        listener = LoopbackListener()
        await listener.start("127.0.0.1", 3000, handler)
        ...
        await listener.close()
    """

    def __init__(self, read_timeout: float = READ_TIMEOUT) -> None:
        self.hostname: str = ""
        self.read_timeout = read_timeout
        self._server: asyncio.Server | None = None
        self._handler: RequestHandler | None = None
        self._connections: set[asyncio.Task[Any]] = set()

    @property
    def port(self) -> int:
        """Port actually bound (differs from the requested one when 0 was given)."""
        if self._server is None or not self._server.sockets:
            return 0
        port: int = self._server.sockets[0].getsockname()[1]
        return port

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    async def start(self, hostname: str, port: int, handler: RequestHandler) -> None:
        """Bind the listener.

        Raises:
            PortInUseError: If the address is already bound
            CallbackError: If the listener could not be created
        """
        if self._server is not None:
            raise CallbackError("Listener already started")

        self.hostname = hostname
        self._handler = handler

        try:
            self._server = await asyncio.start_server(self._handle_connection, hostname, port)
        except OSError as e:
            if e.errno in _ADDR_IN_USE:
                raise PortInUseError(hostname, port) from e
            raise CallbackError(f"Failed to start callback listener on {hostname}:{port}: {e}") from e

        if not self._server.sockets:
            self._server.close()
            self._server = None
            raise CallbackError("Failed to start callback listener: no sockets created")

        logger.debug(f"Loopback listener bound to {hostname}:{self.port}")

    async def close(self) -> None:
        """Release the socket and drop open connections. Safe to call more than once."""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()

        connections = list(self._connections)
        for task in connections:
            task.cancel()
        if connections:
            await asyncio.gather(*connections, return_exceptions=True)

        await server.wait_closed()
        logger.debug(f"Loopback listener on {self.hostname} closed")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one HTTP request per connection."""
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)

        try:
            try:
                request = await asyncio.wait_for(self._read_request(reader), self.read_timeout)
            except TimeoutError:
                logger.debug(f"No request received within {self.read_timeout}s, closing connection")
                return

            handler = self._handler
            if request is None or handler is None:
                response = CallbackResponse(HTTPStatus.BAD_REQUEST, "Invalid request")
            else:
                try:
                    response = handler(request)
                except Exception as e:
                    logger.warning(f"Error handling callback request: {e}")
                    response = CallbackResponse(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal error")

            writer.write(response.encode())
            await writer.drain()

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Client disconnected before response was sent: {e}")

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
            finally:
                if task is not None:
                    self._connections.discard(task)

    async def _read_request(self, reader: asyncio.StreamReader) -> CallbackRequest | None:
        """Parse the request line and headers (e.g. "GET /callback?code=xxx HTTP/1.1")."""
        request_line = await reader.readline()
        parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
        if len(parts) < 2 or not parts[1].startswith("/"):
            return None

        headers: dict[str, str] = {}
        for _ in range(MAX_HEADER_LINES):
            header_line = await reader.readline()
            if header_line in (b"\r\n", b"\n", b""):
                break
            name, sep, value = header_line.decode("latin-1").partition(":")
            if not sep:
                continue
            key = name.strip().lower()
            value = value.strip()
            headers[key] = f"{headers[key]}, {value}" if key in headers else value

        return CallbackRequest(
            method=parts[0].upper(),
            target=parts[1],
            headers=headers,
            host=f"{self.hostname}:{self.port}",
        )

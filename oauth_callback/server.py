"""Loopback callback server for OAuth redirects.

The server keeps one pending "waiter" per callback path. A waiter is a
one-shot future raced against a deadline and the server's cancellation
signal; whichever outcome comes first is the only one the caller sees.
The waiter entry is dropped as soon as the race is over, so repeated
authorization attempts in a long-lived process never accumulate state
and a stale waiter can never capture a later, unrelated redirect.

Request handling and waiter registration are plain synchronous steps
on the event loop, so a redirect that arrives after registration cannot
be lost between them.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Protocol

from .adapter import CallbackRequest, CallbackResponse, LoopbackListener
from .errors import CallbackAbortedError, CallbackError, CallbackTimeoutError, ListenerActiveError
from .templates import render_callback_html

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000
DEFAULT_HOSTNAME = "localhost"
DEFAULT_CALLBACK_PATH = "/callback"

# Query parameters with a dedicated CallbackResult attribute
_KNOWN_PARAMS = ("code", "state", "error", "error_description", "error_uri")


@dataclass
class CallbackResult:
    """Result from OAuth callback.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
        error_uri: URI with additional error information
        extra: Any other query parameters sent by the provider, verbatim
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: dict[str, str]) -> "CallbackResult":
        """Build a result from parsed query parameters."""
        return cls(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
            error_uri=params.get("error_uri"),
            extra={k: v for k, v in params.items() if k not in _KNOWN_PARAMS},
        )

    def to_dict(self) -> dict[str, str]:
        """Flatten back to query-parameter form, omitting absent values."""
        data = {key: getattr(self, key) for key in _KNOWN_PARAMS if getattr(self, key) is not None}
        data.update(self.extra)
        return data

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return self.code is not None and not self.error

    def is_error(self) -> bool:
        return bool(self.error)

    def is_malformed(self) -> bool:
        """Neither a code nor an error: not a recognizable OAuth redirect."""
        return self.code is None and not self.error


@dataclass
class ServerOptions:
    """Options for starting a callback server.

    Attributes:
        port: Port to bind (0 lets the OS choose, useful in tests)
        hostname: Loopback hostname to bind
        success_html: Custom page shown after a successful redirect
        error_html: Custom error page with {{error}}, {{error_description}}
            and {{error_uri}} placeholders
        abort_event: Cancellation signal; setting it stops the server and
            rejects pending waiters
        on_request: Inspection hook called for every request (logging/debugging).
            May be a plain function or a coroutine function; a coroutine is
            scheduled on the loop and its failure is logged
    """

    port: int = DEFAULT_PORT
    hostname: str = DEFAULT_HOSTNAME
    success_html: str | None = None
    error_html: str | None = None
    abort_event: asyncio.Event | None = None
    on_request: Callable[[CallbackRequest], Any] | None = None


class CallbackServer(Protocol):
    """Interface every callback server implementation provides."""

    async def start(self, options: ServerOptions) -> None: ...

    async def wait_for_callback(self, path: str, timeout: float | None) -> CallbackResult: ...

    async def stop(self) -> None: ...


ListenerFactory = Callable[[], LoopbackListener]


class LoopbackCallbackServer:
    """Callback server backed by a loopback HTTP listener.

    Usage:
        server = LoopbackCallbackServer()
        await server.start(ServerOptions(port=3000))
        try:
            # Open browser with an authorization URL redirecting to /callback
            result = await server.wait_for_callback("/callback", timeout=120)
        finally:
            await server.stop()
    """

    def __init__(self, listener_factory: ListenerFactory = LoopbackListener):
        self._listener_factory = listener_factory
        self._listener: LoopbackListener | None = None
        self._options = ServerOptions()
        self._waiters: dict[str, asyncio.Future[CallbackResult]] = {}
        self._abort_task: asyncio.Task[None] | None = None
        self._stopped = False
        self._hook_tasks: set[asyncio.Future[Any]] = set()

    @property
    def port(self) -> int:
        """Port the listener is bound to, 0 when not running."""
        return self._listener.port if self._listener else 0

    @property
    def hostname(self) -> str:
        return self._options.hostname

    @property
    def is_running(self) -> bool:
        return self._listener is not None

    @property
    def pending_paths(self) -> frozenset[str]:
        """Paths that currently have a waiter registered."""
        return frozenset(self._waiters)

    async def start(self, options: ServerOptions) -> None:
        """Start listening.

        Raises:
            CallbackAbortedError: If the abort event is already set
            PortInUseError: If the address is already bound
            CallbackError: If the server is already running
        """
        abort_event = options.abort_event
        if abort_event is not None and abort_event.is_set():
            raise CallbackAbortedError("Operation aborted")
        if self._listener is not None:
            raise CallbackError("Callback server already started")

        self._options = options
        listener = self._listener_factory()
        await listener.start(options.hostname, options.port, self._handle_request)
        self._listener = listener
        self._stopped = False

        if abort_event is not None:
            self._abort_task = asyncio.create_task(self._watch_abort(abort_event))

        logger.debug(f"Callback server started on http://{options.hostname}:{listener.port}")

    async def wait_for_callback(self, path: str, timeout: float | None) -> CallbackResult:
        """Wait for the OAuth redirect on `path`.

        Args:
            path: Callback path to watch (e.g. "/callback")
            timeout: Seconds to wait; None waits until stopped or aborted

        Returns:
            CallbackResult with the parsed query parameters

        Raises:
            ListenerActiveError: If a waiter is already registered for `path`
            CallbackTimeoutError: If no redirect arrived in time
            CallbackAbortedError: If the server was stopped or aborted first
        """
        if path in self._waiters:
            raise ListenerActiveError(path)
        self._ensure_accepting()

        waiter: asyncio.Future[CallbackResult] = asyncio.get_running_loop().create_future()
        self._waiters[path] = waiter
        logger.debug(f"Waiting for OAuth callback on {path} (timeout: {timeout}s)")

        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError:
            raise CallbackTimeoutError(
                f"Timeout waiting for OAuth callback on {path} after {timeout} seconds"
            ) from None
        finally:
            if self._waiters.get(path) is waiter:
                del self._waiters[path]

    async def stop(self) -> None:
        """Stop the server. Idempotent, and safe to call before start()."""
        if self._abort_task is not None:
            self._abort_task.cancel()
            self._abort_task = None

        self._stopped = True
        self._reject_waiters(CallbackAbortedError("Server stopped before callback received"))
        await self._close_listener()

    def _ensure_accepting(self) -> None:
        abort_event = self._options.abort_event
        if abort_event is not None and abort_event.is_set():
            raise CallbackAbortedError("Operation aborted")
        if self._listener is None:
            if self._stopped:
                raise CallbackAbortedError("Server stopped before callback received")
            raise CallbackError("Callback server not started")

    async def _watch_abort(self, abort_event: asyncio.Event) -> None:
        await abort_event.wait()
        logger.debug("Abort signal received, stopping callback server")
        self._abort_task = None
        self._stopped = True
        self._reject_waiters(CallbackAbortedError("Operation aborted"))
        await self._close_listener()

    def _reject_waiters(self, error: CallbackError) -> None:
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.set_exception(error)

    async def _close_listener(self) -> None:
        if self._listener is None:
            return
        listener, self._listener = self._listener, None
        await listener.close()
        logger.debug("Callback server stopped")

    def _run_hook(self, request: CallbackRequest) -> None:
        hook = self._options.on_request
        if hook is None:
            return
        try:
            outcome = hook(request)
        except Exception as e:
            logger.warning(f"on_request hook raised {type(e).__name__}: {e}")
            return

        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._hook_tasks.add(task)
            task.add_done_callback(self._hook_finished)

    def _hook_finished(self, task: "asyncio.Future[Any]") -> None:
        self._hook_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"on_request hook raised {type(error).__name__}: {error}")

    def _handle_request(self, request: CallbackRequest) -> CallbackResponse:
        """Match a request against the registered waiters."""
        self._run_hook(request)

        waiter = self._waiters.get(request.path)
        if waiter is None:
            return CallbackResponse(HTTPStatus.NOT_FOUND, "Not Found")

        if request.method != "GET":
            return CallbackResponse(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")

        params = request.query
        if not waiter.done():
            waiter.set_result(CallbackResult.from_params(params))
            logger.debug(f"OAuth callback received on {request.path}")

        body = render_callback_html(params, self._options.success_html, self._options.error_html)
        return CallbackResponse(HTTPStatus.OK, body, content_type="text/html")


def create_callback_server(listener_factory: ListenerFactory | None = None) -> CallbackServer:
    """Create a callback server.

    Args:
        listener_factory: Optional factory for the underlying listener,
            used by tests to substitute a fake transport

    Returns:
        A CallbackServer ready to start()
    """
    if listener_factory is None:
        return LoopbackCallbackServer()
    return LoopbackCallbackServer(listener_factory)

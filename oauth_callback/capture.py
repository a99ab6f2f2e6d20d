"""Capture one OAuth authorization code through a loopback redirect.

Flow:
1. Start a callback server on the configured loopback address
2. Send the user to the authorization URL (browser, or a headless fetch)
3. Wait for exactly one redirect on the callback path
4. Raise provider errors as OAuthError, return the code otherwise
5. Stop the server, whatever happened
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urljoin

import httpx

from .adapter import CallbackRequest
from .browser import open_browser as launch_browser
from .errors import MalformedCallbackError, OAuthError
from .server import (
    DEFAULT_CALLBACK_PATH,
    DEFAULT_HOSTNAME,
    DEFAULT_PORT,
    CallbackResult,
    CallbackServer,
    ServerOptions,
    create_callback_server,
)

logger = logging.getLogger(__name__)

# Default time to wait for the redirect
DEFAULT_TIMEOUT = 30.0  # seconds


@dataclass
class CaptureOptions:
    """Configuration for a single authorization code capture.

    Attributes:
        authorization_url: Provider authorization URL to send the user to
        port: Loopback port; must match the registered redirect URI
        hostname: Loopback hostname ("127.0.0.1" for IPv4 only)
        callback_path: Path the provider redirects to
        timeout: Seconds to wait for the redirect
        open_browser: Launch the default browser. When False the
            authorization URL is fetched directly and one redirect hop
            is followed, for headless environments and tests
        abort_event: Cancellation signal for this attempt
        success_html: Custom success page
        error_html: Custom error page template
        on_request: Inspection hook for every incoming request
        server_factory: Factory for the callback server (tests inject fakes)
        http_client: HTTP client for the headless fetch
    """

    authorization_url: str
    port: int = DEFAULT_PORT
    hostname: str = DEFAULT_HOSTNAME
    callback_path: str = DEFAULT_CALLBACK_PATH
    timeout: float = DEFAULT_TIMEOUT
    open_browser: bool = True
    abort_event: asyncio.Event | None = None
    success_html: str | None = None
    error_html: str | None = None
    on_request: Callable[[CallbackRequest], Any] | None = None
    server_factory: Callable[[], CallbackServer] | None = None
    http_client: httpx.AsyncClient | None = None


async def get_auth_code(authorization_url: str, **options: Any) -> CallbackResult:
    """Capture an OAuth authorization code via a loopback redirect.

    Args:
        authorization_url: Provider authorization URL
        **options: Any CaptureOptions field (port, timeout, open_browser, ...)

    Returns:
        CallbackResult with the code, state and any extra parameters

    Raises:
        OAuthError: The provider redirected back with an error
        CallbackTimeoutError: No redirect arrived within the timeout
        CallbackAbortedError: The abort event was set
        PortInUseError: The callback port is already bound
        MalformedCallbackError: The redirect had neither code nor error

    Example:
        result = await get_auth_code(
            "https://auth.example.com/authorize?client_id=...&state=s1",
            port=8080,
            timeout=60,
        )
        print(result.code)
    """
    return await capture_auth_code(CaptureOptions(authorization_url=authorization_url, **options))


async def capture_auth_code(options: CaptureOptions) -> CallbackResult:
    """Run one capture attempt described by `options`. See get_auth_code()."""
    factory = options.server_factory or create_callback_server
    server = factory()
    headless_task: asyncio.Task[None] | None = None

    try:
        await server.start(
            ServerOptions(
                port=options.port,
                hostname=options.hostname,
                success_html=options.success_html,
                error_html=options.error_html,
                abort_event=options.abort_event,
                on_request=options.on_request,
            )
        )

        if options.open_browser:
            logger.info("Opening browser for authorization...")
            launch_browser(options.authorization_url)
        else:
            headless_task = asyncio.create_task(
                _follow_authorization_redirect(options.authorization_url, options.http_client)
            )

        result = await server.wait_for_callback(options.callback_path, options.timeout)

        # OAuth errors are an outcome the caller must handle, never a return value
        if result.error:
            raise OAuthError(result.error, result.error_description, result.error_uri)

        if result.is_malformed():
            raise MalformedCallbackError(
                "OAuth callback contained neither an authorization code nor an error"
            )

        return result

    finally:
        await server.stop()
        if headless_task is not None:
            headless_task.cancel()
            # Retrieves the outcome even when the fetch already failed
            await asyncio.gather(headless_task, return_exceptions=True)


async def _follow_authorization_redirect(
    authorization_url: str,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    """Fetch the authorization URL and follow at most one redirect.

    Stands in for the browser when no display is available. A provider that
    auto-approves answers with a redirect to the callback URL; fetching that
    target delivers the callback. Failures are ignored: a provider that
    needs real user interaction will simply never redirect.
    """
    client = http_client or httpx.AsyncClient(timeout=10.0)
    should_close = http_client is None

    try:
        response = await client.get(authorization_url, follow_redirects=False)
        location = response.headers.get("location")
        if response.is_redirect and location:
            target = urljoin(str(response.url), location)
            logger.debug(f"Following authorization redirect to {target}")
            await client.get(target, follow_redirects=False)
    except httpx.HTTPError as e:
        logger.debug(f"Headless authorization fetch failed: {e}")
    finally:
        if should_close:
            await client.aclose()

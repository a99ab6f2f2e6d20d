"""Tests for capturing an authorization code end to end."""

import asyncio
import gc
import time
from unittest.mock import patch

import httpx
import pytest

from oauth_callback.adapter import LoopbackListener
from oauth_callback.capture import CaptureOptions, capture_auth_code, get_auth_code
from oauth_callback.errors import (
    CallbackAbortedError,
    CallbackTimeoutError,
    MalformedCallbackError,
    OAuthError,
    PortInUseError,
)
from oauth_callback.server import CallbackResult, ServerOptions

AUTH_URL = "https://auth.example/authorize?state=s1"


class FakeServer:
    """In-process CallbackServer returning a canned outcome."""

    def __init__(self, outcome: CallbackResult | Exception):
        self.outcome = outcome
        self.started_with: ServerOptions | None = None
        self.waited_on: str | None = None
        self.stopped = False

    async def start(self, options: ServerOptions) -> None:
        self.started_with = options

    async def wait_for_callback(self, path: str, timeout: float | None) -> CallbackResult:
        self.waited_on = path
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def stop(self) -> None:
        self.stopped = True


class TestHeadlessCapture:
    """Capture against a mock provider that redirects without a browser."""

    @pytest.mark.asyncio
    async def test_success_scenario(self, free_port, provider_transport) -> None:
        """Test the redirect with code=abc123&state=s1 resolves to that code."""
        redirect = f"http://127.0.0.1:{free_port}/callback?code=abc123&state=s1"
        async with httpx.AsyncClient(transport=provider_transport(redirect)) as client:
            result = await get_auth_code(
                AUTH_URL,
                port=free_port,
                hostname="127.0.0.1",
                open_browser=False,
                timeout=5,
                http_client=client,
            )

        assert result.code == "abc123"
        assert result.state == "s1"

    @pytest.mark.asyncio
    async def test_access_denied_scenario(self, free_port, provider_transport) -> None:
        """Test a provider error is raised as OAuthError."""
        redirect = (
            f"http://127.0.0.1:{free_port}/callback"
            "?error=access_denied&error_description=User+declined&state=s1"
        )
        async with httpx.AsyncClient(transport=provider_transport(redirect)) as client:
            with pytest.raises(OAuthError) as exc_info:
                await get_auth_code(
                    AUTH_URL,
                    port=free_port,
                    hostname="127.0.0.1",
                    open_browser=False,
                    timeout=5,
                    http_client=client,
                )

        assert exc_info.value.error == "access_denied"
        assert exc_info.value.error_description == "User declined"

    @pytest.mark.asyncio
    async def test_timeout_scenario(self, free_port, provider_transport) -> None:
        """Test that no redirect within 50ms rejects promptly with a timeout."""
        async with httpx.AsyncClient(transport=provider_transport(None)) as client:
            started = time.monotonic()
            with pytest.raises(CallbackTimeoutError):
                await get_auth_code(
                    AUTH_URL,
                    port=free_port,
                    hostname="127.0.0.1",
                    open_browser=False,
                    timeout=0.05,
                    http_client=client,
                )
            elapsed = time.monotonic() - started

        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_malformed_callback(self, free_port, provider_transport) -> None:
        redirect = f"http://127.0.0.1:{free_port}/callback?state=s1"
        async with httpx.AsyncClient(transport=provider_transport(redirect)) as client:
            with pytest.raises(MalformedCallbackError):
                await get_auth_code(
                    AUTH_URL,
                    port=free_port,
                    hostname="127.0.0.1",
                    open_browser=False,
                    timeout=5,
                    http_client=client,
                )

    @pytest.mark.asyncio
    async def test_custom_callback_path(self, free_port, provider_transport) -> None:
        redirect = f"http://127.0.0.1:{free_port}/oauth/done?code=xyz"
        async with httpx.AsyncClient(transport=provider_transport(redirect)) as client:
            result = await get_auth_code(
                AUTH_URL,
                port=free_port,
                hostname="127.0.0.1",
                callback_path="/oauth/done",
                open_browser=False,
                timeout=5,
                http_client=client,
            )

        assert result.code == "xyz"

    @pytest.mark.asyncio
    async def test_port_released_after_capture(self, free_port, provider_transport) -> None:
        """Test that the listener is closed whatever the outcome."""
        async with httpx.AsyncClient(transport=provider_transport(None)) as client:
            with pytest.raises(CallbackTimeoutError):
                await get_auth_code(
                    AUTH_URL,
                    port=free_port,
                    hostname="127.0.0.1",
                    open_browser=False,
                    timeout=0.05,
                    http_client=client,
                )

        listener = LoopbackListener()
        await listener.start("127.0.0.1", free_port, lambda request: None)
        await listener.close()

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_reported_as_unretrieved(self, free_port) -> None:
        """Test that a fetch that died early still has its exception collected."""
        loop = asyncio.get_running_loop()
        reported: list[dict] = []
        loop.set_exception_handler(lambda _, context: reported.append(context))

        async def broken_fetch(url: str, http_client: httpx.AsyncClient | None = None) -> None:
            raise ValueError("bad Location header")

        try:
            with patch("oauth_callback.capture._follow_authorization_redirect", broken_fetch):
                with pytest.raises(CallbackTimeoutError):
                    await get_auth_code(
                        AUTH_URL,
                        port=free_port,
                        hostname="127.0.0.1",
                        open_browser=False,
                        timeout=0.05,
                    )
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(None)

        assert [c for c in reported if "never retrieved" in c.get("message", "")] == []


class TestBrowserCapture:
    """Capture with the browser launcher mocked."""

    @pytest.mark.asyncio
    async def test_opens_browser_with_url(self, free_port) -> None:
        """Test that the browser is pointed at the authorization URL."""
        pending: list[asyncio.Task] = []

        async def simulate_redirect() -> None:
            async with httpx.AsyncClient(trust_env=False) as client:
                await client.get(f"http://127.0.0.1:{free_port}/callback?code=from-browser")

        def fake_browser(url: str) -> bool:
            pending.append(asyncio.get_running_loop().create_task(simulate_redirect()))
            return True

        with patch("oauth_callback.capture.launch_browser", side_effect=fake_browser) as mock_open:
            result = await get_auth_code(AUTH_URL, port=free_port, hostname="127.0.0.1", timeout=5)
            await asyncio.gather(*pending)

        mock_open.assert_called_once_with(AUTH_URL)
        assert result.code == "from-browser"

    @pytest.mark.asyncio
    async def test_abort_event(self, free_port) -> None:
        event = asyncio.Event()

        def fake_browser(url: str) -> bool:
            asyncio.get_running_loop().call_later(0.05, event.set)
            return True

        with patch("oauth_callback.capture.launch_browser", side_effect=fake_browser):
            with pytest.raises(CallbackAbortedError):
                await get_auth_code(
                    AUTH_URL,
                    port=free_port,
                    hostname="127.0.0.1",
                    timeout=5,
                    abort_event=event,
                )

    @pytest.mark.asyncio
    async def test_port_in_use(self, free_port) -> None:
        blocker = LoopbackListener()
        await blocker.start("127.0.0.1", free_port, lambda request: None)
        try:
            with patch("oauth_callback.capture.launch_browser") as mock_open:
                with pytest.raises(PortInUseError):
                    await get_auth_code(AUTH_URL, port=free_port, hostname="127.0.0.1", timeout=1)
            mock_open.assert_not_called()
        finally:
            await blocker.close()


class TestInjectedServer:
    """Capture with a fake server injected through server_factory."""

    @pytest.mark.asyncio
    async def test_uses_factory_and_stops(self) -> None:
        fake = FakeServer(CallbackResult(code="fake-code", state="s1"))

        with patch("oauth_callback.capture.launch_browser"):
            result = await capture_auth_code(
                CaptureOptions(
                    authorization_url=AUTH_URL,
                    port=4321,
                    callback_path="/cb",
                    server_factory=lambda: fake,
                )
            )

        assert result.code == "fake-code"
        assert fake.started_with is not None
        assert fake.started_with.port == 4321
        assert fake.waited_on == "/cb"
        assert fake.stopped

    @pytest.mark.asyncio
    async def test_stops_on_failure(self) -> None:
        fake = FakeServer(CallbackTimeoutError("timed out"))

        with patch("oauth_callback.capture.launch_browser"):
            with pytest.raises(CallbackTimeoutError):
                await capture_auth_code(
                    CaptureOptions(authorization_url=AUTH_URL, server_factory=lambda: fake)
                )

        assert fake.stopped

    @pytest.mark.asyncio
    async def test_extra_params_preserved(self) -> None:
        fake = FakeServer(CallbackResult(code="c", extra={"iss": "https://auth.example"}))

        with patch("oauth_callback.capture.launch_browser"):
            result = await get_auth_code(AUTH_URL, server_factory=lambda: fake)

        assert result.extra == {"iss": "https://auth.example"}

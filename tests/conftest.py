"""Shared fixtures and utilities for oauth-callback tests."""

import socket
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from oauth_callback.tokens import ClientInfo, Tokens

AUTH_HOST = "auth.example"


# ============================================================================
# Network Fixtures
# ============================================================================


@pytest.fixture
def free_port() -> int:
    """Find a port on 127.0.0.1 that is free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port: int = s.getsockname()[1]
    return port


def make_provider_transport(redirect_to: str | None) -> httpx.MockTransport:
    """Mock authorization server that auto-approves.

    Requests to AUTH_HOST answer with a 302 to `redirect_to` (or 200 when it
    is None, i.e. a provider waiting for user interaction). Anything else is
    forwarded to the real loopback callback server.
    """

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == AUTH_HOST:
            if redirect_to is None:
                return httpx.Response(200, text="<html>Sign in</html>")
            return httpx.Response(302, headers={"location": redirect_to})

        async with httpx.AsyncClient(trust_env=False) as real:
            response = await real.get(str(request.url))
        return httpx.Response(response.status_code, content=response.content)

    return httpx.MockTransport(handler)


@pytest.fixture
def provider_transport():
    """Factory for the mock authorization server transport."""
    return make_provider_transport


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def valid_tokens() -> Tokens:
    """Tokens expiring in an hour, with a refresh token."""
    return Tokens(
        access_token="access-123",
        refresh_token="refresh-456",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        scope="read write",
    )


@pytest.fixture
def expiring_tokens() -> Tokens:
    """Tokens inside the expiry buffer, without a refresh token."""
    return Tokens(
        access_token="access-old",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
    )


@pytest.fixture
def sample_client() -> ClientInfo:
    return ClientInfo(
        client_id="client-abc",
        client_secret="secret-xyz",
        client_id_issued_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def temp_store_dir() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def no_keyring() -> Generator[None, None, None]:
    """Make the keyring unavailable so stores use the derived key."""
    with patch(
        "oauth_callback.storage.encrypted.keyring.get_password",
        side_effect=Exception("No keyring"),
    ):
        yield

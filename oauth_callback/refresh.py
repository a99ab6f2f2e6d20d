"""Refresh-token grant (RFC 6749 Section 6)."""

import logging
from typing import Any

import httpx

from .tokens import ClientInfo

logger = logging.getLogger(__name__)


class TokenRefreshError(Exception):
    """Error while refreshing an access token."""

    pass


def _safe_error_detail(response: httpx.Response) -> str:
    """Extract only the OAuth error fields; the raw body may contain secrets."""
    try:
        error_data = response.json()
    except ValueError:
        return ""
    if not isinstance(error_data, dict):
        return ""
    return f": {error_data.get('error', '')} - {error_data.get('error_description', '')}"


def _valid_expires_in(value: Any) -> bool:
    """expires_in is optional, otherwise a non-negative number of seconds."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.isdigit()
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


async def refresh_access_token(
    token_endpoint: str,
    client: ClientInfo,
    refresh_token: str,
    scope: str | None = None,
    resource: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange a refresh token for new tokens.

    Args:
        token_endpoint: The authorization server's token endpoint
        client: Client identity; the secret is sent for confidential clients
        refresh_token: The refresh token
        scope: Optional scope to request (must not exceed the original grant)
        resource: Optional RFC 8707 resource indicator

    Returns:
        Token endpoint response as dictionary

    Raises:
        TokenRefreshError: If the request fails or the server rejects it
    """
    http = http_client or httpx.AsyncClient(timeout=30.0)
    should_close = http_client is None

    form: dict[str, str] = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client.client_id,
    }
    if client.is_confidential():
        form["client_secret"] = client.client_secret or ""
    if scope:
        form["scope"] = scope
    if resource:
        form["resource"] = resource

    try:
        response = await http.post(
            token_endpoint,
            data=form,
            headers={"Accept": "application/json"},
        )

        if response.status_code != 200:
            raise TokenRefreshError(
                f"Token refresh failed (HTTP {response.status_code}){_safe_error_detail(response)}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise TokenRefreshError("Token refresh response was not valid JSON") from e

        if not isinstance(result, dict):
            raise TokenRefreshError("Token refresh response must be a JSON object")
        if not isinstance(result.get("access_token"), str) or not result["access_token"]:
            raise TokenRefreshError("Token refresh response missing access_token")
        if not _valid_expires_in(result.get("expires_in")):
            raise TokenRefreshError(
                f"Token refresh response has an invalid expires_in: {result['expires_in']!r}"
            )

        logger.debug("Token refresh succeeded")
        return result

    except httpx.RequestError as e:
        raise TokenRefreshError(f"Network error during token refresh: {e}") from e
    finally:
        if should_close:
            await http.aclose()

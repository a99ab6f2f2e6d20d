"""Token endpoint discovery per RFC 9728 and RFC 8414.

The provider needs a token endpoint to refresh access tokens. When it is
not configured explicitly it is discovered from the protected resource:

1. Protected Resource Metadata (RFC 9728) names the authorization servers
2. Authorization Server Metadata (RFC 8414, or OIDC discovery) of the
   first one names the token endpoint
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

logger = logging.getLogger(__name__)

# Loopback hosts may serve metadata over plain HTTP (local mock providers)
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class DiscoveryError(Exception):
    """Error during OAuth metadata discovery."""

    pass


def _require_https(url: str, context: str) -> None:
    """Reject non-HTTPS endpoints, except on loopback hosts.

    Raises:
        DiscoveryError: If the URL doesn't use HTTPS
    """
    parsed = urlparse(url)
    if parsed.scheme == "https":
        return
    if parsed.scheme == "http" and parsed.hostname in _LOOPBACK_HOSTS:
        return
    raise DiscoveryError(f"{context} must use HTTPS for security, got: {url}")


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


@dataclass
class AuthServerMetadata:
    """OAuth 2.0 Authorization Server Metadata per RFC 8414."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] = field(default_factory=lambda: ["S256"])

    def supports_pkce(self) -> bool:
        return "S256" in self.code_challenge_methods_supported

    def supports_dcr(self) -> bool:
        return self.registration_endpoint is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthServerMetadata":
        """Create from a metadata document, validating endpoint schemes.

        Raises:
            DiscoveryError: If an endpoint is not HTTPS or a required field is missing
        """
        try:
            authorization_endpoint = data["authorization_endpoint"]
            token_endpoint = data["token_endpoint"]
            issuer = data["issuer"]
        except KeyError as e:
            raise DiscoveryError(f"Authorization server metadata missing required field: {e}") from e
        for name, value in (
            ("issuer", issuer),
            ("authorization_endpoint", authorization_endpoint),
            ("token_endpoint", token_endpoint),
        ):
            if not isinstance(value, str):
                raise DiscoveryError(f"Authorization server metadata field {name} must be a string")

        _require_https(authorization_endpoint, "Authorization endpoint")
        _require_https(token_endpoint, "Token endpoint")
        for name in ("registration_endpoint", "revocation_endpoint"):
            if data.get(name):
                if not isinstance(data[name], str):
                    raise DiscoveryError(f"Authorization server metadata field {name} must be a string")
                _require_https(data[name], name.replace("_", " ").capitalize())

        return cls(
            issuer=issuer,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            registration_endpoint=data.get("registration_endpoint"),
            revocation_endpoint=data.get("revocation_endpoint"),
            scopes_supported=data.get("scopes_supported"),
            code_challenge_methods_supported=data.get("code_challenge_methods_supported", ["S256"]),
        )


async def fetch_protected_resource_metadata(
    server_url: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> list[str]:
    """Fetch the authorization servers of a protected resource (RFC 9728).

    Returns:
        The authorization_servers list, empty if the resource publishes
        no metadata

    Raises:
        DiscoveryError: On network errors or an invalid document
    """
    url = urljoin(_origin(server_url), "/.well-known/oauth-protected-resource")
    _require_https(url, "Protected resource metadata URL")

    client = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    logger.debug(f"Fetching protected resource metadata from {url}")

    try:
        response = await client.get(url)
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise DiscoveryError(
                f"Failed to fetch protected resource metadata from {url}: HTTP {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryError(f"Protected resource metadata was not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise DiscoveryError("Protected resource metadata must be a JSON object")

        servers = data.get("authorization_servers") or []
        if not isinstance(servers, list) or not all(isinstance(s, str) for s in servers):
            raise DiscoveryError("Protected resource metadata has an invalid authorization_servers list")
        return servers

    except httpx.RequestError as e:
        raise DiscoveryError(f"Network error fetching resource metadata from {url}: {e}") from e
    finally:
        if should_close:
            await client.aclose()


async def fetch_auth_server_metadata(
    issuer: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> AuthServerMetadata:
    """Fetch Authorization Server Metadata, trying OAuth 2.0 then OIDC discovery.

    Raises:
        DiscoveryError: If no endpoint returns usable metadata
    """
    _require_https(issuer, "Authorization server issuer")

    client = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    base_url = _origin(issuer)
    endpoints = [
        urljoin(base_url, "/.well-known/oauth-authorization-server"),
        urljoin(base_url, "/.well-known/openid-configuration"),
    ]
    errors: list[str] = []

    try:
        for endpoint in endpoints:
            logger.debug(f"Trying auth server metadata endpoint: {endpoint}")
            try:
                response = await client.get(endpoint)
            except httpx.RequestError as e:
                errors.append(f"{endpoint}: {type(e).__name__}: {e}")
                continue

            if response.status_code != 200:
                errors.append(f"{endpoint}: HTTP {response.status_code}")
                continue

            try:
                data = response.json()
            except ValueError as e:
                errors.append(f"{endpoint}: invalid JSON: {e}")
                continue
            if not isinstance(data, dict):
                errors.append(f"{endpoint}: metadata is not a JSON object")
                continue

            return AuthServerMetadata.from_dict(data)

        details = "\n".join(f"  - {err}" for err in errors)
        raise DiscoveryError(f"Failed to fetch auth server metadata from {issuer}:\n{details}")

    finally:
        if should_close:
            await client.aclose()


async def discover_token_endpoint(
    server_url: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> str:
    """Find the token endpoint serving a protected resource.

    Falls back to treating the resource's origin as the issuer when the
    resource publishes no RFC 9728 metadata.

    Raises:
        DiscoveryError: If discovery fails at any step
    """
    client = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    try:
        auth_servers = await fetch_protected_resource_metadata(server_url, client, timeout)
        issuer = auth_servers[0] if auth_servers else _origin(server_url)

        metadata = await fetch_auth_server_metadata(issuer, client, timeout)
        logger.debug(f"Discovered token endpoint {metadata.token_endpoint} for {server_url}")
        return metadata.token_endpoint

    finally:
        if should_close:
            await client.aclose()

"""Provider configuration and environment overrides."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from .adapter import CallbackRequest
from .server import DEFAULT_CALLBACK_PATH, DEFAULT_HOSTNAME, DEFAULT_PORT
from .storage import InMemoryStore, OAuthStore, TokenStore

DEFAULT_STORE_KEY = "mcp-tokens"
DEFAULT_AUTH_TIMEOUT = 300.0  # seconds

# Environment variable -> (option name, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "OAUTH_CALLBACK_PORT": ("port", "int"),
    "OAUTH_CALLBACK_HOSTNAME": ("hostname", "str"),
    "OAUTH_CALLBACK_PATH": ("callback_path", "str"),
    "OAUTH_CALLBACK_TIMEOUT": ("auth_timeout", "float"),
    "OAUTH_CALLBACK_OPEN_BROWSER": ("open_browser", "bool"),
    "OAUTH_CLIENT_ID": ("client_id", "str"),
    "OAUTH_CLIENT_SECRET": ("client_secret", "str"),
    "OAUTH_SCOPE": ("scope", "str"),
    "OAUTH_TOKEN_ENDPOINT": ("token_endpoint", "str"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class BrowserAuthOptions:
    """Configuration for the browser-based OAuth provider.

    Defaults follow RFC 8252 (loopback redirect, PKCE on).

    Attributes:
        client_id: Pre-registered client ID; omit for dynamic registration
        client_secret: Secret for a confidential pre-registered client
        scope: Scope requested in client metadata
        port: Callback port; must match the registered redirect URI
        hostname: Callback hostname ("127.0.0.1" for IPv4 only)
        callback_path: Callback path
        store: Token store (in-memory by default, lost on restart). An
            OAuthStore also persists client registration and session state
        store_key: Namespace for this provider's records in the store
        open_browser: Launch a browser; False for headless/CI runs
        auth_timeout: Seconds to wait for the user to authorize. Also the
            lifetime of a captured, unclaimed authorization code
        use_pkce: Whether the host SDK should use PKCE
        success_html: Custom success page
        error_html: Custom error page template
        on_request: Inspection hook for callback requests
        token_endpoint: Token endpoint used for refresh
        server_url: Protected resource URL, used to discover the token
            endpoint when token_endpoint is not set
        max_retries: Extra authorization attempts after a transport failure
        retry_backoff: Linear backoff unit between attempts, in seconds
    """

    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None
    port: int = DEFAULT_PORT
    hostname: str = DEFAULT_HOSTNAME
    callback_path: str = DEFAULT_CALLBACK_PATH
    store: TokenStore | OAuthStore = field(default_factory=InMemoryStore)
    store_key: str = DEFAULT_STORE_KEY
    open_browser: bool = True
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    use_pkce: bool = True
    success_html: str | None = None
    error_html: str | None = None
    on_request: Callable[[CallbackRequest], Any] | None = None
    token_endpoint: str | None = None
    server_url: str | None = None
    max_retries: int = 2
    retry_backoff: float = 1.0

    @property
    def redirect_url(self) -> str:
        return f"http://{self.hostname}:{self.port}{self.callback_path}"


def _parse_env_value(name: str, raw: str, kind: str) -> Any:
    """Convert an environment string, naming the variable on failure."""
    value = raw.strip()
    if kind == "int":
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got: {raw!r}") from None
    if kind == "float":
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{name} must be a number, got: {raw!r}") from None
    if kind == "bool":
        if value.lower() in _TRUE_VALUES:
            return True
        if value.lower() in _FALSE_VALUES:
            return False
        raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
    return value


def load_options(env_path: Path | None = None, **overrides: Any) -> BrowserAuthOptions:
    """Build provider options from the environment.

    Loads a .env file first (explicit path, else ./.env if present), then
    applies OAUTH_* environment variables. Keyword overrides win over both.

    Raises:
        ValueError: If an environment value cannot be parsed, or an
            override names an unknown option
    """
    env_file = env_path or Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    known = {f.name for f in fields(BrowserAuthOptions)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown options: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for env_name, (option, kind) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is not None and raw != "":
            values[option] = _parse_env_value(env_name, raw, kind)

    values.update(overrides)
    return BrowserAuthOptions(**values)

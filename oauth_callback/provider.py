"""Browser-based OAuth client provider for MCP clients.

The provider keeps the client-side OAuth state an MCP client needs
between calls: client registration, tokens, the PKCE verifier and the
authorization code captured from the browser redirect. The host SDK
calls into it from several places at once (initial connect, re-auth
after a 401, explicit invalidation) without serializing those calls,
so the provider does:

- One authorization attempt at a time. Later callers join the attempt
  in flight instead of binding a second listener on the same port.
- One refresh at a time, shared by every caller that needs it.
- A single-use hand-off of the captured code. Reading it marks a code
  exchange as in progress, which changes what invalidate_credentials("all")
  is allowed to clear.

The provider also implements the MCP Python SDK's TokenStorage protocol
and redirect/callback handlers, see create_mcp_auth().
"""

import asyncio
import dataclasses
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Literal

import httpx
from mcp.client.auth import OAuthClientProvider
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken

from .capture import CaptureOptions, capture_auth_code
from .config import BrowserAuthOptions
from .discovery import DiscoveryError, discover_token_endpoint
from .errors import CallbackError, OAuthError
from .refresh import TokenRefreshError, refresh_access_token
from .server import CallbackServer
from .storage import TokenStoreError, is_oauth_store
from .tokens import ClientInfo, OAuthSession, Tokens

logger = logging.getLogger(__name__)

CLIENT_NAME = "OAuth Callback Handler"

InvalidationScope = Literal["all", "client", "tokens", "verifier"]
_INVALIDATION_SCOPES = ("all", "client", "tokens", "verifier")


class ProviderError(Exception):
    """Error in the OAuth provider."""

    pass


class CodeVerifierNotFoundError(ProviderError):
    """The PKCE code verifier was requested before one was saved."""

    pass


class AuthorizationFailedError(ProviderError):
    """Every authorization attempt failed with a non-OAuth error."""

    pass


class ClientPhase(Enum):
    NO_CLIENT = "no_client"
    REGISTERED = "registered"
    STATIC = "static"


class TokenPhase(Enum):
    NOT_LOADED = "not_loaded"
    NO_TOKENS = "no_tokens"
    VALID = "valid"
    REFRESHING = "refreshing"


@dataclass
class ProviderState:
    """Where the provider stands.

    Attributes:
        client: How the client identity was obtained
        tokens: Token lifecycle phase. NOT_LOADED until the store was read
        exchanging_code: A captured code was handed to the SDK and the token
            exchange has not finished; invalidate_credentials("all") then
            only clears tokens
    """

    client: ClientPhase = ClientPhase.NO_CLIENT
    tokens: TokenPhase = TokenPhase.NOT_LOADED
    exchanging_code: bool = False


@dataclass(frozen=True)
class PendingAuthCode:
    """Authorization code captured from the redirect, waiting to be exchanged."""

    code: str
    state: str | None = None


def _to_oauth_token(tokens: Tokens) -> OAuthToken:
    return OAuthToken.model_validate(tokens.to_token_response())


def _epoch(value: Any) -> int | None:
    return int(value.timestamp()) if value is not None else None


class BrowserOAuthProvider:
    """OAuth client provider that authorizes through the user's browser.

    Usage:
        provider = BrowserOAuthProvider(BrowserAuthOptions(port=8080))
        auth = provider.create_mcp_auth("https://mcp.example.com/mcp")
        async with streamablehttp_client(url, auth=auth) as (read, write, _):
            ...
    """

    def __init__(
        self,
        options: BrowserAuthOptions | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        server_factory: Callable[[], CallbackServer] | None = None,
        **overrides: Any,
    ):
        """Initialize the provider.

        Args:
            options: Provider configuration (defaults if omitted)
            http_client: HTTP client for discovery and refresh requests
            server_factory: Callback server factory passed to each capture
            **overrides: BrowserAuthOptions fields overriding `options`
        """
        options = options or BrowserAuthOptions()
        if overrides:
            options = dataclasses.replace(options, **overrides)

        self._options = options
        self._store = options.store
        self._store_key = options.store_key
        self._extended_store = is_oauth_store(options.store)
        self._http_client = http_client
        self._server_factory = server_factory

        self._state = ProviderState()
        if options.client_id:
            self._state.client = ClientPhase.STATIC

        self._client_info: ClientInfo | None = None
        self._tokens: Tokens | None = None
        self._code_verifier: str | None = None
        self._session_state: str | None = None
        self._pending: PendingAuthCode | None = None
        self._pending_timer: asyncio.TimerHandle | None = None
        self._token_endpoint: str | None = options.token_endpoint

        self._load_task: asyncio.Future[None] | None = None
        self._auth_task: asyncio.Future[None] | None = None
        self._refresh_task: asyncio.Future[Tokens] | None = None

    # Configuration

    @property
    def options(self) -> BrowserAuthOptions:
        return self._options

    @property
    def state_machine(self) -> ProviderState:
        """Snapshot of the current provider state."""
        return dataclasses.replace(self._state)

    @property
    def redirect_url(self) -> str:
        return self._options.redirect_url

    @property
    def use_pkce(self) -> bool:
        return self._options.use_pkce

    @property
    def client_metadata(self) -> OAuthClientMetadata:
        """Metadata sent with Dynamic Client Registration."""
        return OAuthClientMetadata(
            client_name=CLIENT_NAME,
            redirect_uris=[self.redirect_url],
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            scope=self._options.scope,
            token_endpoint_auth_method=(
                "client_secret_post" if self._options.client_secret else "none"
            ),
        )

    async def state(self) -> str:
        """Generate a CSRF state value for a new authorization request."""
        self._session_state = secrets.token_urlsafe(32)
        return self._session_state

    # Lazy loading

    async def _ensure_loaded(self) -> None:
        if self._state.tokens is not TokenPhase.NOT_LOADED:
            return
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load_stored_data())
        await asyncio.shield(self._load_task)

    async def _load_stored_data(self) -> None:
        """Read tokens, client registration and session from the store.

        A failing store is treated as empty so the provider can still run
        a fresh authorization.
        """
        stored: Tokens | None = None
        client: ClientInfo | None = None
        session: OAuthSession | None = None

        try:
            stored = await self._store.get(self._store_key)
            if self._extended_store:
                client = await self._store.get_client(self._store_key)  # type: ignore[union-attr]
                session = await self._store.get_session(self._store_key)  # type: ignore[union-attr]
        except Exception as e:
            logger.warning(f"Failed to load stored OAuth data for {self._store_key}: {e}")

        try:
            # save_tokens() may have run while the store was being read
            if self._state.tokens is TokenPhase.NOT_LOADED:
                self._tokens = stored
                self._state.tokens = TokenPhase.VALID if stored else TokenPhase.NO_TOKENS

            if client is not None and client.client_id and self._client_info is None:
                if client.is_secret_expired():
                    logger.info(f"Stored client secret for {self._store_key} has expired, ignoring it")
                else:
                    self._client_info = client
                    if self._state.client is ClientPhase.NO_CLIENT:
                        self._state.client = ClientPhase.REGISTERED

            if session is not None and self._code_verifier is None:
                self._code_verifier = session.code_verifier
                self._session_state = self._session_state or session.state
        finally:
            self._load_task = None

    # Client registration

    async def client_information(self) -> ClientInfo | None:
        """Client identity: static credentials first, then the registered client."""
        if self._options.client_id:
            return ClientInfo(
                client_id=self._options.client_id,
                client_secret=self._options.client_secret,
            )

        await self._ensure_loaded()
        if self._client_info is not None and self._client_info.is_secret_expired():
            logger.info("Registered client secret has expired, client must re-register")
            self._client_info = None
            self._state.client = ClientPhase.NO_CLIENT
        return self._client_info

    async def save_client_information(
        self,
        client_information: ClientInfo | OAuthClientInformationFull | dict[str, Any],
    ) -> None:
        """Cache and persist a dynamically registered client."""
        if isinstance(client_information, ClientInfo):
            info = client_information
        elif isinstance(client_information, OAuthClientInformationFull):
            info = ClientInfo.from_dict(client_information.model_dump(exclude_none=True))
        else:
            info = ClientInfo.from_dict(client_information)

        self._client_info = info
        if self._state.client is not ClientPhase.STATIC:
            self._state.client = ClientPhase.REGISTERED

        if self._extended_store:
            await self._store.set_client(self._store_key, info)  # type: ignore[union-attr]
        logger.debug(f"Saved client registration {info.client_id}")

    # Tokens

    async def tokens(self) -> OAuthToken | None:
        """Current tokens, refreshed when within the expiry buffer.

        Never returns a token known to be expired: if it cannot be refreshed
        the result is None and the SDK starts a new authorization.
        """
        current = await self._current_tokens()
        return _to_oauth_token(current) if current is not None else None

    async def _current_tokens(self) -> Tokens | None:
        await self._ensure_loaded()

        tokens = self._tokens
        if tokens is None:
            return None
        if not tokens.is_expired():
            return tokens

        if not tokens.has_refresh_token():
            logger.debug("Access token expired and no refresh token is available")
            return None

        try:
            return await self._refresh_tokens()
        except (TokenRefreshError, DiscoveryError, TokenStoreError) as e:
            logger.warning(f"Token refresh failed: {e}")
            return None

    async def save_tokens(self, tokens: OAuthToken | dict[str, Any]) -> None:
        """Store tokens from the token endpoint.

        The absolute expiry is computed now from expires_in.
        """
        if isinstance(tokens, OAuthToken):
            response = tokens.model_dump(exclude_none=True)
        else:
            response = dict(tokens)

        record = Tokens.from_token_response(response)
        self._tokens = record
        self._state.tokens = TokenPhase.VALID
        self._state.exchanging_code = False

        await self._store.set(self._store_key, record)
        logger.debug(f"Saved tokens for {self._store_key}")

    async def _refresh_tokens(self) -> Tokens:
        """Refresh the access token, sharing one request among concurrent callers."""
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._do_refresh_tokens())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _refresh_finished(self, task: "asyncio.Future[Tokens]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _do_refresh_tokens(self) -> Tokens:
        tokens = self._tokens
        if tokens is None or not tokens.refresh_token:
            raise TokenRefreshError("No refresh token available")

        client = await self.client_information()
        if client is None or not client.client_id:
            raise TokenRefreshError("No client information available for refresh")

        token_endpoint = await self._resolve_token_endpoint()

        self._state.tokens = TokenPhase.REFRESHING
        try:
            response = await refresh_access_token(
                token_endpoint,
                client,
                tokens.refresh_token,
                http_client=self._http_client,
            )
            refreshed = Tokens.from_token_response(response)
        except (KeyError, ValueError, TypeError) as e:
            self._tokens = None
            self._state.tokens = TokenPhase.NO_TOKENS
            raise TokenRefreshError(f"Invalid token refresh response: {e}") from e
        except TokenRefreshError:
            self._tokens = None
            self._state.tokens = TokenPhase.NO_TOKENS
            raise

        if not refreshed.refresh_token:
            # Servers may omit the refresh token when it is not rotated
            refreshed.refresh_token = tokens.refresh_token

        self._tokens = refreshed
        self._state.tokens = TokenPhase.VALID
        await self._store.set(self._store_key, refreshed)
        logger.info("Access token refreshed")
        return refreshed

    async def _resolve_token_endpoint(self) -> str:
        """Configured token endpoint, else one discovered from server_url."""
        if self._token_endpoint:
            return self._token_endpoint

        if self._options.server_url:
            self._token_endpoint = await discover_token_endpoint(
                self._options.server_url,
                http_client=self._http_client,
            )
            return self._token_endpoint

        raise TokenRefreshError(
            "No token endpoint available for refresh. "
            "Configure token_endpoint or server_url."
        )

    # Authorization

    async def redirect_to_authorization(self, authorization_url: Any) -> None:
        """Send the user to the authorization URL and capture the redirect.

        Concurrent callers join the attempt already in flight.

        Raises:
            OAuthError: The provider reported an error (not retried)
            AuthorizationFailedError: All attempts failed for other reasons
        """
        if self._auth_task is not None:
            logger.debug("Authorization already in progress, waiting for it to finish")
            await asyncio.shield(self._auth_task)
            return

        task = asyncio.ensure_future(self._do_authorization(str(authorization_url)))
        task.add_done_callback(self._authorization_finished)
        self._auth_task = task
        await task

    def _authorization_finished(self, task: "asyncio.Future[None]") -> None:
        if self._auth_task is task:
            self._auth_task = None
        if not task.cancelled():
            task.exception()

    async def _do_authorization(self, authorization_url: str) -> None:
        max_retries = self._options.max_retries
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                result = await capture_auth_code(
                    CaptureOptions(
                        authorization_url=authorization_url,
                        port=self._options.port,
                        hostname=self._options.hostname,
                        callback_path=self._options.callback_path,
                        timeout=self._options.auth_timeout,
                        open_browser=self._options.open_browser,
                        success_html=self._options.success_html,
                        error_html=self._options.error_html,
                        on_request=self._options.on_request,
                        server_factory=self._server_factory,
                        http_client=self._http_client,
                    )
                )
            except OAuthError:
                raise
            except Exception as e:
                last_error = e
                if attempt < max_retries:
                    delay = self._options.retry_backoff * (attempt + 1)
                    logger.warning(
                        f"Authorization attempt {attempt + 1} failed ({type(e).__name__}: {e}), "
                        f"retrying in {delay:g}s"
                    )
                    await asyncio.sleep(delay)
                continue

            if result.code is None:
                raise CallbackError("OAuth callback did not include an authorization code")
            self._set_pending_auth_code(PendingAuthCode(code=result.code, state=result.state))
            return

        raise AuthorizationFailedError(
            f"OAuth authorization failed after {max_retries + 1} attempts: {last_error}"
        ) from last_error

    def _set_pending_auth_code(self, pending: PendingAuthCode) -> None:
        self._cancel_pending_timer()
        self._pending = pending
        # An unclaimed code is useless after the authorization window
        self._pending_timer = asyncio.get_running_loop().call_later(
            self._options.auth_timeout, self._expire_pending_auth_code, pending
        )

    def _expire_pending_auth_code(self, pending: PendingAuthCode) -> None:
        self._pending_timer = None
        if self._pending is pending:
            self._pending = None
            logger.debug("Discarded unclaimed authorization code")

    def _cancel_pending_timer(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
            self._pending_timer = None

    def get_pending_auth_code(self) -> PendingAuthCode | None:
        """Take the captured authorization code. Single use.

        Taking it marks a code exchange as in progress.
        """
        pending = self._pending
        if pending is None:
            return None

        self._pending = None
        self._cancel_pending_timer()
        self._state.exchanging_code = True
        return pending

    # PKCE

    async def save_code_verifier(self, code_verifier: str) -> None:
        self._code_verifier = code_verifier
        if self._extended_store:
            session = OAuthSession(code_verifier=code_verifier, state=self._session_state)
            await self._store.set_session(self._store_key, session)  # type: ignore[union-attr]

    async def code_verifier(self) -> str:
        """The saved PKCE code verifier.

        Raises:
            CodeVerifierNotFoundError: If no verifier was saved
        """
        await self._ensure_loaded()
        if not self._code_verifier:
            raise CodeVerifierNotFoundError("Code verifier not found")
        return self._code_verifier

    # Invalidation

    async def invalidate_credentials(self, scope: InvalidationScope) -> None:
        """Discard credentials of the given scope.

        While a code exchange is in progress, "all" clears only the tokens:
        the SDK asks for a full invalidation as part of the exchange, and
        losing the client or the verifier then would make the exchange fail.
        """
        if scope not in _INVALIDATION_SCOPES:
            raise ValueError(f"Unknown invalidation scope: {scope!r}")

        if scope == "all" and self._state.exchanging_code:
            logger.debug("Code exchange in progress, invalidating tokens only")
            await self._clear_tokens()
            return

        if scope in ("client", "all"):
            self._state.exchanging_code = False

        if scope == "all":
            await self._clear_all()
        elif scope == "client":
            await self._clear_client()
        elif scope == "tokens":
            await self._clear_tokens()
        else:
            await self._clear_verifier()

    async def _clear_tokens(self) -> None:
        self._tokens = None
        self._state.tokens = TokenPhase.NO_TOKENS
        await self._store.delete(self._store_key)

    async def _clear_client(self) -> None:
        self._client_info = None
        if self._state.client is ClientPhase.REGISTERED:
            self._state.client = ClientPhase.NO_CLIENT
        if self._extended_store:
            await self._store.set_client(self._store_key, ClientInfo(client_id=""))  # type: ignore[union-attr]

    async def _clear_verifier(self) -> None:
        self._code_verifier = None
        self._session_state = None
        if self._extended_store:
            await self._store.set_session(self._store_key, OAuthSession())  # type: ignore[union-attr]

    async def _clear_all(self) -> None:
        self._client_info = None
        self._tokens = None
        self._code_verifier = None
        self._session_state = None
        if self._state.client is ClientPhase.REGISTERED:
            self._state.client = ClientPhase.NO_CLIENT
        # A load started before the store is empty would read the old records
        self._state.tokens = TokenPhase.NO_TOKENS
        await self._store.clear()
        if self._state.tokens is TokenPhase.NO_TOKENS:
            self._state.tokens = TokenPhase.NOT_LOADED

    async def validate_resource_url(self, server_url: Any, resource: str | None = None) -> None:
        """Resource indicator validation is not performed."""
        return None

    # MCP Python SDK TokenStorage protocol and handlers

    async def get_tokens(self) -> OAuthToken | None:
        return await self.tokens()

    async def set_tokens(self, tokens: OAuthToken) -> None:
        await self.save_tokens(tokens)

    async def get_client_info(self) -> OAuthClientInformationFull | None:
        info = await self.client_information()
        if info is None:
            return None
        data = self.client_metadata.model_dump()
        data.update(
            client_id=info.client_id,
            client_secret=info.client_secret,
            client_id_issued_at=_epoch(info.client_id_issued_at),
            client_secret_expires_at=_epoch(info.client_secret_expires_at),
        )
        return OAuthClientInformationFull.model_validate(data)

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        await self.save_client_information(client_info)

    async def redirect_handler(self, authorization_url: str) -> None:
        await self.redirect_to_authorization(authorization_url)

    async def callback_handler(self) -> tuple[str, str | None]:
        """Hand the captured code and state to the SDK's token exchange."""
        pending = self.get_pending_auth_code()
        if pending is None:
            raise CallbackError("No authorization code has been captured")
        return pending.code, pending.state

    def create_mcp_auth(self, server_url: str | None = None) -> OAuthClientProvider:
        """Build an httpx auth flow for the MCP SDK backed by this provider.

        Raises:
            ValueError: If no server URL is given or configured
        """
        url = server_url or self._options.server_url
        if not url:
            raise ValueError("server_url is required to create an MCP auth provider")
        return OAuthClientProvider(
            server_url=url,
            client_metadata=self.client_metadata,
            storage=self,
            redirect_handler=self.redirect_handler,
            callback_handler=self.callback_handler,
            timeout=self._options.auth_timeout,
        )


def browser_auth(options: BrowserAuthOptions | None = None, **overrides: Any) -> BrowserOAuthProvider:
    """Create a browser-based OAuth provider for MCP clients.

    Example:
        provider = browser_auth(port=8080, store=EncryptedFileStore())
    """
    return BrowserOAuthProvider(options, **overrides)

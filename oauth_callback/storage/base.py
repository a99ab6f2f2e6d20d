"""Storage contracts consumed by the OAuth provider.

A basic TokenStore only persists tokens. An OAuthStore additionally
persists the client registration and the in-flight session (PKCE
verifier and state), so a restart neither re-registers the client nor
strands a half-finished authorization.

Stores are keyed by a caller-chosen namespace. The provider assumes it is
the only process writing a given key; stores may lock internally but
are not required to.
"""

from typing import Any, Protocol, runtime_checkable

from ..tokens import ClientInfo, OAuthSession, Tokens


@runtime_checkable
class TokenStore(Protocol):
    """Minimal async key-value storage for tokens."""

    async def get(self, key: str) -> Tokens | None: ...

    async def set(self, key: str, tokens: Tokens) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...


@runtime_checkable
class OAuthStore(TokenStore, Protocol):
    """Token storage plus client registration and session recovery."""

    async def get_client(self, key: str) -> ClientInfo | None: ...

    async def set_client(self, key: str, client: ClientInfo) -> None: ...

    async def get_session(self, key: str) -> OAuthSession | None: ...

    async def set_session(self, key: str, session: OAuthSession) -> None: ...


def is_oauth_store(store: Any) -> bool:
    """Check whether a store supports client and session persistence."""
    return all(
        callable(getattr(store, name, None))
        for name in ("get_client", "set_client", "get_session", "set_session")
    )

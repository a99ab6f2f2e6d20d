"""Ephemeral in-memory stores. Contents are lost when the process exits."""

from ..tokens import ClientInfo, OAuthSession, Tokens


class InMemoryStore:
    """Token-only store backed by a dict."""

    def __init__(self) -> None:
        self._tokens: dict[str, Tokens] = {}

    async def get(self, key: str) -> Tokens | None:
        return self._tokens.get(key)

    async def set(self, key: str, tokens: Tokens) -> None:
        self._tokens[key] = tokens

    async def delete(self, key: str) -> None:
        self._tokens.pop(key, None)

    async def clear(self) -> None:
        self._tokens.clear()


class InMemoryOAuthStore(InMemoryStore):
    """In-memory store that also keeps client registrations and sessions."""

    def __init__(self) -> None:
        super().__init__()
        self._clients: dict[str, ClientInfo] = {}
        self._sessions: dict[str, OAuthSession] = {}

    async def get_client(self, key: str) -> ClientInfo | None:
        return self._clients.get(key)

    async def set_client(self, key: str, client: ClientInfo) -> None:
        self._clients[key] = client

    async def get_session(self, key: str) -> OAuthSession | None:
        return self._sessions.get(key)

    async def set_session(self, key: str, session: OAuthSession) -> None:
        self._sessions[key] = session

    async def clear(self) -> None:
        await super().clear()
        self._clients.clear()
        self._sessions.clear()

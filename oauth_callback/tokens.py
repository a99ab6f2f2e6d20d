"""OAuth token, client registration and session data structures.

These are the records the provider keeps in memory and hands to a
store. Timestamps are timezone-aware UTC datetimes in memory and
ISO-8601 strings in storage.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any


# Access tokens are treated as expired this long before their real expiry,
# so a token is never handed out just before it stops working mid-request
ACCESS_TOKEN_EXPIRY_BUFFER = 60  # seconds


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds (RFC 7591) into UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_expiry(expires_in: int | float | None) -> datetime | None:
    """Convert a relative expires_in (seconds) into an absolute UTC expiry."""
    if not expires_in:
        return None
    return _utcnow() + timedelta(seconds=int(expires_in))


@dataclass
class Tokens:
    """OAuth token state owned by the provider.

    Attributes:
        access_token: The access token string
        refresh_token: Optional refresh token
        expires_at: Absolute expiry (UTC), computed when the tokens were saved
        scope: Space-separated list of granted scopes
        token_type: Token type (always "Bearer" for MCP)
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    def is_expired(self, buffer_seconds: int = ACCESS_TOKEN_EXPIRY_BUFFER) -> bool:
        """Check if the access token is expired or within buffer_seconds of it.

        Tokens without expiry information are treated as non-expiring; the
        resource server answers 401 if they are not.
        """
        if self.expires_at is None:
            return False
        return _utcnow() >= self.expires_at - timedelta(seconds=buffer_seconds)

    def expires_in(self) -> int | None:
        """Whole seconds until expiry (negative once expired), None if unknown."""
        if self.expires_at is None:
            return None
        return int((self.expires_at - _utcnow()).total_seconds())

    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        if self.scope:
            data["scope"] = self.scope
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tokens":
        """Deserialize from storage (via to_dict)."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_timestamp(data.get("expires_at")),
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "Tokens":
        """Create from a token endpoint response.

        The relative expires_in is turned into an absolute expiry now, at
        save time, so reading the tokens later does not shift it.
        """
        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token"),
            expires_at=calculate_expiry(response.get("expires_in")),
            scope=response.get("scope"),
        )

    def to_token_response(self) -> dict[str, Any]:
        """Render as a token endpoint response with a recomputed expires_in."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": "Bearer",
        }
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        expires_in = self.expires_in()
        if expires_in is not None:
            data["expires_in"] = max(expires_in, 0)
        if self.scope:
            data["scope"] = self.scope
        return data


@dataclass
class ClientInfo:
    """Client identity from Dynamic Client Registration or static config.

    Reused across authorization attempts so a process restart does not
    register a new client every time.
    """

    client_id: str
    client_secret: str | None = None
    client_id_issued_at: datetime | None = None
    client_secret_expires_at: datetime | None = None

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return bool(self.client_secret)

    def is_secret_expired(self) -> bool:
        """Check if the client secret has passed its expiry.

        RFC 7591 uses 0 for "never expires", which arrives here as the epoch.
        """
        expires_at = self.client_secret_expires_at
        if expires_at is None or expires_at.timestamp() == 0:
            return False
        return _utcnow() >= expires_at

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.client_id_issued_at:
            data["client_id_issued_at"] = self.client_id_issued_at.isoformat()
        if self.client_secret_expires_at:
            data["client_secret_expires_at"] = self.client_secret_expires_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientInfo":
        return cls(
            client_id=data["client_id"],
            client_secret=data.get("client_secret"),
            client_id_issued_at=_parse_timestamp(data.get("client_id_issued_at")),
            client_secret_expires_at=_parse_timestamp(data.get("client_secret_expires_at")),
        )


@dataclass
class OAuthSession:
    """In-flight authorization state, persisted for crash recovery.

    Exists between "redirect issued" and "code exchanged".
    """

    code_verifier: str | None = None
    state: str | None = None

    def is_empty(self) -> bool:
        return self.code_verifier is None and self.state is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.code_verifier is not None:
            data["code_verifier"] = self.code_verifier
        if self.state is not None:
            data["state"] = self.state
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthSession":
        return cls(code_verifier=data.get("code_verifier"), state=data.get("state"))

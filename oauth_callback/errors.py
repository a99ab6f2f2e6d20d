"""Error types raised by the callback server and capture flow.

Two families live here:
- OAuthError: the provider redirected back with an OAuth error. This is a
  protocol-level outcome and is never retried automatically.
- CallbackError and subclasses: local conditions around the loopback
  listener (timeout, cancellation, port conflicts, misuse).
"""

# Errors the user has to act on (deny, misconfigured scope or client).
USER_ACTIONABLE_ERRORS = frozenset({"access_denied", "invalid_scope", "unauthorized_client"})


class OAuthError(Exception):
    """Error returned by the OAuth provider in the authorization redirect.

    Attributes:
        error: OAuth error code (e.g. "access_denied", "invalid_scope")
        error_description: Human-readable description from the provider
        error_uri: URI with more information about the error
    """

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
    ):
        super().__init__(error_description or error)
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri

    def is_user_actionable(self) -> bool:
        """Check if the error requires user action rather than a retry."""
        return self.error in USER_ACTIONABLE_ERRORS

    def __repr__(self) -> str:
        return (
            f"OAuthError(error={self.error!r}, "
            f"error_description={self.error_description!r}, "
            f"error_uri={self.error_uri!r})"
        )


class CallbackError(Exception):
    """Error during OAuth callback handling."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for OAuth callback."""

    pass


class CallbackAbortedError(CallbackError):
    """The wait was cancelled or the server stopped before a callback arrived."""

    pass


class PortInUseError(CallbackError):
    """The loopback address is already bound by another listener."""

    def __init__(self, hostname: str, port: int):
        super().__init__(
            f"Port {port} on {hostname} is already in use. "
            f"Stop the other process or configure a different callback port."
        )
        self.hostname = hostname
        self.port = port


class ListenerActiveError(CallbackError):
    """A waiter is already registered for the callback path."""

    def __init__(self, path: str):
        super().__init__(f"A callback listener is already active for {path}")
        self.path = path


class MalformedCallbackError(CallbackError):
    """The callback carried neither an authorization code nor an error."""

    pass

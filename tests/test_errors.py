"""Tests for error types."""

from oauth_callback.errors import (
    CallbackError,
    CallbackTimeoutError,
    ListenerActiveError,
    OAuthError,
    PortInUseError,
)


class TestOAuthError:
    """Tests for OAuthError."""

    def test_message_prefers_description(self) -> None:
        error = OAuthError("access_denied", "User declined")
        assert str(error) == "User declined"
        assert error.error == "access_denied"

    def test_message_falls_back_to_code(self) -> None:
        assert str(OAuthError("server_error")) == "server_error"

    def test_user_actionable(self) -> None:
        assert OAuthError("access_denied").is_user_actionable()
        assert OAuthError("invalid_scope").is_user_actionable()
        assert not OAuthError("temporarily_unavailable").is_user_actionable()

    def test_repr(self) -> None:
        error = OAuthError("invalid_scope", "Bad scope", "https://auth.example/e")
        assert repr(error) == (
            "OAuthError(error='invalid_scope', error_description='Bad scope', "
            "error_uri='https://auth.example/e')"
        )

    def test_not_a_callback_error(self) -> None:
        """Test that provider errors are distinct from local callback failures."""
        assert not isinstance(OAuthError("access_denied"), CallbackError)


class TestCallbackErrors:
    """Tests for callback error subclasses."""

    def test_hierarchy(self) -> None:
        assert issubclass(CallbackTimeoutError, CallbackError)
        assert issubclass(PortInUseError, CallbackError)
        assert issubclass(ListenerActiveError, CallbackError)

    def test_port_in_use_message(self) -> None:
        error = PortInUseError("localhost", 3000)
        assert "Port 3000 on localhost is already in use" in str(error)
        assert error.port == 3000

    def test_listener_active_message(self) -> None:
        error = ListenerActiveError("/callback")
        assert str(error) == "A callback listener is already active for /callback"
        assert error.path == "/callback"

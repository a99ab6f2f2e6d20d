"""Tests for provider options and environment loading."""

import os
from unittest.mock import patch

import pytest

from oauth_callback.config import (
    DEFAULT_AUTH_TIMEOUT,
    DEFAULT_STORE_KEY,
    BrowserAuthOptions,
    load_options,
)
from oauth_callback.storage import InMemoryOAuthStore, InMemoryStore


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """Empty OAUTH_* environment in a directory without a .env file."""
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ):
        for name in [k for k in os.environ if k.startswith("OAUTH_")]:
            del os.environ[name]
        yield tmp_path


class TestBrowserAuthOptions:
    """Tests for BrowserAuthOptions defaults."""

    def test_defaults(self) -> None:
        options = BrowserAuthOptions()

        assert options.port == 3000
        assert options.hostname == "localhost"
        assert options.callback_path == "/callback"
        assert options.store_key == DEFAULT_STORE_KEY
        assert options.auth_timeout == DEFAULT_AUTH_TIMEOUT
        assert options.open_browser
        assert options.use_pkce
        assert options.max_retries == 2
        assert isinstance(options.store, InMemoryStore)

    def test_each_instance_gets_its_own_store(self) -> None:
        assert BrowserAuthOptions().store is not BrowserAuthOptions().store

    def test_redirect_url(self) -> None:
        options = BrowserAuthOptions(port=8080, hostname="127.0.0.1", callback_path="/oauth/cb")
        assert options.redirect_url == "http://127.0.0.1:8080/oauth/cb"


class TestLoadOptions:
    """Tests for load_options."""

    def test_defaults_without_environment(self, clean_env) -> None:
        options = load_options()
        assert options.port == 3000
        assert options.client_id is None

    def test_environment_overrides(self, clean_env) -> None:
        os.environ.update(
            {
                "OAUTH_CALLBACK_PORT": "8080",
                "OAUTH_CALLBACK_HOSTNAME": "127.0.0.1",
                "OAUTH_CALLBACK_TIMEOUT": "60",
                "OAUTH_CALLBACK_OPEN_BROWSER": "false",
                "OAUTH_CLIENT_ID": "my-client",
                "OAUTH_SCOPE": "read write",
            }
        )
        options = load_options()

        assert options.port == 8080
        assert options.hostname == "127.0.0.1"
        assert options.auth_timeout == 60.0
        assert options.open_browser is False
        assert options.client_id == "my-client"
        assert options.scope == "read write"

    def test_keyword_overrides_win(self, clean_env) -> None:
        os.environ["OAUTH_CALLBACK_PORT"] = "8080"
        store = InMemoryOAuthStore()

        options = load_options(port=9090, store=store)

        assert options.port == 9090
        assert options.store is store

    def test_env_file(self, clean_env) -> None:
        env_file = clean_env / "custom.env"
        env_file.write_text("OAUTH_CLIENT_ID=from-file\nOAUTH_CALLBACK_PORT=7000\n")

        options = load_options(env_file)

        assert options.client_id == "from-file"
        assert options.port == 7000

    def test_default_env_file_in_cwd(self, clean_env) -> None:
        (clean_env / ".env").write_text("OAUTH_TOKEN_ENDPOINT=https://auth.example.com/token\n")
        assert load_options().token_endpoint == "https://auth.example.com/token"

    def test_empty_value_ignored(self, clean_env) -> None:
        os.environ["OAUTH_CALLBACK_PORT"] = ""
        assert load_options().port == 3000

    def test_invalid_int(self, clean_env) -> None:
        os.environ["OAUTH_CALLBACK_PORT"] = "abc"
        with pytest.raises(ValueError, match="OAUTH_CALLBACK_PORT must be an integer"):
            load_options()

    def test_invalid_bool(self, clean_env) -> None:
        os.environ["OAUTH_CALLBACK_OPEN_BROWSER"] = "maybe"
        with pytest.raises(ValueError, match="OAUTH_CALLBACK_OPEN_BROWSER"):
            load_options()

    def test_unknown_override(self, clean_env) -> None:
        with pytest.raises(ValueError, match="Unknown options: colour"):
            load_options(colour="blue")

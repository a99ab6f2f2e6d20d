"""Tests for output module."""

import json

import pytest

from oauth_callback.errors import OAuthError, PortInUseError
from oauth_callback.output import OutputHandler, format_error_json, format_json


class TestFormatJson:
    """Tests for format_json function."""

    def test_format_success(self):
        """Test formatting successful response."""
        parsed = json.loads(format_json({"code": "abc123"}))
        assert parsed == {"success": True, "data": {"code": "abc123"}}

    def test_format_success_false(self):
        parsed = json.loads(format_json({"cleared": False}, success=False))
        assert parsed["success"] is False

    def test_non_serializable_values_stringified(self):
        """Test that values like datetimes fall back to str()."""
        from datetime import datetime, timezone

        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        parsed = json.loads(format_json({"expires_at": expires}))
        assert parsed["data"]["expires_at"] == str(expires)


class TestFormatErrorJson:
    """Tests for format_error_json function."""

    def test_basic_error(self):
        parsed = json.loads(format_error_json(ValueError("bad port")))
        assert parsed["success"] is False
        assert parsed["error"]["type"] == "ValueError"
        assert parsed["error"]["message"] == "bad port"
        assert parsed["error"]["help"] == ""
        assert "error" not in parsed["error"]

    def test_oauth_error_includes_code(self):
        """Test that the provider's error code is reported separately."""
        error = OAuthError("invalid_scope", "Scope not allowed")
        parsed = json.loads(format_error_json(error, help_text="Request fewer scopes"))

        assert parsed["error"]["type"] == "OAuthError"
        assert parsed["error"]["error"] == "invalid_scope"
        assert parsed["error"]["message"] == "Scope not allowed"
        assert parsed["error"]["help"] == "Request fewer scopes"


class TestOutputHandler:
    """Tests for OutputHandler class."""

    def test_default_human_mode(self):
        assert OutputHandler().json_mode is False

    def test_success_json_mode(self, capsys):
        OutputHandler(json_mode=True).success({"code": "x"}, "code: x")
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["data"] == {"code": "x"}

    def test_success_human_mode_with_message(self, capsys):
        OutputHandler().success({"code": "x"}, "code: x")
        assert capsys.readouterr().out == "code: x\n"

    def test_success_human_mode_default(self, capsys):
        """Test that data is pretty-printed when there is no message."""
        OutputHandler().success({"code": "x"})
        assert json.loads(capsys.readouterr().out) == {"code": "x"}

    def test_error_json_mode(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler(json_mode=True).error(PortInUseError("localhost", 3000))

        assert exc_info.value.code == 1
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["error"]["type"] == "PortInUseError"

    def test_error_human_mode(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler().error(ValueError("bad port"), help_text="Use --port")

        assert exc_info.value.code == 1
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Error: bad port" in captured.err
        assert "Use --port" in captured.err

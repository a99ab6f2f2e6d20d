"""CLI output in human-readable or JSON form."""

import json
import sys
from typing import Any, NoReturn

import click


def format_json(data: Any, success: bool = True) -> str:
    """Wrap data in the CLI's JSON envelope."""
    return json.dumps({"success": success, "data": data}, indent=2, default=str)


def format_error_json(error: Exception, help_text: str | None = None) -> str:
    details: dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    # OAuth errors carry the provider's error code separately from the message
    code = getattr(error, "error", None)
    if isinstance(code, str):
        details["error"] = code
    return json.dumps({"success": False, "error": details}, indent=2)


class OutputHandler:
    """Writes command results in the mode chosen on the command line."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(self, error: Exception, help_text: str | None = None) -> NoReturn:
        """Report an error and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

"""CLI entry point for oauth-callback."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import click

from . import __version__
from .capture import get_auth_code
from .config import BrowserAuthOptions, load_options
from .errors import CallbackError, CallbackTimeoutError, OAuthError, PortInUseError
from .output import OutputHandler
from .storage import EncryptedFileStore, TokenStoreError


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """oauth-callback - Capture OAuth authorization codes on a loopback redirect."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_options(ctx: click.Context) -> BrowserAuthOptions:
    """Load options from the environment, exiting on invalid values."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_options(ctx.obj.get("env_path"))
    except ValueError as e:
        output.error(e, help_text="Check the OAUTH_* variables in your environment or .env file.")


@main.command()
@click.argument("authorization_url")
@click.option("--port", "-p", type=int, help="Callback port (default: 3000)")
@click.option("--hostname", help="Callback hostname (default: localhost)")
@click.option("--path", "callback_path", help="Callback path (default: /callback)")
@click.option("--timeout", "-t", type=float, help="Seconds to wait for the redirect")
@click.option("--no-browser", is_flag=True, help="Fetch the URL directly instead of opening a browser")
@click.pass_context
def capture(
    ctx: click.Context,
    authorization_url: str,
    port: int | None,
    hostname: str | None,
    callback_path: str | None,
    timeout: float | None,
    no_browser: bool,
) -> None:
    """Open AUTHORIZATION_URL and print the code from the redirect."""
    output: OutputHandler = ctx.obj["output"]
    options = get_options(ctx)

    port = port if port is not None else options.port
    hostname = hostname or options.hostname
    callback_path = callback_path or options.callback_path
    redirect_url = f"http://{hostname}:{port}{callback_path}"

    if not ctx.obj["json_mode"]:
        click.echo(f"Waiting for the OAuth redirect on {redirect_url} ...", err=True)

    try:
        result = asyncio.run(
            get_auth_code(
                authorization_url,
                port=port,
                hostname=hostname,
                callback_path=callback_path,
                timeout=timeout if timeout is not None else options.auth_timeout,
                open_browser=options.open_browser and not no_browser,
            )
        )
    except OAuthError as e:
        help_text = f"See {e.error_uri}" if e.error_uri else None
        output.error(e, help_text=help_text)
    except PortInUseError as e:
        output.error(e, help_text="Stop the process using the port or choose another with --port.")
    except CallbackTimeoutError as e:
        output.error(e, help_text="Complete the authorization in the browser, or raise --timeout.")
    except CallbackError as e:
        output.error(e)

    data: dict[str, Any] = result.to_dict()
    lines = [f"code: {result.code}"]
    if result.state is not None:
        lines.append(f"state: {result.state}")
    output.success(data, "\n".join(lines))


@main.group()
def store() -> None:
    """Inspect or clear the encrypted token store."""
    pass


def _open_store(ctx: click.Context, store_dir: str | None) -> EncryptedFileStore:
    output: OutputHandler = ctx.obj["output"]
    try:
        return EncryptedFileStore(Path(store_dir) if store_dir else None)
    except OSError as e:
        output.error(e, help_text="Check that the store directory is writable.")


@store.command("status")
@click.option("--key", "-k", default=None, help="Store key (default: mcp-tokens)")
@click.option("--store-dir", type=click.Path(file_okay=False), help="Store directory")
@click.pass_context
def store_status(ctx: click.Context, key: str | None, store_dir: str | None) -> None:
    """Show what is stored under a key. Secrets are never printed."""
    output: OutputHandler = ctx.obj["output"]
    key = key or BrowserAuthOptions().store_key
    file_store = _open_store(ctx, store_dir)

    async def read() -> dict[str, Any]:
        tokens = await file_store.get(key)
        client = await file_store.get_client(key)
        return {
            "key": key,
            "has_tokens": tokens is not None,
            "expired": tokens.is_expired() if tokens else None,
            "expires_at": tokens.expires_at.isoformat() if tokens and tokens.expires_at else None,
            "has_refresh_token": tokens.has_refresh_token() if tokens else False,
            "client_id": client.client_id if client and client.client_id else None,
            "using_keyring": file_store.is_using_keyring(),
        }

    try:
        status = asyncio.run(read())
    except TokenStoreError as e:
        output.error(e, help_text="Run 'oauth-callback store clear' and authorize again.")

    if status["has_tokens"]:
        state = "expired" if status["expired"] else "valid"
        summary = f"[{key}] tokens {state}"
        if status["expires_at"]:
            summary += f" (expires {status['expires_at']})"
    else:
        summary = f"[{key}] no tokens stored"
    if status["client_id"]:
        summary += f"\n  client: {status['client_id']}"
    output.success(status, summary)


@store.command("clear")
@click.option("--store-dir", type=click.Path(file_okay=False), help="Store directory")
@click.confirmation_option(prompt="Delete all stored tokens and client registrations?")
@click.pass_context
def store_clear(ctx: click.Context, store_dir: str | None) -> None:
    """Delete every stored token, client registration and session."""
    output: OutputHandler = ctx.obj["output"]
    file_store = _open_store(ctx, store_dir)
    asyncio.run(file_store.clear())
    output.success({"cleared": True}, "Cleared stored OAuth data.")


if __name__ == "__main__":
    main()

"""oauth-callback - Capture OAuth authorization codes through a loopback redirect."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("oauth-callback")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Capture
    "get_auth_code",
    "CallbackResult",
    "create_callback_server",
    # Errors
    "OAuthError",
    "CallbackError",
    "CallbackTimeoutError",
    "CallbackAbortedError",
    "PortInUseError",
    # MCP provider
    "BrowserOAuthProvider",
    "BrowserAuthOptions",
    "browser_auth",
    "load_options",
    # Stores
    "InMemoryStore",
    "InMemoryOAuthStore",
    "EncryptedFileStore",
]

# Module that defines each lazily exported name
_EXPORTS = {
    "get_auth_code": ".capture",
    "CallbackResult": ".server",
    "create_callback_server": ".server",
    "OAuthError": ".errors",
    "CallbackError": ".errors",
    "CallbackTimeoutError": ".errors",
    "CallbackAbortedError": ".errors",
    "PortInUseError": ".errors",
    "BrowserOAuthProvider": ".provider",
    "browser_auth": ".provider",
    "BrowserAuthOptions": ".config",
    "load_options": ".config",
    "InMemoryStore": ".storage",
    "InMemoryOAuthStore": ".storage",
    "EncryptedFileStore": ".storage",
}


# Lazy imports keep `import oauth_callback` free of the mcp SDK import cost
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)

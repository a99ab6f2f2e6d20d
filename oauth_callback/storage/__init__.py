"""Token, client registration and session stores."""

from .base import OAuthStore, TokenStore, is_oauth_store
from .encrypted import EncryptedFileStore, TokenDecryptionError, TokenStoreError
from .memory import InMemoryOAuthStore, InMemoryStore

__all__ = [
    "TokenStore",
    "OAuthStore",
    "is_oauth_store",
    "InMemoryStore",
    "InMemoryOAuthStore",
    "EncryptedFileStore",
    "TokenStoreError",
    "TokenDecryptionError",
]

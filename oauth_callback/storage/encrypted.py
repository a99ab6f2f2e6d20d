"""Encrypted file storage for OAuth state.

This module provides persistent storage using:
- Fernet symmetric encryption (AES-128-CBC + HMAC)
- OS keyring for encryption key storage (Keychain, libsecret, DPAPI)
- File permissions for defense in depth
- File locking around each read and write

The lock protects single file operations only. Concurrent writers in
different processes can still overwrite each other's updates to the same
key; one process should own a given store key.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator, TypeVar

import keyring
from cryptography.fernet import Fernet, InvalidToken

from ..tokens import ClientInfo, OAuthSession, Tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")

if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "oauth-callback"
KEYRING_USERNAME = "store-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".mcp" / "oauth"

TOKENS_FILE = "tokens.json"
CLIENTS_FILE = "clients.json"
SESSIONS_FILE = "sessions.json"


class TokenStoreError(Exception):
    """Error in token storage operations."""

    pass


class TokenDecryptionError(TokenStoreError):
    """Failed to decrypt a storage file.

    The encryption key has changed (keyring cleared, different machine) or
    the file is corrupted. Clearing the store and re-authenticating recovers.
    """

    pass


def _derive_fallback_key() -> bytes:
    """Derive an encryption key from machine-specific data.

    Used when keyring is not available. Weaker than a keyring-held key but
    still keeps tokens encrypted at rest.
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "oauth-callback")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


class EncryptedFileStore:
    """Encrypted, file-backed OAuthStore.

    Each record type lives in its own file under store_dir, as a JSON
    object keyed by store key, encrypted as a whole and written 0600.
    """

    def __init__(self, store_dir: Path | None = None):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self._cipher: Fernet | None = None
        self._using_keyring = False

        self._init_storage()
        self._init_encryption()

    def _init_storage(self) -> None:
        """Create the storage directory with owner-only permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Load the encryption key from the keyring, or fall back to a derived key."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True

        except Exception as e:
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key)."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def is_using_keyring(self) -> bool:
        return self._using_keyring

    def _read_file(self, filename: str) -> dict[str, Any]:
        """Read and decrypt one storage file under a shared lock."""
        filepath = self.store_dir / filename
        if not filepath.exists():
            return {}
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")

        try:
            with _file_lock(filepath, exclusive=False):
                encrypted = filepath.read_text()
            decrypted = self._cipher.decrypt(encrypted.encode("ascii")).decode("utf-8")
            result: dict[str, Any] = json.loads(decrypted)
            return result
        except InvalidToken as e:
            raise TokenDecryptionError(
                f"Cannot decrypt {filename}. The encryption key may have changed; "
                f"clear the store and re-authenticate."
            ) from e
        except json.JSONDecodeError as e:
            raise TokenDecryptionError(f"Storage file {filename} is corrupted.") from e

    def _write_file(self, filename: str, data: dict[str, Any]) -> None:
        """Encrypt and write one storage file under an exclusive lock."""
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")
        filepath = self.store_dir / filename
        encrypted = self._cipher.encrypt(json.dumps(data, indent=2).encode("utf-8")).decode("ascii")

        with _file_lock(filepath, exclusive=True):
            filepath.write_text(encrypted)
            try:
                filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")

    def _get_record(self, filename: str, key: str, parse: Callable[[dict[str, Any]], T]) -> T | None:
        data = self._read_file(filename)
        if key not in data:
            return None
        try:
            return parse(data[key])
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Invalid record for {key} in {filename}: {e}")
            return None

    def _set_record(self, filename: str, key: str, record: dict[str, Any]) -> None:
        data = self._read_file(filename)
        data[key] = record
        self._write_file(filename, data)

    def _delete_record(self, filename: str, key: str) -> None:
        data = self._read_file(filename)
        if data.pop(key, None) is not None:
            self._write_file(filename, data)

    def _clear(self) -> None:
        for filename in (TOKENS_FILE, CLIENTS_FILE, SESSIONS_FILE):
            filepath = self.store_dir / filename
            if filepath.exists():
                filepath.unlink()
        logger.info("Cleared all stored OAuth data")

    # TokenStore

    async def get(self, key: str) -> Tokens | None:
        return await asyncio.to_thread(self._get_record, TOKENS_FILE, key, Tokens.from_dict)

    async def set(self, key: str, tokens: Tokens) -> None:
        await asyncio.to_thread(self._set_record, TOKENS_FILE, key, tokens.to_dict())
        logger.debug(f"Stored tokens for {key}")

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_record, TOKENS_FILE, key)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    # OAuthStore extensions

    async def get_client(self, key: str) -> ClientInfo | None:
        return await asyncio.to_thread(self._get_record, CLIENTS_FILE, key, ClientInfo.from_dict)

    async def set_client(self, key: str, client: ClientInfo) -> None:
        await asyncio.to_thread(self._set_record, CLIENTS_FILE, key, client.to_dict())
        logger.debug(f"Stored client registration for {key}")

    async def get_session(self, key: str) -> OAuthSession | None:
        return await asyncio.to_thread(self._get_record, SESSIONS_FILE, key, OAuthSession.from_dict)

    async def set_session(self, key: str, session: OAuthSession) -> None:
        await asyncio.to_thread(self._set_record, SESSIONS_FILE, key, session.to_dict())

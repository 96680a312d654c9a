"""
Token storage adapters.

Provides the async ``TokenStore`` interface plus in-memory, JSON file and
OS keyring implementations, keyed by principal.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from resilient_access._features import require_extra
from resilient_access.auth.tokens import TokenData
from resilient_access.errors import StorageError
from resilient_access.telemetry import get_logger

logger = get_logger("resilient_access.auth.store")

DEFAULT_KEYRING_SERVICE = "resilient-access"


class TokenStore(ABC):
    """Durable credential storage keyed by principal."""

    @abstractmethod
    async def load(self, principal: str) -> TokenData | None:
        """Load the stored token.

        Args:
            principal: Credential owner

        Returns:
            Stored token or None

        Raises:
            StorageError: If the backend failed or the record is unreadable
        """
        raise NotImplementedError

    @abstractmethod
    async def save(self, principal: str, token: TokenData) -> None:
        """Store a token, replacing any previous one.

        Raises:
            StorageError: If the write failed; the previous token is kept
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, principal: str) -> None:
        """Remove the stored token. Deleting a missing token is a no-op."""
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    """In-process token store.

    Useful for testing and for hosts that persist credentials elsewhere.
    """

    def __init__(self, tokens: dict[str, TokenData] | None = None) -> None:
        self._tokens: dict[str, TokenData] = dict(tokens or {})

    async def load(self, principal: str) -> TokenData | None:
        return self._tokens.get(principal)

    async def save(self, principal: str, token: TokenData) -> None:
        self._tokens[principal] = token

    async def delete(self, principal: str) -> None:
        self._tokens.pop(principal, None)

    def __contains__(self, principal: object) -> bool:
        return principal in self._tokens


class FileTokenStore(TokenStore):
    """One JSON file per principal, replaced atomically.

    Files are created with owner-only permissions.

    Example:
        >>> store = FileTokenStore("~/.config/resilient-access/tokens")
        >>> await store.save("seller@example.com", token)
    """

    def __init__(self, directory: str | Path) -> None:
        """Initialize file store.

        Args:
            directory: Directory for token files (created if missing)
        """
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, principal: str) -> Path:
        """File path holding ``principal``'s token."""
        digest = hashlib.sha256(principal.encode()).hexdigest()[:32]
        return self._dir / f"{digest}.json"

    async def load(self, principal: str) -> TokenData | None:
        return await asyncio.to_thread(self._load, principal)

    def _load(self, principal: str) -> TokenData | None:
        path = self.path_for(principal)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError("Failed to read token file", principal=principal, cause=e) from e
        try:
            return TokenData.model_validate_json(content)
        except PydanticValidationError as e:
            raise StorageError("Stored token is unreadable", principal=principal, cause=e) from e

    async def save(self, principal: str, token: TokenData) -> None:
        await asyncio.to_thread(self._save, principal, token)

    def _save(self, principal: str, token: TokenData) -> None:
        path = self.path_for(principal)
        tmp = path.with_suffix(".tmp")
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(token.model_dump_json())
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError("Failed to write token file", principal=principal, cause=e) from e

    async def delete(self, principal: str) -> None:
        await asyncio.to_thread(self._delete, principal)

    def _delete(self, principal: str) -> None:
        try:
            self.path_for(principal).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError("Failed to delete token file", principal=principal, cause=e) from e


class KeyringTokenStore(TokenStore):
    """Token store backed by the OS keychain (the ``keyring`` extra).

    Secrets are encrypted at rest by the platform keychain.
    """

    def __init__(self, service: str = DEFAULT_KEYRING_SERVICE) -> None:
        """Initialize keyring store.

        Args:
            service: Keyring service name

        Raises:
            ImportError: If the keyring extra is not installed
        """
        require_extra("keyring", "keyring")
        import keyring
        import keyring.errors

        self._keyring = keyring
        self._service = service

    async def load(self, principal: str) -> TokenData | None:
        return await asyncio.to_thread(self._load, principal)

    def _load(self, principal: str) -> TokenData | None:
        try:
            content = self._keyring.get_password(self._service, principal)
        except self._keyring.errors.KeyringError as e:
            raise StorageError("Keyring read failed", principal=principal, cause=e) from e
        if content is None:
            return None
        try:
            return TokenData.model_validate_json(content)
        except PydanticValidationError as e:
            raise StorageError("Stored token is unreadable", principal=principal, cause=e) from e

    async def save(self, principal: str, token: TokenData) -> None:
        await asyncio.to_thread(self._save, principal, token)

    def _save(self, principal: str, token: TokenData) -> None:
        try:
            self._keyring.set_password(self._service, principal, token.model_dump_json())
        except self._keyring.errors.KeyringError as e:
            raise StorageError("Keyring write failed", principal=principal, cause=e) from e

    async def delete(self, principal: str) -> None:
        await asyncio.to_thread(self._delete, principal)

    def _delete(self, principal: str) -> None:
        try:
            self._keyring.delete_password(self._service, principal)
        except self._keyring.errors.PasswordDeleteError:
            logger.debug("No keyring entry to delete", principal=principal)
        except self._keyring.errors.KeyringError as e:
            raise StorageError("Keyring delete failed", principal=principal, cause=e) from e

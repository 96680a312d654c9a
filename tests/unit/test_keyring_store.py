"""Tests for the keyring token store (requires the keyring extra)."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

keyring = pytest.importorskip("keyring")

from keyring.backend import KeyringBackend  # noqa: E402
from keyring.errors import KeyringError, PasswordDeleteError  # noqa: E402

from resilient_access.auth import KeyringTokenStore, TokenData  # noqa: E402
from resilient_access.errors import StorageError  # noqa: E402


class InMemoryKeyring(KeyringBackend):
    """Keyring backend holding passwords in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}
        self.broken = False

    def get_password(self, service: str, username: str) -> str | None:
        if self.broken:
            raise KeyringError("locked")
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if self.broken:
            raise KeyringError("locked")
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.passwords:
            raise PasswordDeleteError(username)
        del self.passwords[(service, username)]


@pytest.fixture
def backend() -> Iterator[InMemoryKeyring]:
    previous = keyring.get_keyring()
    backend = InMemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


class TestKeyringTokenStore:
    """Tests for KeyringTokenStore."""

    @pytest.mark.asyncio
    async def test_roundtrip(self, backend: InMemoryKeyring) -> None:
        """Test save, load and delete through the keyring."""
        store = KeyringTokenStore(service="resilient-access-test")
        token = TokenData(access_token="a", refresh_token="r", expires_at=100.0)

        await store.save("seller@example.com", token)
        assert ("resilient-access-test", "seller@example.com") in backend.passwords
        assert await store.load("seller@example.com") == token

        await store.delete("seller@example.com")
        await store.delete("seller@example.com")
        assert await store.load("seller@example.com") is None

    @pytest.mark.asyncio
    async def test_backend_failure(self, backend: InMemoryKeyring) -> None:
        """Test keyring errors become StorageError."""
        store = KeyringTokenStore()
        backend.broken = True

        with pytest.raises(StorageError):
            await store.load("p")
        with pytest.raises(StorageError):
            await store.save("p", TokenData(access_token="a", expires_at=1.0))

    @pytest.mark.asyncio
    async def test_unreadable_record(self, backend: InMemoryKeyring) -> None:
        """Test a corrupt keyring entry raises StorageError."""
        backend.passwords[("resilient-access", "p")] = "not json"
        with pytest.raises(StorageError):
            await KeyringTokenStore().load("p")

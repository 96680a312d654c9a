"""
OAuth refresh transports.

``RefreshTransport`` performs the refresh-token exchange; the httpx-based
reference adapter talks to the eBay identity endpoint and maps failures to
typed errors at the boundary.

Client credentials resolve from:
1. Explicit values
2. Environment variables (EBAY_CLIENT_ID / EBAY_CLIENT_SECRET)
3. System keyring (optional)
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from resilient_access._features import HAS_KEYRING
from resilient_access.auth.tokens import TokenData
from resilient_access.clock import Clock, SystemClock
from resilient_access.errors import (
    AuthGrantError,
    OperationTimeoutError,
    TransientNetworkError,
    ValidationError,
    error_from_response,
)
from resilient_access.telemetry import get_logger

if TYPE_CHECKING:
    from types import TracebackType

logger = get_logger("resilient_access.auth.transport")

EBAY_TOKEN_URL = "https://api.ebay.com/identity/v1/oauth2/token"
EBAY_SANDBOX_TOKEN_URL = "https://api.sandbox.ebay.com/identity/v1/oauth2/token"

CLIENT_ID_ENV = "EBAY_CLIENT_ID"
CLIENT_SECRET_ENV = "EBAY_CLIENT_SECRET"
KEYRING_SERVICE = "resilient-access"

_DEFAULT_TIMEOUT = 30.0


class RefreshTransport(ABC):
    """Exchanges a refresh token for a new access token."""

    @abstractmethod
    async def exchange(self, refresh_token: str) -> TokenData:
        """Perform the OAuth refresh round trip.

        Args:
            refresh_token: Current refresh token

        Returns:
            New token data (keeping ``refresh_token`` if none was issued)

        Raises:
            AuthGrantError: The grant is invalid or revoked
            RateLimitError: The endpoint throttled the call
            TransientNetworkError: Timeouts, 5xx and connection failures
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release transport resources."""
        pass


def resolve_client_credentials(
    client_id: str | None = None,
    client_secret: str | None = None,
) -> tuple[str | None, str | None]:
    """Resolve eBay application credentials.

    Resolution order per value:
    1. Explicit value if provided
    2. Environment variable
    3. System keyring (if available)

    Args:
        client_id: Explicit client id
        client_secret: Explicit client secret

    Returns:
        Tuple of (client_id, client_secret); missing values are None
    """
    client_id = client_id or os.getenv(CLIENT_ID_ENV) or _try_keyring("ebay-client-id")
    client_secret = (
        client_secret or os.getenv(CLIENT_SECRET_ENV) or _try_keyring("ebay-client-secret")
    )
    return client_id, client_secret


def _try_keyring(name: str) -> str | None:
    """Try to read a credential from the system keyring.

    Args:
        name: Keyring entry name

    Returns:
        Stored value or None
    """
    if not HAS_KEYRING:
        return None

    import keyring
    import keyring.errors

    try:
        return keyring.get_password(KEYRING_SERVICE, name)
    except keyring.errors.KeyringError as e:
        # Common in containers and headless sessions
        logger.debug("Keyring unavailable", entry=name, error=str(e))
        return None


class HttpRefreshTransport(RefreshTransport):
    """Refresh-token exchange against the eBay identity endpoint.

    Posts a ``grant_type=refresh_token`` form with HTTP basic client
    credentials.

    Example:
        >>> transport = HttpRefreshTransport(sandbox=True)
        >>> token = await transport.exchange(stored.refresh_token)
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        *,
        sandbox: bool = False,
        token_url: str | None = None,
        scopes: list[str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            client_id: eBay application client id
            client_secret: eBay application client secret
            sandbox: Use the sandbox identity endpoint
            token_url: Explicit token endpoint (overrides ``sandbox``)
            scopes: Scopes to request; omitted to keep the grant's scopes
            timeout: Request timeout in seconds
            client: Shared httpx client (not closed by ``aclose``)
            clock: Time source for ``expires_at``
        """
        self._client_id, self._client_secret = resolve_client_credentials(
            client_id, client_secret
        )
        self._token_url = token_url or (EBAY_SANDBOX_TOKEN_URL if sandbox else EBAY_TOKEN_URL)
        self._scopes = list(scopes or [])
        self._timeout = timeout
        self._clock = clock or SystemClock()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def token_url(self) -> str:
        return self._token_url

    async def exchange(self, refresh_token: str) -> TokenData:
        if not self._client_id or not self._client_secret:
            raise AuthGrantError(
                "eBay client credentials are not configured",
                oauth_error="invalid_client",
            ).with_hint(f"Set {CLIENT_ID_ENV} and {CLIENT_SECRET_ENV}")

        form: dict[str, Any] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        if self._scopes:
            form["scope"] = " ".join(self._scopes)

        try:
            response = await self._client.post(
                self._token_url,
                data=form,
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(self._timeout, "token-refresh") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Token endpoint unreachable: {e}", url=self._token_url, cause=e
            ) from e

        body = self._parse_body(response)
        if response.status_code >= 400:
            error = error_from_response(
                response.status_code,
                body,
                dict(response.headers),
                url=self._token_url,
            )
            logger.warning(
                "Token refresh rejected",
                status_code=response.status_code,
                error_class=error.error_class.value,
            )
            raise error

        if body is None:
            raise ValidationError("Token endpoint returned a non-JSON body", field="body")
        try:
            return TokenData.from_oauth_response(
                body, now=self._clock.time(), previous_refresh_token=refresh_token
            )
        except ValueError as e:
            raise ValidationError(str(e), field="access_token") from e

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any] | None:
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpRefreshTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

"""
OAuth token models and refresh bookkeeping types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from resilient_access.resilience.circuit_breaker import CircuitSnapshot

DEFAULT_EXPIRES_IN = 7200


class TokenData(BaseModel):
    """An OAuth access token with its refresh token.

    Times are absolute epoch seconds. Secrets are excluded from ``repr``.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False, description="Bearer access token")
    refresh_token: str | None = Field(
        default=None, repr=False, description="Refresh token, if the grant has one"
    )
    expires_at: float = Field(description="Expiry time (epoch seconds)")
    token_type: str = Field(default="Bearer", description="Token type")
    scope: list[str] = Field(default_factory=list, description="Granted scopes")
    updated_at: float = Field(default=0.0, description="Last update time (epoch seconds)")

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        return value

    @classmethod
    def from_oauth_response(
        cls,
        data: dict[str, Any],
        now: float,
        previous_refresh_token: str | None = None,
    ) -> TokenData:
        """Build token data from an OAuth token-endpoint response.

        Args:
            data: Parsed response body
            now: Current time (epoch seconds)
            previous_refresh_token: Kept when the response carries no new one

        Returns:
            TokenData instance

        Raises:
            ValueError: If the response has no access_token
        """
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("Invalid refresh response: missing access_token")
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now + float(expires_in),
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or [],
            updated_at=now,
        )

    def expires_in(self, now: float) -> float:
        """Seconds until expiry (negative once expired)."""
        return self.expires_at - now

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def needs_refresh(self, now: float, buffer: float) -> bool:
        """Whether ``now`` is inside the refresh buffer before expiry."""
        return now >= self.expires_at - buffer

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


class RefreshState(str, Enum):
    """Lifecycle of one credential."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass(frozen=True)
class RefreshStatus:
    """Snapshot of a credential's refresh bookkeeping.

    Attributes:
        principal: Credential owner
        state: Lifecycle state
        active: Whether autonomous refreshing is on
        has_token: Whether a token is held in memory
        expires_at: Expiry of the held token
        last_refresh: Time of the last successful refresh
        next_refresh: Time the armed timer fires
        consecutive_failures: Failed refresh slots since the last success
        errors: Most recent error messages (oldest first)
        circuit: Circuit snapshot of the refresh operation
    """

    principal: str
    state: RefreshState
    active: bool
    has_token: bool = False
    expires_at: float | None = None
    last_refresh: float | None = None
    next_refresh: float | None = None
    consecutive_failures: int = 0
    errors: tuple[str, ...] = ()
    circuit: CircuitSnapshot | None = None

    @property
    def last_error(self) -> str | None:
        return self.errors[-1] if self.errors else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "principal": self.principal,
            "state": self.state.value,
            "active": self.active,
            "has_token": self.has_token,
            "expires_at": self.expires_at,
            "last_refresh": self.last_refresh,
            "next_refresh": self.next_refresh,
            "consecutive_failures": self.consecutive_failures,
            "errors": list(self.errors),
            "circuit": self.circuit.to_dict() if self.circuit else None,
        }


@dataclass
class RefreshResult:
    """Outcome of one refresh slot.

    Attributes:
        success: Whether a new token was obtained and stored
        token: The new token
        error: The failure
        attempts: Exchange attempts made in this slot
        terminal: Whether the failure stopped the credential
        circuit_tripped: Whether the refresh circuit rejected the exchange
        retry_after: Seconds until the next scheduled attempt, if any
    """

    success: bool
    token: TokenData | None = None
    error: BaseException | None = None
    attempts: int = 0
    terminal: bool = False
    circuit_tripped: bool = False
    retry_after: float | None = None

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None


class TokenEventType(str, Enum):
    """Kinds of credential change notifications."""

    STARTED = "started"
    REFRESHED = "refreshed"
    REFRESH_FAILED = "refresh_failed"
    TERMINAL_FAILURE = "terminal_failure"
    STORED = "stored"
    STOPPED = "stopped"
    SIGNED_OUT = "signed_out"


class TokenEvent(BaseModel):
    """A credential change published on the notifier."""

    model_config = ConfigDict(frozen=True)

    type: TokenEventType = Field(description="Event kind")
    principal: str = Field(description="Credential owner")
    timestamp: float = Field(description="Event time (epoch seconds)")
    source: str | None = Field(default=None, description="Publishing manager id")
    error: str | None = Field(default=None, description="Error message for failures")
    consecutive_failures: int = Field(default=0, description="Failed slots so far")
    expires_at: float | None = Field(default=None, description="Expiry of the new token")
    details: dict[str, Any] = Field(default_factory=dict, description="Extra fields")

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class Provider(str, Enum):
    NONE = "none"
    GOOGLE = "google"
    GITHUB = "github"
    ETHEREUM = "ethereum"


class AuthStatus(str, Enum):
    IDLE = "idle"
    REDIRECTING = "redirecting"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    CONNECTING_WALLET = "connecting_wallet"
    AWAITING_SIGNATURE = "awaiting_signature"
    VERIFYING = "verifying"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


_OAUTH_STATUSES = (AuthStatus.REDIRECTING, AuthStatus.AWAITING_CALLBACK, AuthStatus.EXCHANGING)
_WALLET_STATUSES = (AuthStatus.CONNECTING_WALLET, AuthStatus.AWAITING_SIGNATURE, AuthStatus.VERIFYING)


@dataclass(frozen=True)
class AuthState:
    """Single source of truth for the orchestrator (replaced, never mutated)."""

    status: AuthStatus = AuthStatus.IDLE
    provider: Provider = Provider.NONE
    error: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return self.status in _OAUTH_STATUSES or self.status in _WALLET_STATUSES

    @property
    def phase(self) -> str:
        """Coarse state: idle | oauth_in_progress | wallet_in_progress | authenticated | error."""
        if self.status in _OAUTH_STATUSES:
            return "oauth_in_progress"
        if self.status in _WALLET_STATUSES:
            return "wallet_in_progress"
        if self.status == AuthStatus.AUTHENTICATED:
            return "authenticated"
        if self.status == AuthStatus.ERROR:
            return "error"
        return "idle"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "provider": self.provider.value,
            "phase": self.phase,
            "error": self.error,
        }


@dataclass(frozen=True)
class StateToken:
    """Payload carried through the OAuth redirect as the `state` parameter."""

    nonce: str
    provider: str
    redirect: Optional[str] = None


@dataclass(frozen=True)
class CallbackReceipt:
    code: str
    state: Optional[str] = None


@dataclass(frozen=True)
class WalletSession:
    """Observed wallet connection; owned by the wallet connector."""

    address: Optional[str] = None
    is_connected: bool = False

    @property
    def ready(self) -> bool:
        return bool(self.is_connected and (self.address or "").strip())


@dataclass(frozen=True)
class NonceChallenge:
    message: str
    nonce: Optional[str] = None


class VerifiedIdentity(BaseModel):
    """`{token, user}` as returned by the backend after a proof is accepted."""

    token: str = Field(min_length=1)
    user: Dict[str, Any]

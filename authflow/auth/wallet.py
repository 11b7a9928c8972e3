"""
Sign-In-With-Ethereum flow.

connect -> (wallet reports a connected address) -> fetch challenge -> sign -> verify.

The wallet connection is asynchronous: `begin()` only asks a connector to connect.
The flow continues when the connector (or whatever watches it) reports the session
through `on_session()`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

from authflow.auth.backend import AuthBackend
from authflow.auth.config import AuthConfig
from authflow.auth.errors import AuthExchangeError, FlowBusyError, NoConnectorError, UserRejectedError
from authflow.auth.guard import SingleFlightGuard
from authflow.auth.models import NonceChallenge, VerifiedIdentity, WalletSession

logger = logging.getLogger(__name__)

SIGNING_KEY = "ethereum"


class WalletConnector(Protocol):
    """A key holder the user can connect (browser extension, hardware wallet, ...)."""

    async def connect(self) -> None:
        """Ask the wallet to connect. Raise `UserRejectedError` if the user declines."""

    async def disconnect(self) -> None:
        ...

    async def sign_message(self, message: str) -> str:
        """personal_sign over `message`; raise `UserRejectedError` if declined."""


class SignatureStage(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AWAITING_SIGNATURE = "awaiting_signature"
    VERIFYING = "verifying"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


def build_siwe_message(
    *,
    domain: str,
    address: str,
    uri: str,
    nonce: str,
    statement: str = "Sign in to Multisig Monitor",
    chain_id: int = 1,
    issued_at: Optional[datetime] = None,
) -> str:
    """EIP-4361 message for backends that only hand out a bare nonce."""
    ts = (issued_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
    issued = ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return (
        f"{domain} wants you to sign in with your Ethereum account:\n"
        f"{address}\n"
        "\n"
        f"{statement}\n"
        "\n"
        f"URI: {uri}\n"
        "Version: 1\n"
        f"Chain ID: {chain_id}\n"
        f"Nonce: {nonce}\n"
        f"Issued At: {issued}"
    )


class SignatureFlow:
    def __init__(
        self,
        *,
        connectors: Sequence[WalletConnector],
        backend: AuthBackend,
        cfg: Optional[AuthConfig] = None,
        on_stage: Optional[Callable[[SignatureStage], None]] = None,
    ) -> None:
        self.connectors = list(connectors)
        self.backend = backend
        self.cfg = cfg
        self._on_stage = on_stage
        self.signing = SingleFlightGuard()
        self.stage = SignatureStage.IDLE
        self._connector: Optional[WalletConnector] = None

    def _set(self, stage: SignatureStage) -> None:
        self.stage = stage
        if self._on_stage is not None:
            self._on_stage(stage)

    @property
    def requested(self) -> bool:
        """A sign-in was started and has not finished or been cancelled."""
        return self._connector is not None

    async def begin(self) -> None:
        """
        Start a wallet sign-in with the first available connector.

        Raises:
            NoConnectorError: no connector available
            FlowBusyError: a wallet sign-in is already in flight
            UserRejectedError: the user declined the connection
        """
        if not self.connectors:
            raise NoConnectorError()
        if self._connector is not None:
            raise FlowBusyError()
        self.signing.reset()
        self._connector = self.connectors[0]
        self._set(SignatureStage.CONNECTING)
        try:
            await self._connector.connect()
        except Exception:
            await self._abort()
            raise

    async def on_session(self, session: WalletSession) -> Optional[VerifiedIdentity]:
        """
        Observe a wallet session change.

        Returns the verified identity once the whole challenge sequence succeeded for
        this request; None when the event is irrelevant (no request in flight, not
        connected yet, or signing already started for this request).
        """
        if self._connector is None or not session.ready:
            return None
        if not self.signing.try_claim(SIGNING_KEY):
            logger.debug("Wallet signing already in progress; ignoring session event")
            return None

        address = (session.address or "").strip()
        self._set(SignatureStage.CONNECTED)
        try:
            self._set(SignatureStage.AWAITING_CHALLENGE)
            challenge = await self.backend.fetch_nonce(address)
            message = self._message_for(challenge, address)

            self._set(SignatureStage.AWAITING_SIGNATURE)
            signature = await self._connector.sign_message(message)
            if not signature:
                raise UserRejectedError()

            self._set(SignatureStage.VERIFYING)
            identity = await self.backend.verify_signature(message=message, signature=signature)
        except Exception:
            await self._abort()
            raise

        self._set(SignatureStage.AUTHENTICATED)
        return identity

    async def finish(self) -> None:
        """Release the wallet after the session was established."""
        connector = self._connector
        self._connector = None
        self.signing.reset()
        if connector is not None:
            await self._disconnect(connector)

    async def cancel(self) -> bool:
        """
        Abandon a request that has not reached signing yet.

        Returns True if something was cancelled.
        """
        if self._connector is None or self.signing.claimed is not None:
            return False
        await self._abort(stage=SignatureStage.IDLE)
        return True

    def _message_for(self, challenge: NonceChallenge, address: str) -> str:
        if challenge.message:
            return challenge.message
        if not challenge.nonce:
            raise AuthExchangeError("Nonce request failed: empty challenge", provider="ethereum")
        cfg = self.cfg
        if cfg is None:
            raise AuthExchangeError("Cannot build sign-in message without configuration", provider="ethereum")
        return build_siwe_message(
            domain=cfg.siwe_domain,
            address=address,
            uri=cfg.app_base_url,
            nonce=challenge.nonce,
            statement=cfg.siwe_statement,
            chain_id=cfg.siwe_chain_id,
        )

    async def _abort(self, *, stage: SignatureStage = SignatureStage.ERROR) -> None:
        connector = self._connector
        self._connector = None
        self.signing.reset()
        if connector is not None:
            await self._disconnect(connector)
        self._set(stage)

    async def _disconnect(self, connector: WalletConnector) -> None:
        try:
            await connector.disconnect()
        except Exception as e:
            # Best-effort.
            logger.warning("Wallet disconnect failed: %s", str(e))

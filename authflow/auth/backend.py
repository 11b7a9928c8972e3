"""
Backend auth API client.

Endpoints (all JSON, cookies kept on the session so `credentials: include` holds):
- POST /auth/{provider}/callback   {code, redirect_uri}  -> {token, user}
- POST /auth/ethereum/nonce        {address}             -> {message} | {nonce}
- POST /auth/ethereum/verify       {message, signature}  -> {token, user}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import requests
from pydantic import ValidationError

from authflow.auth.config import AuthConfig
from authflow.auth.errors import AuthExchangeError
from authflow.auth.models import NonceChallenge, VerifiedIdentity
from authflow.auth.util import short

logger = logging.getLogger(__name__)


class AuthBackend(Protocol):
    """Async view of the backend used by the flows. Tests substitute fakes."""

    async def exchange_code(self, provider: str, *, code: str, redirect_uri: str) -> VerifiedIdentity:
        ...

    async def fetch_nonce(self, address: str) -> NonceChallenge:
        ...

    async def verify_signature(self, *, message: str, signature: str) -> VerifiedIdentity:
        ...


class BackendClient(AuthBackend):
    """
    requests-based implementation of `AuthBackend`.

    Calls are blocking; the async methods hop to a worker thread so the event loop
    stays responsive.
    """

    def __init__(self, *, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> "BackendClient":
        return cls(base_url=cfg.api_base_url, timeout=cfg.http_timeout_seconds)

    def _post_json(self, path: str, payload: Dict[str, Any], *, provider: str, what: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self._session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("%s request failed: %s", what, type(e).__name__)
            raise AuthExchangeError(f"{what} failed: backend unreachable", provider=provider) from e
        if r.status_code >= 400:
            # Avoid leaking response bodies; status is enough for the UI.
            logger.warning("%s rejected (status=%d)", what, r.status_code)
            raise AuthExchangeError(
                f"{what} failed (status={r.status_code})", provider=provider, status_code=r.status_code
            )
        try:
            data = r.json()
        except ValueError as e:
            raise AuthExchangeError(f"{what} failed: invalid response", provider=provider) from e
        if not isinstance(data, dict):
            raise AuthExchangeError(f"{what} failed: invalid response", provider=provider)
        return data

    def _identity(self, data: Dict[str, Any], *, provider: str, what: str) -> VerifiedIdentity:
        try:
            return VerifiedIdentity.model_validate(data)
        except ValidationError as e:
            raise AuthExchangeError(f"{what} failed: missing token or user", provider=provider) from e

    def exchange_code_sync(self, provider: str, *, code: str, redirect_uri: str) -> VerifiedIdentity:
        logger.info("Exchanging %s authorization code %s", provider, short(code))
        data = self._post_json(
            f"/auth/{provider}/callback",
            {"code": code, "redirect_uri": redirect_uri},
            provider=provider,
            what=f"{provider.capitalize()} login",
        )
        return self._identity(data, provider=provider, what=f"{provider.capitalize()} login")

    def fetch_nonce_sync(self, address: str) -> NonceChallenge:
        data = self._post_json(
            "/auth/ethereum/nonce",
            {"address": (address or "").lower()},
            provider="ethereum",
            what="Nonce request",
        )
        message = data.get("message")
        nonce = data.get("nonce")
        if isinstance(message, str) and message:
            return NonceChallenge(message=message, nonce=nonce if isinstance(nonce, str) else None)
        if isinstance(nonce, str) and nonce:
            # Bare nonce: the caller assembles the SIWE message.
            return NonceChallenge(message="", nonce=nonce)
        raise AuthExchangeError("Nonce request failed: invalid response", provider="ethereum")

    def verify_signature_sync(self, *, message: str, signature: str) -> VerifiedIdentity:
        logger.info("Verifying signature %s", short(signature))
        data = self._post_json(
            "/auth/ethereum/verify",
            {"message": message, "signature": signature},
            provider="ethereum",
            what="Signature verification",
        )
        return self._identity(data, provider="ethereum", what="Signature verification")

    async def exchange_code(self, provider: str, *, code: str, redirect_uri: str) -> VerifiedIdentity:
        return await asyncio.to_thread(self.exchange_code_sync, provider, code=code, redirect_uri=redirect_uri)

    async def fetch_nonce(self, address: str) -> NonceChallenge:
        return await asyncio.to_thread(self.fetch_nonce_sync, address)

    async def verify_signature(self, *, message: str, signature: str) -> VerifiedIdentity:
        return await asyncio.to_thread(self.verify_signature_sync, message=message, signature=signature)

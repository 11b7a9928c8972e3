"""
Pytest config.

Puts the repo root on sys.path (so `import authflow` works without an install) and
provides in-memory fakes for the collaborators the login flows talk to.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from authflow.auth.config import AuthConfig, load_auth_config  # noqa: E402
from authflow.auth.errors import AuthExchangeError, UserRejectedError  # noqa: E402
from authflow.auth.models import NonceChallenge, VerifiedIdentity  # noqa: E402
from authflow.auth.orchestrator import AuthOrchestrator  # noqa: E402
from authflow.auth.session import InMemoryFlagStore, InMemorySessionStore, RecordingNavigator  # noqa: E402
from authflow.auth.state_token import StateTokenCodec  # noqa: E402

_BASE_CFG = AuthConfig(
    api_base_url="http://api.test",
    http_timeout_seconds=5.0,
    app_base_url="http://app.test",
    google_client_id="google-client",
    github_client_id="github-client",
    state_secret="test-state-secret",
    state_ttl_seconds=600,
    strict_state=False,
    siwe_domain="app.test",
    siwe_chain_id=1,
    siwe_statement="Sign in to Multisig Monitor",
    cookie_secure=False,
    client_ttl_seconds=3600,
    max_clients=100,
)


def make_cfg(**overrides: Any) -> AuthConfig:
    return replace(_BASE_CFG, **overrides)


@pytest.fixture(autouse=True)
def _clear_auth_config_cache():
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


class FakeBackend:
    """Records every backend call; failures and pauses are configurable per endpoint."""

    def __init__(
        self,
        *,
        identity: Optional[VerifiedIdentity] = None,
        challenge: Optional[NonceChallenge] = None,
        exchange_error: Optional[Exception] = None,
        nonce_error: Optional[Exception] = None,
        verify_error: Optional[Exception] = None,
    ) -> None:
        self.identity = identity or VerifiedIdentity(token="t1", user={"id": "u1"})
        self.challenge = challenge or NonceChallenge(message="app.test wants you to sign in\nNonce: abc123")
        self.exchange_error = exchange_error
        self.nonce_error = nonce_error
        self.verify_error = verify_error
        self.exchange_calls: List[Tuple[str, str, str]] = []
        self.nonce_calls: List[str] = []
        self.verify_calls: List[Tuple[str, str]] = []
        self.exchange_gate: Optional[asyncio.Event] = None

    async def exchange_code(self, provider: str, *, code: str, redirect_uri: str) -> VerifiedIdentity:
        self.exchange_calls.append((provider, code, redirect_uri))
        if self.exchange_gate is not None:
            await self.exchange_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.identity

    async def fetch_nonce(self, address: str) -> NonceChallenge:
        self.nonce_calls.append(address)
        await asyncio.sleep(0)
        if self.nonce_error is not None:
            raise self.nonce_error
        return self.challenge

    async def verify_signature(self, *, message: str, signature: str) -> VerifiedIdentity:
        self.verify_calls.append((message, signature))
        await asyncio.sleep(0)
        if self.verify_error is not None:
            raise self.verify_error
        return self.identity


class FakeConnector:
    def __init__(self, *, reject_connect: bool = False, reject_sign: bool = False) -> None:
        self.reject_connect = reject_connect
        self.reject_sign = reject_sign
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.signed: List[str] = []

    async def connect(self) -> None:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.reject_connect:
            raise UserRejectedError("Wallet connection rejected")

    async def disconnect(self) -> None:
        self.disconnect_calls += 1

    async def sign_message(self, message: str) -> str:
        self.signed.append(message)
        await asyncio.sleep(0)
        if self.reject_sign:
            raise UserRejectedError("User rejected the signature request")
        return "0xsignature"


class Harness:
    def __init__(self, cfg: AuthConfig, backend: FakeBackend, connectors: List[FakeConnector]) -> None:
        self.cfg = cfg
        self.backend = backend
        self.connectors = connectors
        self.store = InMemorySessionStore()
        self.flags = InMemoryFlagStore()
        self.navigator = RecordingNavigator()
        self.codec = StateTokenCodec.from_config(cfg)
        self.orch = self._build(self.store, self.flags, self.navigator)
        self.spawned: List[AuthOrchestrator] = []

    def _build(
        self, store: InMemorySessionStore, flags: InMemoryFlagStore, navigator: RecordingNavigator
    ) -> AuthOrchestrator:
        return AuthOrchestrator(
            cfg=self.cfg,
            backend=self.backend,
            session_store=store,
            flags=flags,
            navigator=navigator,
            connectors=self.connectors,
            codec=self.codec,
        )

    def spawn(self) -> AuthOrchestrator:
        """Another orchestrator on the same backend and codec with its own stores (one per HTTP client)."""
        orch = self._build(InMemorySessionStore(), InMemoryFlagStore(), RecordingNavigator())
        self.spawned.append(orch)
        return orch

    @property
    def connector(self) -> FakeConnector:
        return self.connectors[0]


def make_harness(
    *,
    cfg: Optional[AuthConfig] = None,
    backend: Optional[FakeBackend] = None,
    connectors: Optional[List[FakeConnector]] = None,
) -> Harness:
    return Harness(
        cfg or make_cfg(),
        backend or FakeBackend(),
        [FakeConnector()] if connectors is None else connectors,
    )


def exchange_failure(status: int = 401, provider: str = "google") -> AuthExchangeError:
    return AuthExchangeError(
        f"{provider.capitalize()} login failed (status={status})", provider=provider, status_code=status
    )

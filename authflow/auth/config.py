from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse


@dataclass(frozen=True)
class AuthConfig:
    # Backend API (token exchange, nonce, verify)
    api_base_url: str
    http_timeout_seconds: float

    # Where the app itself is served; the OAuth callback is `{app_base_url}/login`
    app_base_url: str

    # OAuth client ids (public values, no secrets on this side)
    google_client_id: Optional[str]
    github_client_id: Optional[str]

    # State token signing
    state_secret: Optional[str]  # None -> random per process
    state_ttl_seconds: int
    strict_state: bool

    # Sign-In-With-Ethereum message fields
    siwe_domain: str
    siwe_chain_id: int
    siwe_statement: str

    # Per-browser login sessions on the HTTP surface
    cookie_secure: bool
    client_ttl_seconds: int
    max_clients: int

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id)

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_client_id)

    @property
    def enabled_providers(self) -> List[str]:
        """OAuth providers in preference order; the first one is the callback default."""
        out: List[str] = []
        if self.google_enabled:
            out.append("google")
        if self.github_enabled:
            out.append("github")
        return out

    @property
    def callback_uri(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/login"


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load login configuration from environment variables.

    A provider is enabled when its client id is set (GOOGLE_CLIENT_ID, GITHUB_CLIENT_ID).
    Ethereum sign-in is always available; it only needs a wallet connector at runtime.
    """
    app_base_url = (_env_str("AUTHFLOW_APP_BASE_URL") or "http://localhost:8080").rstrip("/")
    api_base_url = (_env_str("AUTHFLOW_API_BASE_URL") or "http://localhost:3000").rstrip("/")

    try:
        ttl = int(float(_env_str("AUTHFLOW_STATE_TTL_SECONDS") or "600"))  # 10 min default
    except ValueError:
        ttl = 600
    if ttl <= 60:
        ttl = 60

    try:
        timeout = float(_env_str("AUTHFLOW_HTTP_TIMEOUT_SECONDS") or "10")
    except ValueError:
        timeout = 10.0
    if timeout <= 0:
        timeout = 10.0

    try:
        chain_id = int(_env_str("SIWE_CHAIN_ID") or "1")
    except ValueError:
        chain_id = 1

    try:
        client_ttl = int(float(_env_str("AUTHFLOW_CLIENT_TTL_SECONDS") or "86400"))  # 1 day default
    except ValueError:
        client_ttl = 86400
    if client_ttl < 60:
        client_ttl = 60

    try:
        max_clients = int(_env_str("AUTHFLOW_MAX_CLIENTS") or "10000")
    except ValueError:
        max_clients = 10000
    if max_clients < 1:
        max_clients = 1

    # Default SIWE domain: the host the app is served from.
    siwe_domain = _env_str("SIWE_DOMAIN") or urlparse(app_base_url).netloc or "localhost"

    return AuthConfig(
        api_base_url=api_base_url,
        http_timeout_seconds=timeout,
        app_base_url=app_base_url,
        google_client_id=_env_str("GOOGLE_CLIENT_ID"),
        github_client_id=_env_str("GITHUB_CLIENT_ID"),
        state_secret=_env_str("AUTHFLOW_STATE_SECRET"),
        state_ttl_seconds=ttl,
        strict_state=_env_bool("AUTHFLOW_STRICT_STATE"),
        siwe_domain=siwe_domain,
        siwe_chain_id=chain_id,
        siwe_statement=_env_str("SIWE_STATEMENT") or "Sign in to Multisig Monitor",
        cookie_secure=_env_bool("AUTHFLOW_COOKIE_SECURE", default=app_base_url.startswith("https://")),
        client_ttl_seconds=client_ttl,
        max_clients=max_clients,
    )

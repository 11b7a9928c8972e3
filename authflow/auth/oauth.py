from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

from authflow.auth.backend import AuthBackend
from authflow.auth.config import AuthConfig
from authflow.auth.errors import AuthExchangeError, InvalidStateError
from authflow.auth.guard import SingleFlightGuard
from authflow.auth.models import CallbackReceipt, StateToken, VerifiedIdentity
from authflow.auth.session import Navigator
from authflow.auth.state_token import Err, StateTokenCodec
from authflow.auth.util import short

logger = logging.getLogger(__name__)

MAX_ISSUED_NONCES = 64


@dataclass(frozen=True)
class OAuthProvider:
    name: str
    authorize_endpoint: str
    client_id: str
    scope: str
    extra_params: Dict[str, str] = field(default_factory=dict)


def build_providers(cfg: AuthConfig) -> Dict[str, OAuthProvider]:
    """Enabled OAuth providers, in `cfg.enabled_providers` order."""
    out: Dict[str, OAuthProvider] = {}
    if cfg.google_client_id:
        out["google"] = OAuthProvider(
            name="google",
            authorize_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
            client_id=cfg.google_client_id,
            scope="openid email profile",
            # Refresh token on every consent.
            extra_params={"access_type": "offline", "prompt": "consent"},
        )
    if cfg.github_client_id:
        out["github"] = OAuthProvider(
            name="github",
            authorize_endpoint="https://github.com/login/oauth/authorize",
            client_id=cfg.github_client_id,
            scope="user:email",
        )
    return out


def build_authorization_url(
    p: OAuthProvider,
    *,
    callback_uri: str,
    codec: StateTokenCodec,
    redirect_hint: Optional[str] = None,
) -> Tuple[str, StateToken]:
    """Authorization URL for `p` plus the state payload embedded in it."""
    token = codec.new_token(provider=p.name, redirect=redirect_hint)
    params = {
        "client_id": p.client_id,
        "redirect_uri": callback_uri,
        "response_type": "code",
        "scope": p.scope,
        "state": codec.encode(token),
    }
    params.update(p.extra_params)
    return f"{p.authorize_endpoint}?{urlencode(params)}", token


def parse_callback(url: str) -> Optional[CallbackReceipt]:
    """`code`/`state` from a provider callback URL; None when there is no code."""
    query = parse_qs(urlparse(url).query)
    code = ((query.get("code") or [""])[0]).strip()
    if not code:
        return None
    state = ((query.get("state") or [""])[0]).strip()
    return CallbackReceipt(code=code, state=state or None)


@dataclass(frozen=True)
class CallbackResult:
    provider: str
    identity: VerifiedIdentity
    redirect: Optional[str]


class OAuthFlowManager:
    """
    Authorization-code flow shared by all OAuth providers.

    Both providers return to the same callback URI, so the provider is recovered from
    the state token (falling back to the first configured provider).
    """

    def __init__(
        self,
        *,
        providers: Dict[str, OAuthProvider],
        callback_uri: str,
        codec: StateTokenCodec,
        backend: AuthBackend,
        navigator: Navigator,
        strict_state: bool = False,
        state_ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.providers = providers
        self.callback_uri = callback_uri
        self.codec = codec
        self.backend = backend
        self.navigator = navigator
        self.strict_state = strict_state
        self.state_ttl_seconds = state_ttl_seconds
        self._clock = clock
        # Seen codes age out with the state TTL.
        self.dedup = SingleFlightGuard(ttl_seconds=state_ttl_seconds, clock=clock)
        self._issued_nonces: "OrderedDict[str, float]" = OrderedDict()

    def _prune_nonces(self, now: float) -> None:
        if self.state_ttl_seconds is None:
            return
        cutoff = now - self.state_ttl_seconds
        while self._issued_nonces:
            _nonce, ts = next(iter(self._issued_nonces.items()))
            if ts > cutoff:
                break
            self._issued_nonces.popitem(last=False)

    @property
    def pending_nonces(self) -> int:
        """Strict-state nonces issued and not yet used or expired."""
        return len(self._issued_nonces)

    @property
    def default_provider(self) -> Optional[str]:
        names: List[str] = list(self.providers)
        return names[0] if names else None

    def provider(self, name: str) -> OAuthProvider:
        p = self.providers.get((name or "").strip().lower())
        if p is None:
            raise KeyError(f"OAuth provider not enabled: {name}")
        return p

    def authorization_url(self, provider: str, redirect_hint: Optional[str] = None) -> Tuple[str, StateToken]:
        return build_authorization_url(
            self.provider(provider),
            callback_uri=self.callback_uri,
            codec=self.codec,
            redirect_hint=redirect_hint,
        )

    def begin_authorization(self, provider: str, redirect_hint: Optional[str] = None) -> None:
        url, token = self.authorization_url(provider, redirect_hint)
        if self.strict_state:
            now = self._clock()
            self._prune_nonces(now)
            self._issued_nonces[token.nonce] = now
            while len(self._issued_nonces) > MAX_ISSUED_NONCES:
                self._issued_nonces.popitem(last=False)
        logger.info("Redirecting to %s authorization (redirect=%s)", provider, redirect_hint or "/")
        self.navigator.redirect(url)

    def _resolve_state(self, state: Optional[str]) -> Tuple[str, Optional[str]]:
        decoded = self.codec.decode(state)
        if isinstance(decoded, Err):
            if self.strict_state:
                raise InvalidStateError() from decoded.error()
            logger.info("OAuth state unusable (%s); using defaults", decoded.reason)
            return self.default_provider or "", None

        payload = decoded.value
        if self.strict_state:
            self._prune_nonces(self._clock())
            if self._issued_nonces.pop(payload.nonce, None) is None:
                raise InvalidStateError()
        provider = payload.provider if payload.provider in self.providers else (self.default_provider or "")
        return provider, payload.redirect

    async def handle_callback(
        self,
        code: str,
        state: Optional[str] = None,
        *,
        on_exchange: Optional[Callable[[str], None]] = None,
    ) -> Optional[CallbackResult]:
        """
        Exchange a one-time authorization code.

        Returns:
            CallbackResult, or None when the code was already claimed (duplicate
            delivery) and nothing was sent. `on_exchange(provider)` runs right before
            the exchange request.

        Raises:
            InvalidStateError: strict-state mode rejected the callback
            AuthExchangeError: exchange failed (the code itself stays refused)
        """
        if not self.dedup.try_claim(code):
            logger.debug("Ignoring duplicate callback for code %s", short(code))
            return None
        try:
            provider, redirect = self._resolve_state(state)
            if not provider:
                raise AuthExchangeError("No OAuth provider is configured")
            if on_exchange is not None:
                on_exchange(provider)
            identity = await self.backend.exchange_code(provider, code=code, redirect_uri=self.callback_uri)
        finally:
            self.dedup.release()
        return CallbackResult(provider=provider, identity=identity, redirect=redirect)

"""
Top-level login state machine.

    idle -> oauth_in_progress(provider) -> authenticated | error
    idle -> wallet_in_progress          -> authenticated | error

Exactly one flow is in flight per orchestrator. `error` only carries a message; the
next attempt starts from scratch. All guard state lives on the instance.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urlparse

from authflow.auth.backend import AuthBackend, BackendClient
from authflow.auth.config import AuthConfig
from authflow.auth.errors import AuthFlowError, FlowBusyError, UserRejectedError
from authflow.auth.models import AuthState, AuthStatus, Provider, VerifiedIdentity, WalletSession
from authflow.auth.oauth import OAuthFlowManager, build_providers, parse_callback
from authflow.auth.session import FlagStore, Navigator, SessionEstablisher, SessionStore
from authflow.auth.state_token import StateTokenCodec
from authflow.auth.util import sanitize_next_path
from authflow.auth.wallet import SignatureFlow, SignatureStage, WalletConnector

logger = logging.getLogger(__name__)

Listener = Callable[[AuthState], None]

_WALLET_STAGE_STATUS: Dict[SignatureStage, AuthStatus] = {
    SignatureStage.CONNECTING: AuthStatus.CONNECTING_WALLET,
    SignatureStage.CONNECTED: AuthStatus.CONNECTING_WALLET,
    SignatureStage.AWAITING_CHALLENGE: AuthStatus.CONNECTING_WALLET,
    SignatureStage.AWAITING_SIGNATURE: AuthStatus.AWAITING_SIGNATURE,
    SignatureStage.VERIFYING: AuthStatus.VERIFYING,
}

_GENERIC_FAILURE = "Authentication failed. Please try again."


class AuthOrchestrator:
    def __init__(
        self,
        *,
        cfg: AuthConfig,
        backend: AuthBackend,
        session_store: SessionStore,
        flags: FlagStore,
        navigator: Navigator,
        connectors: Sequence[WalletConnector] = (),
        codec: Optional[StateTokenCodec] = None,
    ) -> None:
        self.cfg = cfg
        self.session_store = session_store
        self.establisher = SessionEstablisher(store=session_store, flags=flags, navigator=navigator)
        self.oauth = OAuthFlowManager(
            providers=build_providers(cfg),
            callback_uri=cfg.callback_uri,
            codec=codec or StateTokenCodec.from_config(cfg),
            backend=backend,
            navigator=navigator,
            strict_state=cfg.strict_state,
            state_ttl_seconds=cfg.state_ttl_seconds,
        )
        self.wallet = SignatureFlow(
            connectors=connectors,
            backend=backend,
            cfg=cfg,
            on_stage=self._on_wallet_stage,
        )
        self._state = AuthState()
        self._listeners: List[Listener] = []

    @classmethod
    def from_config(
        cls,
        cfg: AuthConfig,
        *,
        session_store: SessionStore,
        flags: FlagStore,
        navigator: Navigator,
        connectors: Sequence[WalletConnector] = (),
        backend: Optional[AuthBackend] = None,
    ) -> "AuthOrchestrator":
        return cls(
            cfg=cfg,
            backend=backend or BackendClient.from_config(cfg),
            session_store=session_store,
            flags=flags,
            navigator=navigator,
            connectors=connectors,
        )

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state listener. Returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, status: AuthStatus, provider: Provider = Provider.NONE, error: Optional[str] = None) -> None:
        self._state = AuthState(status=status, provider=provider, error=error)
        logger.debug("Auth state -> %s (provider=%s)", status.value, provider.value)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Auth state listener failed")

    def _on_wallet_stage(self, stage: SignatureStage) -> None:
        status = _WALLET_STAGE_STATUS.get(stage)
        if status is not None:
            self._set(status, Provider.ETHEREUM)

    def _ensure_can_start(self) -> None:
        # An unanswered provider redirect counts as abandoned once a new attempt starts.
        if self._state.in_flight and self._state.status != AuthStatus.AWAITING_CALLBACK:
            raise FlowBusyError()

    def _fail(self, exc: BaseException) -> None:
        if isinstance(exc, UserRejectedError):
            logger.info("Sign-in cancelled by user")
            self._set(AuthStatus.IDLE, error=str(exc))
            return
        if isinstance(exc, AuthFlowError):
            logger.warning("Sign-in failed: %s", str(exc))
            self._set(AuthStatus.ERROR, error=str(exc) or _GENERIC_FAILURE)
            return
        logger.exception("Unexpected sign-in failure", exc_info=exc)
        self._set(AuthStatus.ERROR, error=_GENERIC_FAILURE)

    async def _establish(self, identity: VerifiedIdentity, provider: Provider, redirect: Optional[str]) -> str:
        target = await self.establisher.establish(identity.token, identity.user, redirect)
        self._set(AuthStatus.AUTHENTICATED, provider)
        return target

    # -- entry points ----------------------------------------------------------

    def enter(self, redirect_hint: Optional[str] = None) -> bool:
        """
        (Re)enter the login page.

        If the session store already holds a valid session, navigate straight to the
        redirect target and return True. No flow runs in that case.
        """
        if not self.session_store.is_authenticated:
            return False
        if self._state.status != AuthStatus.AUTHENTICATED:
            self._set(AuthStatus.AUTHENTICATED, self._state.provider)
        self.establisher.resume(redirect_hint)
        return True

    def begin_authorization(self, provider: str, redirect_hint: Optional[str] = None) -> None:
        """
        Start an OAuth flow; ends in a full-page redirect to the provider.

        Raises:
            FlowBusyError: another flow is in flight
            KeyError: provider not enabled
        """
        self._ensure_can_start()
        p = self.oauth.provider(provider)
        self._set(AuthStatus.REDIRECTING, Provider(p.name))
        self.oauth.begin_authorization(p.name, redirect_hint)
        self._set(AuthStatus.AWAITING_CALLBACK, Provider(p.name))

    async def handle_callback(
        self,
        code: str,
        state: Optional[str] = None,
        *,
        redirect_hint: Optional[str] = None,
    ) -> Optional[str]:
        """
        Complete an OAuth flow from the `/login?code=&state=` callback.

        Returns the navigation target on success. Returns None on failure (see
        `state.error`) or when the code was already handled.
        """
        if self._state.phase == "wallet_in_progress":
            raise FlowBusyError()

        def _exchanging(provider: str) -> None:
            self._set(AuthStatus.EXCHANGING, Provider(provider))

        try:
            result = await self.oauth.handle_callback(code, state, on_exchange=_exchanging)
            if result is None:
                return None
            return await self._establish(
                result.identity,
                Provider(result.provider),
                result.redirect or redirect_hint,
            )
        except Exception as e:
            self._fail(e)
            return None

    async def begin_wallet(self) -> None:
        """
        Start the Ethereum signature flow. The rest happens in `on_wallet_session()`.

        Raises:
            FlowBusyError: another flow is in flight
        """
        self._ensure_can_start()
        try:
            await self.wallet.begin()
        except FlowBusyError:
            raise
        except Exception as e:
            self._fail(e)

    async def on_wallet_session(self, session: WalletSession, *, redirect_hint: Optional[str] = None) -> Optional[str]:
        """
        Feed a wallet session change. Returns the navigation target once signed in.
        """
        try:
            identity = await self.wallet.on_session(session)
        except Exception as e:
            self._fail(e)
            return None
        if identity is None:
            return None
        try:
            return await self._establish(identity, Provider.ETHEREUM, redirect_hint)
        except Exception as e:
            self._fail(e)
            return None
        finally:
            await self.wallet.finish()

    async def cancel(self) -> bool:
        """
        Abandon the current flow if it can still be abandoned (wallet not yet signing,
        or OAuth redirect not yet answered). Returns True if the state went back to idle.
        """
        if self._state.phase == "wallet_in_progress":
            if not await self.wallet.cancel():
                return False
            self._set(AuthStatus.IDLE)
            return True
        if self._state.status in (AuthStatus.REDIRECTING, AuthStatus.AWAITING_CALLBACK):
            self._set(AuthStatus.IDLE)
            return True
        return False

    async def close(self) -> None:
        """Tear down: drop guard state and any wallet connection."""
        if self.wallet.requested:
            await self.wallet.finish()
        self.oauth.dedup.reset()

    async def handle_login_url(self, url: str) -> Optional[str]:
        """
        Dispatch a `/login` URL (initial page load or provider callback).

        - already signed in: navigate to `redirect` (or `/`)
        - `code` present: complete the OAuth callback
        - `error` present (provider denied consent): back to idle with a message
        """
        query = parse_qs(urlparse(url).query)

        def _first(name: str) -> Optional[str]:
            vals = query.get(name) or [""]
            return vals[0].strip() or None

        redirect = _first("redirect")
        redirect_hint = sanitize_next_path(redirect) if redirect else None

        if self.enter(redirect_hint):
            return redirect_hint or "/"

        receipt = parse_callback(url)
        if receipt is not None:
            return await self.handle_callback(receipt.code, receipt.state, redirect_hint=redirect_hint)

        if _first("error"):
            self._fail(UserRejectedError())
        return None

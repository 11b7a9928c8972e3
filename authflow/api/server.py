"""
Login HTTP surface.

Serves the `/login` callback route both OAuth providers redirect back to, plus small
JSON endpoints for the login page. Each browser (client cookie) gets its own
orchestrator; see `authflow.api.clients`.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Tuple

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from authflow.api.clients import ClientRegistry, OrchestratorFactory, client_cookie_kwargs, client_cookie_name
from authflow.auth.config import AuthConfig, load_auth_config
from authflow.auth.errors import FlowBusyError
from authflow.auth.models import AuthStatus
from authflow.auth.orchestrator import AuthOrchestrator
from authflow.auth.session import InMemoryFlagStore, InMemorySessionStore, RecordingNavigator

logger = logging.getLogger(__name__)


def _no_store(resp):  # type: ignore[no-untyped-def]
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _default_factory(cfg: AuthConfig) -> OrchestratorFactory:
    def _build() -> AuthOrchestrator:
        return AuthOrchestrator.from_config(
            cfg,
            session_store=InMemorySessionStore(),
            flags=InMemoryFlagStore(),
            navigator=RecordingNavigator(),
        )

    return _build


def _last_target(orch: AuthOrchestrator, kind: str) -> Optional[str]:
    last = getattr(orch.establisher.navigator, "last", None)
    if not last or last[0] != kind:
        return None
    return last[1]


def create_app(
    orchestrator_factory: Optional[OrchestratorFactory] = None,
    *,
    cfg: Optional[AuthConfig] = None,
) -> FastAPI:
    """
    Build the app.

    `orchestrator_factory` builds one orchestrator per new client. Without it, each
    client gets an env-configured orchestrator with in-memory stores and a recording
    navigator. Config is loaded on first use when `cfg` is not given.
    """
    app = FastAPI(title="authflow login")
    app.state.clients = None

    def _registry(request: Request) -> ClientRegistry:
        reg = request.app.state.clients
        if reg is None:
            c = cfg or load_auth_config()
            reg = ClientRegistry(c, orchestrator_factory or _default_factory(c))
            request.app.state.clients = reg
        return reg

    async def _client(request: Request) -> Tuple[AuthOrchestrator, dict]:
        reg = _registry(request)
        orch, cookie_value = await reg.resolve(request.cookies.get(client_cookie_name(reg.cfg)))
        return orch, client_cookie_kwargs(reg.cfg, cookie_value)

    def _reply(resp, cookie: dict):  # type: ignore[no-untyped-def]
        resp.set_cookie(**cookie)
        return _no_store(resp)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.clients is not None:
            await app.state.clients.close()

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True}

    @app.get("/api/auth/providers")
    async def auth_providers(request: Request):
        orch, cookie = await _client(request)
        providers = list(orch.oauth.providers)
        if orch.wallet.connectors:
            providers.append("ethereum")
        return _reply(JSONResponse(content={"ok": True, "providers": providers}), cookie)

    @app.get("/api/auth/state")
    async def auth_state(request: Request):
        orch, cookie = await _client(request)
        return _reply(JSONResponse(content={"ok": True, "state": orch.state.to_dict()}), cookie)

    @app.get("/api/auth/login/{provider}")
    async def auth_login(request: Request, provider: str, redirect: Optional[str] = Query(None)):
        """Start an OAuth flow: 302 to the provider's consent page."""
        orch, cookie = await _client(request)
        try:
            orch.begin_authorization(provider, redirect)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown or disabled provider: {provider}")
        except FlowBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        url = _last_target(orch, "redirect")
        if not url:
            raise HTTPException(status_code=500, detail="Authorization redirect was not produced")
        return _reply(RedirectResponse(url=url, status_code=302), cookie)

    @app.post("/api/auth/cancel")
    async def auth_cancel(request: Request):
        orch, cookie = await _client(request)
        cancelled = await orch.cancel()
        body = {"ok": True, "cancelled": cancelled, "state": orch.state.to_dict()}
        return _reply(JSONResponse(content=body), cookie)

    @app.get("/login")
    async def login(request: Request):
        """Provider callback (`?code=&state=`) and plain login page entry (`?redirect=`)."""
        orch, cookie = await _client(request)
        try:
            target = await orch.handle_login_url(str(request.url))
        except FlowBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if target:
            return _reply(RedirectResponse(url=target, status_code=302), cookie)
        st = orch.state
        if st.status == AuthStatus.ERROR:
            return _reply(JSONResponse(status_code=400, content={"ok": False, "error": st.error}), cookie)
        return _reply(JSONResponse(content={"ok": True, "state": st.to_dict()}), cookie)

    return app


app = create_app()


def run(host: str = "127.0.0.1", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting login server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)

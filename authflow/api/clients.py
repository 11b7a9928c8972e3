"""
Per-browser orchestrators for the HTTP surface.

Every browser gets an opaque client id in a signed cookie. The id keys its own
`AuthOrchestrator` (session store, flags, guards), so concurrent visitors never see
each other's state. Clients idle longer than `client_ttl_seconds` are dropped, and the
least recently used one goes once more than `max_clients` are live.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from authflow.auth.config import AuthConfig
from authflow.auth.orchestrator import AuthOrchestrator
from authflow.auth.util import random_token, short

logger = logging.getLogger(__name__)

CLIENT_SALT = "authflow-login-client-v1"

OrchestratorFactory = Callable[[], AuthOrchestrator]


def client_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-authflow_client" if cfg.cookie_secure else "authflow_client"


def client_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": client_cookie_name(cfg),
        "value": value,
        "max_age": cfg.client_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


@dataclass
class _Client:
    orch: AuthOrchestrator
    last_seen: float


class ClientRegistry:
    def __init__(
        self,
        cfg: AuthConfig,
        factory: OrchestratorFactory,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self._factory = factory
        self._clock = clock
        # No configured secret: cookies only survive as long as this process.
        self._serializer = URLSafeTimedSerializer(secret_key=cfg.state_secret or random_token(32), salt=CLIENT_SALT)
        self._clients: "OrderedDict[str, _Client]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._clients)

    def encode_client_id(self, client_id: str) -> str:
        return self._serializer.dumps(client_id)

    def decode_client_id(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            client_id = self._serializer.loads(value, max_age=self.cfg.client_ttl_seconds)
        except (BadSignature, BadTimeSignature, ValueError):
            return None
        return client_id if isinstance(client_id, str) and client_id else None

    def peek(self, cookie_value: Optional[str]) -> Optional[AuthOrchestrator]:
        """Orchestrator behind a cookie value, without touching its last-seen time."""
        client_id = self.decode_client_id(cookie_value)
        entry = self._clients.get(client_id) if client_id else None
        return entry.orch if entry is not None else None

    async def resolve(self, cookie_value: Optional[str]) -> Tuple[AuthOrchestrator, str]:
        """
        Orchestrator for the browser presenting `cookie_value`.

        Unknown, tampered or expired cookies get a fresh client. Returns the
        orchestrator and the cookie value to send back (re-signed on every request so
        active clients keep their id).
        """
        now = self._clock()
        await self._evict(now)

        client_id = self.decode_client_id(cookie_value)
        entry = self._clients.get(client_id) if client_id else None
        if client_id is None or entry is None:
            client_id = random_token(18)
            entry = _Client(orch=self._factory(), last_seen=now)
            self._clients[client_id] = entry
            logger.debug("New login client %s (%d live)", short(client_id), len(self._clients))
            await self._evict(now)
        else:
            entry.last_seen = now
            self._clients.move_to_end(client_id)
        return entry.orch, self.encode_client_id(client_id)

    async def _evict(self, now: float) -> None:
        cutoff = now - self.cfg.client_ttl_seconds
        stale = []
        while self._clients:
            client_id, entry = next(iter(self._clients.items()))
            if entry.last_seen > cutoff and len(self._clients) <= self.cfg.max_clients:
                break
            self._clients.popitem(last=False)
            stale.append((client_id, entry))
        for client_id, entry in stale:
            logger.debug("Dropping login client %s", short(client_id))
            await entry.orch.close()

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for entry in clients:
            await entry.orch.close()

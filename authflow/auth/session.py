from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

import jwt  # PyJWT

from authflow.auth.util import sanitize_next_path

logger = logging.getLogger(__name__)

JUST_LOGGED_IN_KEY = "justLoggedIn"
DEFAULT_LANDING_PATH = "/"


class SessionStore(Protocol):
    """Durable identity holder (API client / auth context)."""

    async def login(self, token: str, user: Dict[str, Any]) -> None:
        ...

    @property
    def is_authenticated(self) -> bool:
        ...


class FlagStore(Protocol):
    """Short-lived UI-scoped storage (tab session storage)."""

    def set(self, key: str, value: str) -> None:
        ...

    def pop(self, key: str) -> Optional[str]:
        ...


class Navigator(Protocol):
    def redirect(self, url: str) -> None:
        """Full-page redirect to an external URL."""

    def replace(self, path: str) -> None:
        """In-app navigation that replaces the current history entry."""


def _token_expired(token: str, *, now: Optional[float] = None) -> bool:
    """
    True if `token` is a JWT whose `exp` has passed.

    The signature is not checked: the client never holds the signing key, it only
    avoids presenting a session the backend will reject anyway. Opaque tokens never
    expire client-side.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError:
        return False
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return False
    return float(exp) <= (now if now is not None else time.time())


class InMemorySessionStore:
    def __init__(self) -> None:
        self.token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    async def login(self, token: str, user: Dict[str, Any]) -> None:
        self.token = token
        self.user = dict(user or {})

    def logout(self) -> None:
        self.token = None
        self.user = None

    @property
    def is_authenticated(self) -> bool:
        if not self.token:
            return False
        return not _token_expired(self.token)


class InMemoryFlagStore:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def pop(self, key: str) -> Optional[str]:
        return self._data.pop(key, None)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)


class RecordingNavigator:
    """Navigator that records targets; the HTTP layer turns the last one into a redirect."""

    def __init__(self) -> None:
        self.history: List[Tuple[str, str]] = []

    def redirect(self, url: str) -> None:
        self.history.append(("redirect", url))

    def replace(self, path: str) -> None:
        self.history.append(("replace", path))

    @property
    def last(self) -> Optional[Tuple[str, str]]:
        return self.history[-1] if self.history else None


def consume_just_logged_in(flags: FlagStore) -> bool:
    """Read-and-clear the one-shot marker left by a completed login."""
    return flags.pop(JUST_LOGGED_IN_KEY) is not None


class SessionEstablisher:
    """Commits a verified identity, marks the login, then navigates."""

    def __init__(self, *, store: SessionStore, flags: FlagStore, navigator: Navigator) -> None:
        self.store = store
        self.flags = flags
        self.navigator = navigator

    async def establish(self, token: str, user: Dict[str, Any], redirect: Optional[str] = None) -> str:
        """
        Commit the identity and navigate.

        Returns:
            The path navigated to (sanitized `redirect`, or the default landing route).
        """
        await self.store.login(token, user)
        self.flags.set(JUST_LOGGED_IN_KEY, "true")
        target = sanitize_next_path(redirect) if redirect else DEFAULT_LANDING_PATH
        logger.info("Session established for user %s, navigating to %s", (user or {}).get("id"), target)
        self.navigator.replace(target)
        return target

    def resume(self, redirect: Optional[str] = None) -> str:
        """Already-authenticated fast path: navigate without running a flow."""
        target = sanitize_next_path(redirect) if redirect else DEFAULT_LANDING_PATH
        self.navigator.replace(target)
        return target

"""
State token codec.

The token rides through the provider redirect as the `state` query parameter and only
carries UX hints (provider, post-login path). Decoding never raises: callers get an
`Ok` or `Err` and fall back to defaults on `Err`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Union

from itsdangerous import BadData, SignatureExpired, URLSafeTimedSerializer

from authflow.auth.config import AuthConfig
from authflow.auth.errors import DecodeError
from authflow.auth.models import StateToken
from authflow.auth.util import random_token

STATE_SALT = "authflow-oauth-state-v1"


@dataclass(frozen=True)
class Ok:
    value: StateToken


@dataclass(frozen=True)
class Err:
    reason: str

    def error(self) -> DecodeError:
        return DecodeError(self.reason)


DecodeResult = Union[Ok, Err]


class StateTokenCodec:
    def __init__(self, secret: Optional[str] = None, *, max_age_seconds: Optional[int] = None) -> None:
        # No configured secret: tokens are only decodable by this process.
        self._serializer = URLSafeTimedSerializer(secret_key=secret or random_token(32), salt=STATE_SALT)
        self._max_age = max_age_seconds

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> "StateTokenCodec":
        return cls(cfg.state_secret, max_age_seconds=cfg.state_ttl_seconds)

    def new_token(self, *, provider: str, redirect: Optional[str] = None) -> StateToken:
        return StateToken(nonce=random_token(12), provider=provider, redirect=redirect or None)

    def encode(self, payload: StateToken) -> str:
        raw = {"random": payload.nonce, "redirect": payload.redirect, "provider": payload.provider}
        return self._serializer.dumps(json.dumps(raw, separators=(",", ":"), sort_keys=True))

    def decode(self, token: Optional[str]) -> DecodeResult:
        if not token or not token.strip():
            return Err("missing state")
        try:
            raw = self._serializer.loads(token.strip(), max_age=self._max_age)
        except SignatureExpired:
            return Err("state expired")
        except BadData:
            return Err("state signature mismatch")
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return Err("state is not JSON")
        if not isinstance(data, dict):
            return Err("state is not an object")

        nonce = data.get("random")
        provider = data.get("provider")
        redirect = data.get("redirect")
        if not isinstance(nonce, str) or not nonce:
            return Err("state missing nonce")
        if not isinstance(provider, str) or not provider:
            return Err("state missing provider")
        if redirect is not None and not isinstance(redirect, str):
            return Err("state redirect is not a string")
        return Ok(StateToken(nonce=nonce, provider=provider, redirect=redirect))

from __future__ import annotations

from typing import Optional


class AuthFlowError(Exception):
    """Base class for login flow failures; `str(e)` is the user-visible message."""


class DecodeError(AuthFlowError):
    """Malformed, tampered or expired state token. Degrades to defaults, never fatal."""


class NoConnectorError(AuthFlowError):
    def __init__(self, message: str = "No wallet connector available") -> None:
        super().__init__(message)


class AuthExchangeError(AuthFlowError):
    """Backend rejected a code, challenge request or signature (or was unreachable)."""

    def __init__(self, message: str, *, provider: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class UserRejectedError(AuthFlowError):
    def __init__(self, message: str = "Sign-in was cancelled") -> None:
        super().__init__(message)


class FlowBusyError(AuthFlowError):
    def __init__(self, message: str = "Another sign-in is already in progress") -> None:
        super().__init__(message)


class InvalidStateError(AuthFlowError):
    """Callback state rejected in strict-state mode."""

    def __init__(self, reason: str = "Invalid or expired OAuth state") -> None:
        super().__init__(reason)

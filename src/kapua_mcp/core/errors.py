"""Error taxonomy for calls to the Kapua backend."""

from __future__ import annotations

from typing import Optional


class KapuaError(Exception):
    """Base error for the Kapua client layer."""


class ConfigError(KapuaError):
    """Required configuration is missing or invalid."""


class TransportError(KapuaError):
    """The request never produced an HTTP response (DNS, connect, timeout)."""

    def __init__(self, action: str, cause: Exception):
        self.action = action
        self.cause = cause
        super().__init__(f"{action} request failed: {type(cause).__name__}: {cause}")


class BackendError(KapuaError):
    """Kapua answered with status >= 400 and a structured error body."""

    def __init__(
        self,
        action: str,
        status: int,
        code: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[str] = None,
    ):
        self.action = action
        self.status = status
        self.code = code
        self.message = message or ""
        self.details = details or ""
        text = self.message
        if self.details:
            text = f"{text}: {self.details}" if text else self.details
        super().__init__(f"failed to {action}: {text or f'status {status}'}")


class MalformedResponseError(KapuaError):
    """The response body could not be decoded into the expected shape."""

    def __init__(self, action: str, status: int, body: str, reason: str = ""):
        self.action = action
        self.status = status
        self.body = body
        self.reason = reason
        if status >= 400:
            text = f"API request failed with status {status}: {body}"
        else:
            text = f"failed to decode response ({reason or 'unexpected shape'})"
        super().__init__(f"failed to {action}: {text}")


class SessionError(KapuaError):
    """Refresh or re-authentication of the session failed."""


class FleetHealthError(KapuaError):
    """The device listing behind a fleet-health report failed."""

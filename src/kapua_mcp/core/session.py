"""Credential storage and session lifecycle.

The CredentialStore holds the one session credential of a client. The
SessionManager decides, before every outbound call, whether that credential
must be refreshed or fully re-acquired.

Lock discipline: the store lock guards only in-memory reads and writes.
``ensure_valid`` takes a snapshot, releases the lock, performs network I/O,
and the authenticator writes the result back through ``store``. A separate
asyncio lock serializes renewals so one expiry triggers one renewal.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from .clock import Clock, as_utc, utc_now
from .errors import KapuaError, SessionError
from .models import AccessToken, Credential, RefreshTokenRequest

logger = logging.getLogger(__name__)

REFRESH_WINDOW = timedelta(minutes=5)


class CredentialStore:
    """Holds the current credential. Fields are only ever replaced wholesale."""

    def __init__(self, credential: Optional[Credential] = None):
        self._lock = threading.Lock()
        self._credential = credential or Credential()

    def snapshot(self) -> Credential:
        with self._lock:
            return self._credential

    def store(self, credential: Credential) -> None:
        with self._lock:
            self._credential = credential
        logger.debug(
            "Credential updated - expires: %s, refresh expires: %s",
            credential.access_expiry.isoformat() if credential.access_expiry else "unknown",
            credential.refresh_expiry.isoformat() if credential.refresh_expiry else "unknown",
        )

    def clear(self) -> None:
        with self._lock:
            self._credential = Credential()


class SessionState(str, Enum):
    NO_EXPIRY_KNOWN = "no_expiry_known"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED_WITH_REFRESH = "expired_with_refresh"
    EXPIRED_NO_REFRESH = "expired_no_refresh"


def has_usable_refresh_token(credential: Credential, now: datetime) -> bool:
    if not credential.refresh_token:
        return False
    if credential.refresh_expiry is None:
        return True
    return now < as_utc(credential.refresh_expiry)


def evaluate_session(credential: Credential, now: datetime) -> SessionState:
    """Classify a credential snapshot at ``now``."""
    if credential.access_expiry is None:
        return SessionState.NO_EXPIRY_KNOWN

    expiry = as_utc(credential.access_expiry)
    if expiry - now >= REFRESH_WINDOW:
        return SessionState.VALID
    if now <= expiry:
        return SessionState.EXPIRING_SOON
    if has_usable_refresh_token(credential, now):
        return SessionState.EXPIRED_WITH_REFRESH
    return SessionState.EXPIRED_NO_REFRESH


class Authenticator(Protocol):
    """The calls the session manager needs from the backend client."""

    async def refresh_token(self, request: RefreshTokenRequest) -> AccessToken: ...

    async def quick_authenticate(self) -> AccessToken: ...


class SessionManager:
    """Applies the refresh policy to the credential held in a CredentialStore.

    Renewals are serialized: concurrent callers that find the same credential
    expiring wait for the first renewal and then see the fresh credential.
    """

    def __init__(
        self,
        store: CredentialStore,
        authenticator: Authenticator,
        clock: Clock = utc_now,
        auto_refresh: bool = True,
    ):
        self.store = store
        self.authenticator = authenticator
        self.clock = clock
        self.auto_refresh = auto_refresh
        self._renewal_lock = asyncio.Lock()

    def _current_state(self) -> tuple[Credential, SessionState]:
        credential = self.store.snapshot()
        return credential, evaluate_session(credential, self.clock())

    async def ensure_valid(self) -> None:
        """Refresh or re-authenticate when the stored credential requires it.

        Raises:
            SessionError: the refresh or re-authentication call failed.
        """
        if not self.auto_refresh:
            return
        _, state = self._current_state()
        if state in (SessionState.NO_EXPIRY_KNOWN, SessionState.VALID):
            return

        async with self._renewal_lock:
            # re-read: a renewal may have completed while waiting
            credential, state = self._current_state()
            if state in (SessionState.NO_EXPIRY_KNOWN, SessionState.VALID):
                return
            await self._renew(credential, state)

    async def _renew(self, credential: Credential, state: SessionState) -> None:
        if state is SessionState.EXPIRED_NO_REFRESH:
            if credential.refresh_token:
                logger.info("Refresh token expired; performing full re-authentication")
            else:
                logger.warning("Access token expired and no refresh token available; performing full re-authentication")
            await self._reauthenticate()
            return

        if state is SessionState.EXPIRED_WITH_REFRESH:
            logger.info("Access token expired; attempting automatic refresh")
        else:
            logger.info("Token expiring soon, attempting automatic refresh")

        request = RefreshTokenRequest(refresh_token=credential.refresh_token, token_id=credential.access_token)
        try:
            await self.authenticator.refresh_token(request)
        except KapuaError as exc:
            logger.error("Automatic token refresh failed: %s", exc)
            raise SessionError(f"token refresh failed: {exc}") from exc
        logger.info("Token automatically refreshed successfully")

    async def _reauthenticate(self) -> None:
        try:
            await self.authenticator.quick_authenticate()
        except KapuaError as exc:
            logger.error("Re-authentication failed: %s", exc)
            raise SessionError(f"re-authentication failed: {exc}") from exc

# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Sonos token management — the one place that refreshes access tokens.

SonosAuth keeps the current credentials record in memory, refreshes the
access token when it has expired and writes every new record back to the
configured store (device panel or file).
"""

import asyncio
import logging

import aiohttp

from .oauth import TOKEN_URL, TokenError, exchange_code, refresh_access_token
from .tokens import is_complete, is_expired, make_credentials

log = logging.getLogger("roomos-sonos.auth")


class SonosAuthError(RuntimeError):
    """No usable Sonos credentials (missing, expired or refresh failed)."""


class SonosAuth:
    """Manages Sonos access tokens with automatic refresh."""

    def __init__(self, store, session, client_id, client_secret, redirect_uri, token_url=TOKEN_URL):
        self.store = store
        self._session = session
        self._client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._token_url = token_url
        self._credentials: dict | None = None
        self._refresh_lock = asyncio.Lock()
        self.revoked = False

    @property
    def is_configured(self) -> bool:
        return self._credentials is not None

    @property
    def credentials(self):
        return self._credentials

    async def load(self) -> bool:
        """Load credentials from the store. Returns True if usable credentials were found."""
        try:
            data = await self.store.load()
        except Exception as e:
            log.warning("Could not read stored Sonos credentials: %s", e)
            return False

        log.debug("Loaded data: %s", "present" if data else "none")
        if not is_complete(data):
            log.info("Sonos integration not activated")
            return False

        log.info("Sonos integration details loaded")
        if is_expired(data.get("refresh_expire")):
            log.warning("Sonos integration expired — sign in again")
            return False

        self._credentials = {k: data.get(k) for k in
                             ("access_token", "access_expire", "refresh_token", "refresh_expire")}
        if is_expired(data.get("access_expire")):
            log.info("Sonos access token expired")
            try:
                await self._refresh()
            except SonosAuthError as e:
                log.error("%s", e)
                self._credentials = None
                return False
        return True

    def set_credentials(self, credentials: dict):
        """Set credentials directly (used after the OAuth callback)."""
        self._credentials = credentials
        self.revoked = False

    async def authorize(self, code: str) -> dict:
        """Exchange an authorization code, persist and adopt the credentials."""
        result = await exchange_code(
            self._session, code, self._client_id, self._client_secret,
            self.redirect_uri, token_url=self._token_url)
        credentials = make_credentials(result)
        if not credentials.get("refresh_token"):
            raise SonosAuthError("No refresh token received")
        await self._persist(credentials)
        self.set_credentials(credentials)
        log.info("Signed into Sonos")
        return credentials

    async def get_token(self) -> str:
        """Get a valid access token, refreshing if needed."""
        if not self._credentials:
            raise SonosAuthError("Sonos authorization tokens missing")
        if is_expired(self._credentials.get("access_expire")):
            log.debug("Sonos access token has expired, requesting a new one")
            await self._refresh()
        return self._credentials["access_token"]

    def invalidate(self):
        """Force the next get_token() to refresh (e.g. after an HTTP 401)."""
        if self._credentials:
            self._credentials = dict(self._credentials, access_expire=None)

    async def _refresh(self):
        async with self._refresh_lock:
            credentials = self._credentials
            if not credentials:
                raise SonosAuthError("Sonos authorization tokens missing")
            # Another caller refreshed while we waited for the lock
            if not is_expired(credentials.get("access_expire")):
                return

            if is_expired(credentials.get("refresh_expire")):
                raise SonosAuthError("Sonos refresh token expired — sign in again")

            try:
                result = await refresh_access_token(
                    self._session, credentials["refresh_token"],
                    self._client_id, self._client_secret, token_url=self._token_url)
            except TokenError as e:
                if e.error == "invalid_grant":
                    self.revoked = True
                    log.error("Sonos refresh token revoked — re-authentication required")
                raise SonosAuthError("Error while refreshing access token") from e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise SonosAuthError(f"Error while refreshing access token: {e}") from e

            self._credentials = make_credentials(result, previous=credentials)
            await self._persist(self._credentials)
            log.info("Access token refreshed (expires in %ds)", int(result.get("expires_in", 0)))

    async def _persist(self, credentials: dict):
        try:
            await self.store.save(credentials)
        except Exception as e:
            log.warning("Could not save Sonos credentials (%s) — keeping them in memory", e)

    async def ensure_saved(self) -> bool:
        """Re-save the credentials when the store lost them. Returns True if saved."""
        if not self._credentials:
            return False
        try:
            stored = await self.store.load()
        except Exception as e:
            log.warning("Could not read stored Sonos credentials: %s", e)
            return False
        if stored:
            return False
        log.info("Stored credentials were erased — saving new copy")
        await self._persist(self._credentials)
        return True

    def clear(self):
        self._credentials = None
        self.revoked = False

    async def logout(self):
        """Forget the credentials and remove them from the store."""
        self.clear()
        try:
            await self.store.delete()
        except Exception as e:
            log.warning("Could not delete stored Sonos credentials: %s", e)

# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Thin wrapper around the Sonos Control API (cloud).

Every call goes through request(), which attaches a fresh bearer token,
retries once after an HTTP 401 and turns network or HTTP failures into an
empty dict so the UI can keep going.
"""

import asyncio
import json
import logging

import aiohttp

from .auth import SonosAuthError

log = logging.getLogger("roomos-sonos.api")

CONTROL_URL = "https://api.ws.sonos.com/control/api/v1"
SUPPORTED_METHODS = ("GET", "POST", "DELETE")
SKIP_DIRECTIONS = ("NextTrack", "PreviousTrack")

# PLAYBACK_STATE_IDLE | _BUFFERING | _PAUSED | _PLAYING
PLAYING = "PLAYBACK_STATE_PLAYING"


def filter_groups(groups, allowed) -> list:
    """Mark each group available when its name is in *allowed* (or *allowed* is empty)."""
    allowed = list(allowed or [])
    return [
        {
            "id": group.get("id"),
            "name": group.get("name"),
            "available": not allowed or group.get("name") in allowed,
        }
        for group in groups or []
    ]


class SonosApi:
    """Sonos Control API client bound to one SonosAuth."""

    def __init__(self, session: aiohttp.ClientSession, auth, base_url=CONTROL_URL, timeout=10):
        self._session = session
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def request(self, method: str, endpoint: str, body=None, _retry=True) -> dict:
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"only the following methods are supported: {', '.join(SUPPORTED_METHODS)}")

        token = await self.auth.get_token()
        headers = {"Accept": "application/json", "Authorization": f"Bearer {token}"}
        kwargs = {"headers": headers, "timeout": self._timeout}
        if body is not None:
            kwargs["json"] = body

        url = self.base_url + endpoint
        log.debug("Sonos API request %s %s body=%s", method, url, body)
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                if resp.status == 401 and _retry:
                    log.info("Sonos API rejected the access token — refreshing")
                    self.auth.invalidate()
                    return await self.request(method, endpoint, body, _retry=False)
                text = await resp.text()
                if resp.status >= 400:
                    log.warning("Sonos API %s %s failed (HTTP %d): %.200s",
                                method, endpoint, resp.status, text)
                    return {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("Sonos API %s %s failed: %s", method, endpoint, e)
            return {}

        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            log.warning("Sonos API %s %s returned invalid JSON", method, endpoint)
            return {}

    # ── Households, groups, playlists ──

    async def get_households(self) -> list:
        """Households with at least one connected player."""
        result = await self.request("GET", "/households?connectedOnly=true")
        households = result.get("households") or []
        log.info("Households found: %d", len(households))
        return households

    async def get_groups(self, household_id: str) -> list:
        log.info("Getting groups in household: %s", household_id)
        result = await self.request("GET", f"/households/{household_id}/groups")
        groups = result.get("groups")
        if not groups:
            log.warning("No groups were returned")
            return []
        log.info("Groups found: %d", len(groups))
        return groups

    async def get_playlists(self, household_id: str) -> list:
        log.info("Getting playlists for household: %s", household_id)
        result = await self.request("GET", f"/households/{household_id}/playlists")
        playlists = result.get("playlists") or []
        log.info("Playlists found: %d", len(playlists))
        return playlists

    async def load_playlist(self, group_id: str, playlist_id: str, action: str = "INSERT") -> dict:
        log.info("Loading playlist %s on group %s", playlist_id, group_id)
        body = {"playlistId": playlist_id, "action": action}
        return await self.request("POST", f"/groups/{group_id}/playlists", body)

    # ── Playback ──

    async def get_playback_status(self, group_id: str) -> dict:
        log.debug("Getting playback status for group %s", group_id)
        return await self.request("GET", f"/groups/{group_id}/playback")

    async def get_metadata_status(self, group_id: str) -> dict:
        return await self.request("GET", f"/groups/{group_id}/playbackMetadata")

    async def toggle_play_pause(self, group_id: str) -> dict:
        log.info("Toggle play/pause for group %s", group_id)
        result = await self.request("POST", f"/groups/{group_id}/playback/togglePlayPause")
        log.debug("Toggle play/pause result: %s", result)
        return result

    async def skip_track(self, group_id: str, direction: str) -> dict:
        if direction not in SKIP_DIRECTIONS:
            raise ValueError("only the directions 'NextTrack' | 'PreviousTrack' are supported")
        log.info("Skip track %s on group %s", direction, group_id)
        return await self.request("POST", f"/groups/{group_id}/playback/skipTo{direction}")

    # ── Group volume ──

    async def get_volume(self, group_id: str) -> dict:
        log.debug("Getting volume for group %s", group_id)
        return await self.request("GET", f"/groups/{group_id}/groupVolume")

    async def set_volume(self, group_id: str, volume: int) -> dict:
        if not 0 <= volume <= 100:
            raise ValueError("volume must be between 0 and 100")
        log.info("Setting volume %d for group %s", volume, group_id)
        return await self.request("POST", f"/groups/{group_id}/groupVolume", {"volume": volume})

    async def set_mute(self, group_id: str, muted: bool) -> dict:
        log.info("Setting group %s to %s", group_id, "muted" if muted else "unmuted")
        return await self.request("POST", f"/groups/{group_id}/groupVolume/mute", {"muted": muted})

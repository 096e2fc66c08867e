# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Sonos credential records and the two places they can live.

A credentials record is a plain dict:

    {
        "access_token":   "...",
        "access_expire":  "2026-10-19T12:00:00+00:00",
        "refresh_token":  "...",
        "refresh_expire": "2027-10-19T11:00:00+00:00",
    }

Stores:
  - PanelTokenStore — keeps the record on the device itself, as the custom
    icon id of a hidden UI Extension panel.  No local disk needed.
  - FileTokenStore  — atomic JSON file (temp file + rename) for deployments
    that keep credentials next to the service.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from xml.etree import ElementTree

log = logging.getLogger("roomos-sonos.tokens")

ACCESS_EXPIRY_MARGIN = 60       # seconds shaved off expires_in
REFRESH_LIFETIME = timedelta(days=365)

DEFAULT_STORE_PATHS = [
    "/etc/roomos-sonos/sonos_tokens.json",
    os.path.join(os.path.expanduser("~"), ".config", "roomos-sonos", "sonos_tokens.json"),
]


def _now():
    return datetime.now(timezone.utc)


def make_credentials(token_response: dict, *, previous: dict | None = None, now=None) -> dict:
    """Build a credentials record from an OAuth token endpoint response."""
    now = now or _now()
    expires_in = int(token_response.get("expires_in", 0))
    access_expire = now + timedelta(seconds=expires_in - ACCESS_EXPIRY_MARGIN)

    refresh_token = token_response.get("refresh_token")
    if refresh_token:
        refresh_expire = (now + REFRESH_LIFETIME).isoformat()
    else:
        # Refresh grants may omit the refresh token; keep the one we had
        refresh_token = (previous or {}).get("refresh_token")
        refresh_expire = (previous or {}).get("refresh_expire")

    return {
        "access_token": token_response.get("access_token"),
        "access_expire": access_expire.isoformat(),
        "refresh_token": refresh_token,
        "refresh_expire": refresh_expire,
    }


def is_expired(timestamp, now=None) -> bool:
    """True when *timestamp* lies in the past (or cannot be read)."""
    if not timestamp:
        return True
    try:
        when = datetime.fromisoformat(timestamp)
    except (TypeError, ValueError):
        return True
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return (now or _now()) > when


def is_complete(data) -> bool:
    return bool(isinstance(data, dict) and data.get("access_token") and data.get("refresh_token"))


def encode_blob(data: dict) -> str:
    """JSON → base64 → reversed, so the blob is not readable at a glance."""
    encoded = base64.b64encode(json.dumps(data).encode()).decode("ascii")
    return encoded[::-1]


def decode_blob(blob: str):
    """Inverse of encode_blob().  Returns None for anything unreadable."""
    if not blob:
        return None
    try:
        return json.loads(base64.b64decode(blob[::-1]).decode())
    except (binascii.Error, UnicodeDecodeError, ValueError):
        log.warning("Stored Sonos credentials could not be decoded")
        return None


def build_data_panel(blob: str) -> str:
    """Hidden panel whose custom icon id carries the credentials blob."""
    extensions = ElementTree.Element("Extensions")
    panel = ElementTree.SubElement(extensions, "Panel")
    ElementTree.SubElement(panel, "Order").text = "99"
    ElementTree.SubElement(panel, "Location").text = "Hidden"
    ElementTree.SubElement(panel, "Name").text = "SONOS"
    icon = ElementTree.SubElement(panel, "CustomIcon")
    ElementTree.SubElement(icon, "Id").text = blob
    return ElementTree.tostring(extensions, encoding="unicode")


def find_panel(listing, panel_id):
    """Find a panel in an ``UserInterface/Extensions/List`` result."""
    panels = ((listing or {}).get("Extensions") or {}).get("Panel") or []
    if isinstance(panels, dict):
        panels = [panels]
    for panel in panels:
        if panel.get("PanelId") == panel_id:
            return panel
    return None


class PanelTokenStore:
    """Credentials stored inside a hidden UI Extension panel on the device."""

    def __init__(self, xapi, panel_id: str):
        self.xapi = xapi
        self.panel_id = f"{panel_id}-data"

    async def load(self):
        listing = await self.xapi.command("UserInterface/Extensions/List", {"ActivityType": "Custom"})
        panel = find_panel(listing, self.panel_id)
        if not panel:
            return None
        icon_id = (panel.get("CustomIcon") or {}).get("Id")
        return decode_blob(icon_id)

    async def save(self, data: dict):
        await self.xapi.command(
            "UserInterface/Extensions/Panel/Save",
            {"PanelId": self.panel_id},
            body=build_data_panel(encode_blob(data)),
        )
        log.debug("Credentials saved to panel %s", self.panel_id)

    async def delete(self):
        await self.xapi.command("UserInterface/Extensions/Panel/Remove", {"PanelId": self.panel_id})
        log.info("Removed credentials panel %s", self.panel_id)


class FileTokenStore:
    """Atomic JSON file store.  First existing path wins, else first writable."""

    def __init__(self, paths=None):
        self.paths = list(paths or DEFAULT_STORE_PATHS)

    def _find_store_path(self):
        for path in self.paths:
            if os.path.exists(path):
                return path
        for path in self.paths:
            d = os.path.dirname(path)
            if os.path.isdir(d) and os.access(d, os.W_OK):
                return path
        return self.paths[-1]

    def _load(self):
        path = self._find_store_path()
        try:
            with open(path) as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return None

    def _save(self, data: dict):
        path = self._find_store_path()
        record = dict(data, updated_at=_now().isoformat())

        d = os.path.dirname(path)
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record, f, indent=2)
                f.write("\n")
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        log.debug("Credentials saved to %s", path)
        return path

    def _delete(self):
        path = self._find_store_path()
        if os.path.exists(path):
            os.unlink(path)
            log.info("Deleted token file: %s", path)
            return path
        return None

    # File I/O runs in the default executor, off the event loop

    async def load(self):
        return await asyncio.get_running_loop().run_in_executor(None, self._load)

    async def save(self, data: dict):
        return await asyncio.get_running_loop().run_in_executor(None, self._save, data)

    async def delete(self):
        return await asyncio.get_running_loop().run_in_executor(None, self._delete)

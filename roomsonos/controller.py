# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SonosController — turns touch panel events into Sonos calls and back.

Holds the session state (households, groups, playlists, selection, now
playing) and redraws the single UI Extension panel whenever the state it
shows changes.  While the controls page is open, group status is polled
every few seconds so the slider, mute and play/pause widgets stay in sync
with changes made elsewhere (Sonos app, other remotes).
"""

import asyncio
import logging

import aiohttp

from .sonos.api import PLAYING, filter_groups
from .sonos.auth import SonosAuthError
from .sonos.oauth import TokenError, build_auth_url, parse_callback_url
from .sonos.tokens import find_panel
from .ui import pages
from .xapi import XapiError

log = logging.getLogger("roomos-sonos")

POLL_INTERVAL = 5  # seconds between status polls while controls are shown

WIDGET_ACTION = "Event/UserInterface/Extensions/Widget/Action"
PAGE_OPENED = "Event/UserInterface/Extensions/Event/PageOpened"
PAGE_CLOSED = "Event/UserInterface/Extensions/Event/PageClosed"
LAYOUT_UPDATED = "Event/UserInterface/Extensions/Widget/LayoutUpdated"
WEBVIEW_STATUS = "Status/UserInterface/WebView"


class PlatformUnsupported(RuntimeError):
    """The device cannot run the integration (no web engine)."""


def slider_to_volume(value) -> int:
    """UI slider 0-255 → Sonos volume 0-100."""
    return round(int(value) / 255 * 100)


def volume_to_slider(volume) -> int:
    """Sonos volume 0-100 → UI slider 0-255."""
    return round(int(volume) / 100 * 255)


class SonosController:
    """Session state plus the handlers for every panel event."""

    def __init__(self, xapi, sonos, auth, *, webauth, client_id, panel_id="sonos",
                 allowed_groups=None, poll_interval=POLL_INTERVAL, playlist_action="INSERT"):
        self.xapi = xapi
        self.sonos = sonos
        self.auth = auth
        self.webauth = webauth
        self.client_id = client_id
        self.panel_id = panel_id
        self.allowed_groups = list(allowed_groups or [])
        self.poll_interval = poll_interval
        self.playlist_action = playlist_action

        self.households: list = []
        self.groups: list = []
        self.playlists: list = []
        self.selected_group_id = None
        self.selected_group_name = None
        self.selected_playlist_id = None
        self.selected_playlist_name = None
        self.playing_title = None
        self.playing_artist = None
        self.current_page = None

        self._poll_task: asyncio.Task | None = None
        self._subscriptions: list = []
        self._setup_webviews: dict = {}
        self._webview_sub = None
        self._last_code = None

    @property
    def household_id(self):
        return self.households[0].get("id") if self.households else None

    # ── Lifecycle ──

    async def init(self):
        """Check the platform, load credentials, subscribe to UI events, draw."""
        try:
            await self.xapi.set("Configuration/WebEngine/Mode", "On")
        except XapiError as e:
            log.warning("WebEngine not available: %s", e)
            raise PlatformUnsupported("WebEngine not available on this device") from e

        if not self.auth.is_configured:
            await self.auth.load()

        self._subscriptions = [
            await self.xapi.subscribe(WIDGET_ACTION, self.process_widget),
            await self.xapi.subscribe(PAGE_OPENED, self._on_page_opened),
            await self.xapi.subscribe(PAGE_CLOSED, self._on_page_closed),
            await self.xapi.subscribe(LAYOUT_UPDATED, self.process_layout_updated),
        ]
        # A previous connection's web view subscription died with it
        self._webview_sub = None
        self._setup_webviews = {}

        await self.sync()

    async def shutdown(self):
        self.stop_polling()
        if not self.xapi.connected:
            return
        for sub_id in self._subscriptions + ([self._webview_sub] if self._webview_sub is not None else []):
            try:
                await self.xapi.unsubscribe(sub_id)
            except XapiError as e:
                log.debug("Unsubscribe %s failed: %s", sub_id, e)
        self._subscriptions = []
        self._webview_sub = None

    async def sync(self):
        """Rediscover households, groups and playlists, then redraw."""
        if not self.auth.is_configured:
            await self.create_panel()
            return

        try:
            self.households = await self.sonos.get_households()
            log.debug("Households: %s", self.households)
            if not self.households:
                await self.create_panel()
                return

            self.groups = await self.sonos.get_groups(self.household_id)
            log.debug("Groups: %s", self.groups)
            if not self.groups:
                await self.create_panel()
                return

            available = [g for g in filter_groups(self.groups, self.allowed_groups) if g["available"]]
            if len(available) == 1:
                self.selected_group_id = available[0]["id"]
                self.selected_group_name = available[0]["name"]

            self.playlists = await self.sonos.get_playlists(self.household_id)
            log.debug("Playlists: %s", self.playlists)
        except SonosAuthError as e:
            log.error("Sonos sync failed: %s", e)
            if self.auth.revoked:
                self.auth.clear()

        await self.create_panel()

    # ── Panel drawing ──

    async def create_panel(self, selected=None):
        state, message = pages.identify_state(
            selected,
            signed_in=self.auth.is_configured,
            households=self.households,
            groups=self.groups,
            group_id=self.selected_group_id,
        )
        log.info("Creating panel with state: %s", state)

        pid = self.panel_id
        if state == pages.SETUP:
            page = pages.setup_page(pid, await self._sign_in_targets())
        elif state == pages.CONTROLS:
            page = pages.controls_page(pid, self.playing_title, self.playing_artist,
                                       self.selected_group_name, self.selected_playlist_name)
        elif state == pages.GROUPS:
            page = pages.groups_page(pid, filter_groups(self.groups, self.allowed_groups),
                                     show_back=bool(self.selected_group_id))
        elif state == pages.PLAYLISTS:
            page = pages.playlists_page(pid, self.playlists)
        else:
            log.warning("Panel error: %s", message)
            page = pages.error_page(pid, message or "Unable to reach Sonos")

        order = await self._panel_order()
        self.current_page = state
        try:
            await self.xapi.command("UserInterface/Extensions/Panel/Save", {"PanelId": pid},
                                    body=pages.build_panel(page, order))
        except XapiError as e:
            log.error("Error saving panel: %s", e)

    async def _panel_order(self):
        """Existing panel order, so a redraw keeps its place among other extensions."""
        try:
            listing = await self.xapi.command("UserInterface/Extensions/List", {"ActivityType": "Custom"})
        except XapiError as e:
            log.debug("Could not list extensions: %s", e)
            return None
        panel = find_panel(listing, self.panel_id)
        return panel.get("Order") if panel else None

    async def _sign_in_targets(self) -> list:
        targets = []
        try:
            platform = await self.xapi.get("Status/SystemUnit/ProductPlatform") or ""
        except XapiError as e:
            log.warning("Could not read product platform: %s", e)
            platform = ""
        if "Desk" in platform or "Board" in platform:
            targets.append("OSD")
        if await self._has_navigator():
            targets.append("Controller")
        return targets

    async def _has_navigator(self) -> bool:
        """True when a Navigator in controller mode is paired and connected."""
        try:
            connected = await self.xapi.get("Status/Peripherals/ConnectedDevice")
        except XapiError as e:
            log.debug("Could not read connected peripherals: %s", e)
            return False
        if isinstance(connected, dict):
            connected = [connected]
        return any(
            device.get("Status") == "Connected"
            and device.get("Type") == "TouchPanel"
            and device.get("Name", "").endswith("Navigator")
            for device in connected or []
        )

    # ── Widget helpers ──

    async def _set_widget(self, name, value):
        await self.xapi.command("UserInterface/Extensions/Widget/SetValue",
                                {"WidgetId": f"{self.panel_id}-{name}", "Value": value})

    async def _unset_widget(self, name):
        await self.xapi.command("UserInterface/Extensions/Widget/UnsetValue",
                                {"WidgetId": f"{self.panel_id}-{name}"})

    async def _alert(self, title, text, duration=5):
        await self.xapi.command("UserInterface/Message/Alert/Display",
                                {"Title": title, "Text": text, "Duration": duration})

    # ── Widget actions ──

    async def process_widget(self, event: dict):
        widget_id = (event or {}).get("WidgetId", "")
        prefix = f"{self.panel_id}-"
        if not widget_id.startswith(prefix):
            return
        command, _, option = widget_id[len(prefix):].partition("-")
        action = event.get("Type")

        if action == "released" and command == "volume":
            volume = slider_to_volume(event.get("Value", 0))
            log.info("UI volume changed [%s/255] - converted to [%d/100]", event.get("Value"), volume)
            await self.set_volume(volume)
            return

        if action != "clicked":
            return

        if command == "setup":
            await self.start_sign_in(option)
        elif command == "playPause":
            await self.toggle_play_pause()
        elif command in ("NextTrack", "PreviousTrack"):
            if self._require_group():
                await self.sonos.skip_track(self.selected_group_id, command)
        elif command == "toggleMute":
            await self.toggle_mute()
        elif command == "selectPlaylist":
            await self.select_playlist(option)
        elif command == "selectGroup":
            await self.select_group(option)
        elif command == "openGroups":
            await self.open_groups()
        elif command == "openPlaylists":
            await self.open_playlists()
        elif command == "controls":
            await self.show_controls()
        elif command == "retry":
            await self.sync()

    def _require_group(self) -> bool:
        if self.selected_group_id:
            return True
        log.warning("No player group selected")
        return False

    async def show_controls(self):
        await self.create_panel(pages.CONTROLS)
        await self.process_page_event(f"{self.panel_id}-controls", "opened")

    async def select_group(self, group_id):
        group = next((g for g in self.groups if str(g.get("id")) == group_id), None)
        if group is None:
            log.warning("Unknown group selected: %s", group_id)
            return
        self.selected_group_id = group["id"]
        self.selected_group_name = group.get("name")
        log.info("Selected group %s (%s)", self.selected_group_name, self.selected_group_id)
        await self.show_controls()

    async def select_playlist(self, playlist_id):
        if not self._require_group():
            return
        self.selected_playlist_id = playlist_id
        await self.sonos.load_playlist(self.selected_group_id, playlist_id, self.playlist_action)
        playlist = next((p for p in self.playlists if str(p.get("id")) == playlist_id), None)
        self.selected_playlist_name = playlist.get("name") if playlist else None
        await self.show_controls()

    async def open_groups(self):
        await self.process_page_event(f"{self.panel_id}-controls", "closed")
        if self.household_id:
            groups = await self.sonos.get_groups(self.household_id)
            if groups:
                self.groups = groups
        await self.create_panel(pages.GROUPS)
        if self.selected_group_id:
            await self._set_widget(f"selectGroup-{self.selected_group_id}", "active")

    async def open_playlists(self):
        await self.process_page_event(f"{self.panel_id}-controls", "closed")
        await self.create_panel(pages.PLAYLISTS)
        if self.household_id:
            self.playlists = await self.sonos.get_playlists(self.household_id)
            await self.create_panel(pages.PLAYLISTS)

    async def toggle_play_pause(self):
        if not self._require_group():
            return
        await self.sonos.toggle_play_pause(self.selected_group_id)

        # Flip the button straight away; the next poll corrects it if needed
        widgets = await self.xapi.get("Status/UserInterface/Extensions/Widget") or []
        if isinstance(widgets, dict):
            widgets = [widgets]
        widget_id = f"{self.panel_id}-playPause"
        widget = next((w for w in widgets if w.get("WidgetId") == widget_id), {})
        if widget.get("Value") == "active":
            await self._unset_widget("playPause")
        else:
            await self._set_widget("playPause", "active")

    async def toggle_mute(self):
        if not self._require_group():
            return
        current = await self.sonos.get_volume(self.selected_group_id)
        muted = not current.get("muted", False)
        await self.sonos.set_mute(self.selected_group_id, muted)
        if muted:
            await self._set_widget("toggleMute", "active")
        else:
            await self._unset_widget("toggleMute")

    async def set_volume(self, volume: int):
        if not self._require_group():
            return
        await self.sonos.set_volume(self.selected_group_id, volume)
        await self._unset_widget("toggleMute")

    async def skip(self, direction: str):
        if self._require_group():
            await self.sonos.skip_track(self.selected_group_id, direction)

    # ── Page events and polling ──

    async def _on_page_opened(self, event):
        await self.process_page_event((event or {}).get("PageId", ""), "opened")

    async def _on_page_closed(self, event):
        await self.process_page_event((event or {}).get("PageId", ""), "closed")

    async def process_page_event(self, page_id: str, event: str):
        prefix = f"{self.panel_id}-"
        if not page_id.startswith(prefix):
            return
        page = page_id[len(prefix):]
        log.info("PageId: %s Event: %s", page_id, event)

        if event == "opened" and page == "controls":
            self.start_polling()
        elif event == "closed":
            if page == "controls":
                self.stop_polling()
            elif page in ("playlists", "locations"):
                await self.create_panel()

    def start_polling(self):
        self.stop_polling()
        self._poll_task = asyncio.create_task(self._poll_loop())

    def stop_polling(self):
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _poll_loop(self):
        try:
            while True:
                try:
                    await self.update_status()
                except (XapiError, SonosAuthError) as e:
                    log.warning("Status poll error: %s", e)
                except Exception:
                    log.exception("Status poll failed")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            return

    async def update_status(self):
        """Fetch group playback and volume status and update the controls page."""
        group_id = self.selected_group_id
        if not group_id:
            return

        metadata = await self.sonos.get_metadata_status(group_id)
        group_volume = await self.sonos.get_volume(group_id)
        playback = await self.sonos.get_playback_status(group_id)
        log.debug("metadata=%s volume=%s playback=%s", metadata, group_volume, playback)

        track = (metadata.get("currentItem") or {}).get("track") or {}
        track_name = track.get("name")
        artist_name = (track.get("artist") or {}).get("name")

        if track_name and track_name != self.playing_title:
            log.info("Now playing: %s", track_name)
            self.playing_title = track_name
            self.playing_artist = artist_name
            if self.current_page == pages.CONTROLS:
                await self.create_panel(pages.CONTROLS)
        elif not track_name and self.playing_title:
            log.debug("Resetting playing title")
            self.playing_title = None
            self.playing_artist = None
            if self.current_page == pages.CONTROLS:
                await self.create_panel(pages.CONTROLS)

        if self.current_page != pages.CONTROLS:
            return

        if "volume" in group_volume:
            slider = volume_to_slider(group_volume["volume"])
            log.debug("Group volume [%s/100] - updating slider to [%d/255]", group_volume["volume"], slider)
            await self._set_widget("volume", slider)

        if group_volume.get("muted"):
            await self._set_widget("toggleMute", "active")
        else:
            await self._unset_widget("toggleMute")

        if playback.get("playbackState") == PLAYING:
            await self._set_widget("playPause", "active")
        else:
            await self._unset_widget("playPause")

        if artist_name:
            await self._set_widget("artistText", artist_name)
        else:
            await self._unset_widget("artistText")

    # ── Sign in ──

    async def start_sign_in(self, target):
        """Open the Sonos sign-in page in a web view on *target* (OSD | Controller)."""
        if target not in pages.SIGN_IN_TARGETS:
            log.warning("Unknown sign in target: %s", target)
            return
        if target in self._setup_webviews:
            return
        if self._webview_sub is None:
            self._webview_sub = await self.xapi.subscribe(WEBVIEW_STATUS, self.process_webview)

        url = build_auth_url(self.webauth, self.client_id)
        log.info("Opening web auth URL on %s: %s", target, url)
        self._setup_webviews[target] = None
        await self.xapi.command("UserInterface/WebView/Display", {"Url": url, "Target": target})

    async def process_webview(self, status):
        views = status if isinstance(status, list) else [status]
        for view in views:
            if isinstance(view, dict):
                await self._handle_webview(view)

    async def _handle_webview(self, view: dict):
        view_id = view.get("id")

        if "URL" in view:
            url = view.get("URL") or ""
            if not url.startswith(self.webauth):
                return

            # Remember which web view belongs to the pending target
            if view_id not in self._setup_webviews.values():
                for target in pages.SIGN_IN_TARGETS:
                    if target in self._setup_webviews and self._setup_webviews[target] is None:
                        self._setup_webviews[target] = view_id
                        break
            log.debug("Setup web views: %s", self._setup_webviews)

            params = parse_callback_url(url)
            if not params or "code" not in params or params["code"] == self._last_code:
                return
            self._last_code = params["code"]
            log.info("OAuth redirect with code identified — getting access token")

            try:
                await self.auth.authorize(params["code"])
            except (TokenError, SonosAuthError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.error("Sonos authentication failed: %s", e)
                await self.close_webviews()
                await self._alert("Alert", "Error while Authenticating with Sonos")
                return

            await self.close_webviews()
            await self.sync()
            await self._alert("Sonos", "Signed into Sonos 🎉")

        elif view.get("ghost"):
            log.info("WebView %s ghosted - setup web views: %s", view_id, self._setup_webviews)
            for target in pages.SIGN_IN_TARGETS:
                if target in self._setup_webviews and self._setup_webviews[target] == view_id:
                    del self._setup_webviews[target]
                    if not self._setup_webviews:
                        await self._setup_cancelled()

    async def _setup_cancelled(self):
        log.info("User closed web views before completing Sonos OAuth")
        await self._alert("Alert", "Sign in with Sonos account cancelled")

    async def close_webviews(self):
        """Clear sign-in web views and stop watching web view status."""
        log.info("Unsubscribing from web view listener")
        if self._webview_sub is None:
            return
        sub_id, self._webview_sub = self._webview_sub, None
        try:
            await self.xapi.unsubscribe(sub_id)
        except XapiError as e:
            log.debug("Web view unsubscribe failed: %s", e)
        for target in list(self._setup_webviews):
            await self.xapi.command("UserInterface/WebView/Clear", {"Target": target})
        self._setup_webviews = {}

    # ── Storage upkeep and sign out ──

    async def process_layout_updated(self, event=None):
        """A layout change can wipe custom panels; make sure credentials survive."""
        if not self.auth.is_configured:
            return
        await self.auth.ensure_saved()

    async def logout(self):
        log.info("Signing out of Sonos")
        self.stop_polling()
        await self.auth.logout()
        self.households = []
        self.groups = []
        self.playlists = []
        self.selected_group_id = None
        self.selected_group_name = None
        self.selected_playlist_id = None
        self.selected_playlist_name = None
        self.playing_title = None
        self.playing_artist = None
        await self.create_panel()

    def status(self) -> dict:
        return {
            "signed_in": self.auth.is_configured,
            "needs_reauth": self.auth.revoked,
            "household_id": self.household_id,
            "group_count": len(self.groups),
            "playlist_count": len(self.playlists),
            "selected_group": {"id": self.selected_group_id, "name": self.selected_group_name},
            "selected_playlist": {"id": self.selected_playlist_id, "name": self.selected_playlist_name},
            "now_playing": {"title": self.playing_title, "artist": self.playing_artist},
            "page": self.current_page,
            "polling": self.polling,
        }

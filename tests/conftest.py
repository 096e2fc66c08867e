"""Shared fakes for the RoomOS Sonos tests.

FakeXapi stands in for the device connection, FakeSonosApi and FakeAuth for
the Sonos cloud, MemoryStore for a credential store.
"""

import contextlib
import os
import sys
from datetime import datetime, timedelta, timezone
from xml.etree import ElementTree

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from roomsonos.sonos.oauth import TokenError  # noqa: E402
from roomsonos.xapi import XapiError  # noqa: E402


def iso(delta_seconds):
    return (datetime.now(timezone.utc) + timedelta(seconds=delta_seconds)).isoformat()


def credentials(access_in=3600, refresh_in=86400, access_token="AT", refresh_token="RT"):
    return {
        "access_token": access_token,
        "access_expire": iso(access_in),
        "refresh_token": refresh_token,
        "refresh_expire": iso(refresh_in),
    }


class MemoryStore:
    def __init__(self, data=None, fail_save=False):
        self.data = data
        self.saves = []
        self.deleted = False
        self.fail_save = fail_save

    async def load(self):
        return self.data

    async def save(self, data):
        if self.fail_save:
            raise OSError("read-only")
        self.data = data
        self.saves.append(data)

    async def delete(self):
        self.data = None
        self.deleted = True


class FakeXapi:
    """In-memory RoomOS device: records commands, keeps saved panels."""

    def __init__(self, platform="Room Kit Pro", peripherals=None, widgets=None, fail_set=False):
        self.connected = True
        self.commands = []
        self.sets = []
        self.panels = {}
        self.subscriptions = {}
        self.fail_set = fail_set
        self._next_sub = 0
        self.values = {
            "Status/SystemUnit/ProductPlatform": platform,
            "Status/Peripherals/ConnectedDevice": peripherals or [],
            "Status/UserInterface/Extensions/Widget": widgets or [],
        }

    async def command(self, path, params=None, body=None):
        params = params or {}
        self.commands.append((path, params, body))
        if path == "UserInterface/Extensions/Panel/Save":
            self.panels[params["PanelId"]] = body
        elif path == "UserInterface/Extensions/Panel/Remove":
            self.panels.pop(params["PanelId"], None)
        elif path == "UserInterface/Extensions/List":
            return self._listing()
        return {"status": "OK"}

    def _listing(self):
        listing = []
        for panel_id, body in self.panels.items():
            panel = ElementTree.fromstring(body).find("Panel")
            entry = {"PanelId": panel_id}
            order = panel.findtext("Order")
            if order:
                entry["Order"] = int(order)
            icon = panel.findtext("CustomIcon/Id")
            if icon:
                entry["CustomIcon"] = {"Id": icon}
            listing.append(entry)
        return {"Extensions": {"Panel": listing}} if listing else {"Extensions": {}}

    async def get(self, path):
        return self.values.get(path)

    async def set(self, path, value):
        if self.fail_set:
            raise XapiError("No match on address expression", code=3)
        self.sets.append((path, value))

    async def subscribe(self, path, callback, notify_current=False):
        self._next_sub += 1
        self.subscriptions[self._next_sub] = (path, callback)
        return self._next_sub

    async def unsubscribe(self, sub_id):
        self.subscriptions.pop(sub_id, None)

    async def emit(self, path, payload):
        for sub_path, callback in list(self.subscriptions.values()):
            if sub_path == path:
                await callback(payload)

    def subscribed(self, path):
        return any(p == path for p, _ in self.subscriptions.values())

    def calls(self, path):
        return [(params, body) for p, params, body in self.commands if p == path]

    def widget_values(self):
        """WidgetId -> last value set (None when unset)."""
        values = {}
        for path, params, _ in self.commands:
            if path == "UserInterface/Extensions/Widget/SetValue":
                values[params["WidgetId"]] = params["Value"]
            elif path == "UserInterface/Extensions/Widget/UnsetValue":
                values[params["WidgetId"]] = None
        return values

    def page(self, panel_id="sonos"):
        return ElementTree.fromstring(self.panels[panel_id]).find("Panel/Page")

    def alerts(self):
        return [params["Text"] for params, _ in self.calls("UserInterface/Message/Alert/Display")]


class FakeAuth:
    def __init__(self, configured=True, fail=False):
        self.is_configured = configured
        self.revoked = False
        self.fail = fail
        self.codes = []
        self.ensured = 0
        self.logged_out = False

    async def load(self):
        return self.is_configured

    async def authorize(self, code):
        self.codes.append(code)
        if self.fail:
            raise TokenError(400, "invalid_request")
        self.is_configured = True
        return credentials()

    async def ensure_saved(self):
        self.ensured += 1
        return True

    def clear(self):
        self.is_configured = False

    async def logout(self):
        self.clear()
        self.logged_out = True


class FakeSonosApi:
    def __init__(self):
        self.calls = []
        self.households = [{"id": "Sonos_HH1", "name": "Home"}]
        self.groups = [
            {"id": "RINCON_A:1", "name": "Kitchen"},
            {"id": "RINCON_B:2", "name": "Lobby"},
        ]
        self.playlists = [
            {"id": "7", "name": "Jazz & Blues"},
            {"id": "9", "name": "Morning"},
        ]
        self.volume = {"volume": 40, "muted": False, "fixed": False}
        self.playback = {"playbackState": "PLAYBACK_STATE_PLAYING"}
        self.metadata = {
            "container": {"name": "Jazz & Blues", "type": "playlist"},
            "currentItem": {"track": {"name": "So What", "artist": {"name": "Miles Davis"}}},
        }

    async def get_households(self):
        self.calls.append(("get_households",))
        return self.households

    async def get_groups(self, household_id):
        self.calls.append(("get_groups", household_id))
        return self.groups

    async def get_playlists(self, household_id):
        self.calls.append(("get_playlists", household_id))
        return self.playlists

    async def load_playlist(self, group_id, playlist_id, action="INSERT"):
        self.calls.append(("load_playlist", group_id, playlist_id, action))
        return {}

    async def get_playback_status(self, group_id):
        self.calls.append(("get_playback_status", group_id))
        return self.playback

    async def get_metadata_status(self, group_id):
        self.calls.append(("get_metadata_status", group_id))
        return self.metadata

    async def toggle_play_pause(self, group_id):
        self.calls.append(("toggle_play_pause", group_id))
        return {}

    async def skip_track(self, group_id, direction):
        self.calls.append(("skip_track", group_id, direction))
        return {}

    async def get_volume(self, group_id):
        self.calls.append(("get_volume", group_id))
        return self.volume

    async def set_volume(self, group_id, volume):
        self.calls.append(("set_volume", group_id, volume))
        return {}

    async def set_mute(self, group_id, muted):
        self.calls.append(("set_mute", group_id, muted))
        return {}

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def xapi():
    return FakeXapi()


@pytest.fixture
def sonos():
    return FakeSonosApi()


@pytest.fixture
def auth():
    return FakeAuth()


# ── Fake Sonos cloud (token endpoint + Control API) ──


class CloudState:
    def __init__(self):
        self.requests = []
        self.token_requests = []
        self.responses = {}
        self.unauthorized = 0
        self.token_error = None
        self.token_raw = None
        self.issued = 0

    def paths(self, method=None):
        return [path for m, path, _, _ in self.requests if method is None or m == method]


def make_cloud_app(state: CloudState):
    async def token(request):
        form = await request.post()
        state.token_requests.append({"form": dict(form), "auth": request.headers.get("Authorization")})
        if state.token_error:
            return web.json_response({"error": state.token_error}, status=400)
        if state.token_raw is not None:
            return web.Response(text=state.token_raw, content_type="text/html")
        state.issued += 1
        return web.json_response({
            "access_token": f"AT{state.issued}",
            "refresh_token": "RT-new",
            "expires_in": 86400,
            "token_type": "Bearer",
        })

    async def control(request):
        body = await request.json() if request.can_read_body else None
        path = request.path[len("/control/api/v1"):]
        state.requests.append((request.method, request.path_qs[len("/control/api/v1"):],
                               request.headers.get("Authorization"), body))
        if state.unauthorized > 0:
            state.unauthorized -= 1
            return web.json_response({"errorCode": "ERROR_NOT_AUTHORIZED"}, status=401)
        status, payload = state.responses.get((request.method, path), (200, {}))
        return web.json_response(payload, status=status)

    app = web.Application()
    app.router.add_post("/login/v3/oauth/access", token)
    app.router.add_route("*", "/control/api/v1/{tail:.*}", control)
    return app


@contextlib.asynccontextmanager
async def sonos_cloud(state, stored=None):
    """Yield (api, auth, store) wired to an in-process fake of the Sonos cloud."""
    from roomsonos.sonos import SonosApi, SonosAuth

    async with TestServer(make_cloud_app(state)) as server:
        async with aiohttp.ClientSession() as session:
            store = MemoryStore(stored)
            auth = SonosAuth(
                store, session, "client-id", "client-secret",
                redirect_uri="https://example.test/webapp",
                token_url=str(server.make_url("/login/v3/oauth/access")),
            )
            api = SonosApi(session, auth, base_url=str(server.make_url("/control/api/v1")))
            yield api, auth, store

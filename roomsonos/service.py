# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SonosService — process lifecycle for the RoomOS Sonos integration.

Wires the config, one aiohttp session, the device xAPI connection, the
credential store and the controller together, keeps the device connection
alive (reconnecting with backoff) and exposes a small HTTP API:

  GET  /status   — session state (signed in, selection, now playing)
  GET  /resync   — rediscover households/groups/playlists and redraw
  POST /command  — {"command": "play_pause" | "next" | "prev" | "mute" |
                    "volume" | "sync" | "logout", ...}
"""

import asyncio
import logging
import signal

from aiohttp import web, ClientSession

from .controller import PlatformUnsupported, SonosController, POLL_INTERVAL
from .lib.config import cfg, secret
from .lib.watchdog import watchdog_loop
from .sonos import FileTokenStore, PanelTokenStore, SonosApi, SonosAuth
from .xapi import XapiClient

log = logging.getLogger("roomos-sonos.service")

DEFAULT_WEBAUTH = "https://wxsd-sales.github.io/roomos-sonos-macro/webapp"
DEFAULT_PORT = 8780
MAX_BACKOFF = 30  # seconds


def device_url(host: str) -> str:
    """Accept a bare host name or a full ws:// / wss:// URL."""
    if host.startswith(("ws://", "wss://")):
        return host
    return f"wss://{host}/ws"


class SonosService:
    """Main service: device connection, Sonos session, status API."""

    def __init__(self):
        self.port = int(cfg("http", "port", default=DEFAULT_PORT))
        self.panel_id = cfg("panel_id", default="sonos")
        self.webauth = cfg("webauth", default=DEFAULT_WEBAUTH)
        self.client_id = cfg("sonos", "client_id", default="")

        self.xapi: XapiClient | None = None
        self.auth: SonosAuth | None = None
        self.sonos: SonosApi | None = None
        self.controller: SonosController | None = None

        self._http_session: ClientSession | None = None
        self._runner: web.AppRunner | None = None
        self._device_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self.fatal_error: Exception | None = None

    def _make_store(self):
        if cfg("token_store", default="panel") == "file":
            path = cfg("token_file")
            return FileTokenStore([path] if path else None)
        return PanelTokenStore(self.xapi, self.panel_id)

    # ── Lifecycle ──

    async def start(self):
        self._stop_event = asyncio.Event()
        self._http_session = ClientSession()

        self.xapi = XapiClient(
            device_url(cfg("device", "host", default="")),
            cfg("device", "username", default="admin"),
            secret("XAPI_PASSWORD", "device", "password"),
            verify_tls=bool(cfg("device", "verify_tls", default=False)),
        )
        self.auth = SonosAuth(
            self._make_store(),
            self._http_session,
            self.client_id,
            secret("SONOS_CLIENT_SECRET", "sonos", "client_secret"),
            redirect_uri=self.webauth,
        )
        self.sonos = SonosApi(self._http_session, self.auth)
        self.controller = SonosController(
            self.xapi, self.sonos, self.auth,
            webauth=self.webauth,
            client_id=self.client_id,
            panel_id=self.panel_id,
            allowed_groups=cfg("filter_groups", default=[]),
            poll_interval=float(cfg("poll_interval", default=POLL_INTERVAL)),
            playlist_action=cfg("sonos", "playlist_action", default="INSERT"),
        )

        app = self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, cfg("http", "host", default="0.0.0.0"), self.port)
        await site.start()
        log.info("HTTP API on port %d", self.port)

        self._watchdog_task = asyncio.create_task(
            watchdog_loop(healthy=lambda: self.xapi.connected))
        self._device_task = asyncio.create_task(self._device_loop())

    async def stop(self):
        for task in (self._device_task, self._watchdog_task):
            if task:
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._device_task = None
        self._watchdog_task = None

        if self.controller:
            await self.controller.shutdown()
        if self.xapi:
            await self.xapi.close()
        if self._http_session:
            await self._http_session.close()
            self._http_session = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("Sonos service stopped")

    async def run(self) -> int:
        """Start, wait for a signal (or a fatal error), stop."""
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._stop_event.set)
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
        return 1 if self.fatal_error else 0

    async def _device_loop(self):
        """Connect to the device, initialise the panel, reconnect with backoff."""
        backoff = 1
        while True:
            try:
                await self.xapi.connect()
                backoff = 1
                await self.controller.init()
                await self.xapi.wait_closed()
                self.controller.stop_polling()
                log.warning("Device connection lost, reconnecting in %ds", backoff)
            except asyncio.CancelledError:
                raise
            except PlatformUnsupported as e:
                log.error("%s — stopping the Sonos service", e)
                self.fatal_error = e
                self._stop_event.set()
                return
            except Exception as e:
                log.warning("Device connection failed (%s), reconnecting in %ds", e, backoff)

            await self.xapi.close()
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, MAX_BACKOFF)

    # ── HTTP API ──

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/resync", self._handle_resync)
        app.router.add_post("/command", self._handle_command)
        app.router.add_route("OPTIONS", "/command", self._handle_options)
        return app

    async def _handle_options(self, request):
        return web.Response()

    async def _handle_status(self, request):
        result = self.controller.status()
        result["device_connected"] = self.xapi.connected
        return web.json_response(result)

    async def _handle_resync(self, request):
        await self.controller.sync()
        return web.json_response({"status": "ok", "page": self.controller.current_page})

    async def _handle_command(self, request):
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"status": "error", "message": "Invalid JSON"}, status=400)
        if not isinstance(data, dict):
            return web.json_response({"status": "error", "message": "Expected a JSON object"}, status=400)

        cmd = data.get("command", "")
        try:
            if cmd == "play_pause":
                await self.controller.toggle_play_pause()
            elif cmd == "next":
                await self.controller.skip("NextTrack")
            elif cmd == "prev":
                await self.controller.skip("PreviousTrack")
            elif cmd == "mute":
                await self.controller.toggle_mute()
            elif cmd == "volume":
                await self.controller.set_volume(int(data.get("volume", -1)))
            elif cmd == "sync":
                await self.controller.sync()
            elif cmd == "logout":
                await self.controller.logout()
            else:
                return web.json_response(
                    {"status": "error", "message": f"Unknown: {cmd}"}, status=400)
        except ValueError as e:
            return web.json_response({"status": "error", "message": str(e)}, status=400)
        except Exception as e:
            log.exception("Command error")
            return web.json_response({"status": "error", "message": str(e)}, status=500)

        return web.json_response({"status": "ok", "command": cmd})


@web.middleware
async def cors_middleware(request, handler):
    resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp

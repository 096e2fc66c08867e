# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
RoomOS xAPI client over WebSocket (JSON-RPC 2.0).

The endpoint exposes its xAPI at wss://<device>/ws with HTTP Basic auth.
Every request is a JSON-RPC call; feedback subscriptions arrive as
``xFeedback/Event`` notifications carrying the full status/event tree.

Paths are written slash-separated, exactly as in the xAPI reference:

    client = XapiClient("wss://10.0.0.5/ws", "admin", "secret")
    await client.connect()
    platform = await client.get("Status/SystemUnit/ProductPlatform")
    await client.command("UserInterface/Message/Alert/Display",
                         {"Title": "Sonos", "Text": "Hello", "Duration": 5})
    sub = await client.subscribe("Event/UserInterface/Extensions/Widget/Action", on_widget)
    await client.unsubscribe(sub)
"""

import asyncio
import base64
import json
import logging
import ssl

import websockets

log = logging.getLogger("roomos-sonos.xapi")

REQUEST_TIMEOUT = 10  # seconds


class XapiError(Exception):
    """An xAPI call failed (error response, timeout or lost connection)."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


def split_path(path) -> list:
    if isinstance(path, (list, tuple)):
        return list(path)
    return [part for part in path.split("/") if part]


def _extract(tree, query):
    """Walk a feedback tree down the subscribed query path."""
    node = tree
    for key in query:
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            break
    return node


class XapiClient:
    """Single WebSocket connection to one RoomOS device."""

    def __init__(self, url, username, password, verify_tls=False, timeout=REQUEST_TIMEOUT):
        self.url = url
        self._username = username
        self._password = password
        self._verify_tls = verify_tls
        self._timeout = timeout
        self._ws = None
        self._reader_task: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._subscriptions: dict = {}
        self._callback_tasks: set = set()
        self._next_id = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader_task is not None and not self._reader_task.done()

    def _ssl_context(self):
        ctx = ssl.create_default_context()
        if not self._verify_tls:
            # RoomOS ships a self-signed certificate
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def connect(self):
        credentials = base64.b64encode(f"{self._username}:{self._password}".encode()).decode()
        kwargs = {
            "additional_headers": {"Authorization": f"Basic {credentials}"},
            "max_size": None,
        }
        if self.url.startswith("wss://"):
            kwargs["ssl"] = self._ssl_context()

        log.info("Connecting to device xAPI at %s", self.url)
        self._ws = await websockets.connect(self.url, **kwargs)
        self._reader_task = asyncio.create_task(self._read_loop())
        log.info("Device xAPI connected")

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._reader_task = None
        self._subscriptions.clear()

    async def wait_closed(self):
        """Block until the connection drops."""
        if self._reader_task is not None:
            await asyncio.shield(self._reader_task)

    # ── Reader ──

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    log.warning("Device sent invalid JSON: %.200s", raw)
                    continue
                self._dispatch(message)
        except websockets.exceptions.ConnectionClosed as e:
            log.warning("Device connection closed: %s", e)
        finally:
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(XapiError("Device connection closed"))
            self._pending.clear()

    def _dispatch(self, message: dict):
        req_id = message.get("id")
        if req_id is not None:
            fut = self._pending.get(str(req_id))
            if fut is None or fut.done():
                return
            error = message.get("error")
            if error:
                fut.set_exception(XapiError(error.get("message", "xAPI error"), error.get("code")))
            else:
                fut.set_result(message.get("result"))
            return

        if message.get("method") != "xFeedback/Event":
            log.debug("Unhandled device message: %s", message.get("method"))
            return

        params = message.get("params") or {}
        sub = self._subscriptions.get(params.get("Id"))
        if sub is None:
            return
        query, callback = sub
        payload = _extract(params, query)
        task = asyncio.create_task(self._run_callback(callback, payload))
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)

    @staticmethod
    async def _run_callback(callback, payload):
        try:
            result = callback(payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            log.exception("Feedback handler failed")

    # ── Requests ──

    async def _call(self, method: str, params: dict | None = None):
        if not self.connected:
            raise XapiError("Not connected to device")
        self._next_id += 1
        req_id = str(self._next_id)
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        request = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}}
        try:
            await self._ws.send(json.dumps(request))
            return await asyncio.wait_for(fut, self._timeout)
        except asyncio.TimeoutError:
            raise XapiError(f"{method} timed out") from None
        finally:
            self._pending.pop(req_id, None)

    async def command(self, path, params: dict | None = None, body: str | None = None):
        """Run an xCommand.  *body* is the multiline payload (e.g. panel XML)."""
        args = dict(params or {})
        if body is not None:
            args["body"] = body
        return await self._call("xCommand/" + "/".join(split_path(path)), args)

    async def get(self, path):
        return await self._call("xGet", {"Path": split_path(path)})

    async def set(self, path, value):
        return await self._call("xSet", {"Path": split_path(path), "Value": value})

    async def subscribe(self, path, callback, notify_current=False):
        """Subscribe to feedback on *path*; *callback* gets the payload at that path."""
        query = split_path(path)
        result = await self._call("xFeedback/Subscribe", {
            "Query": query,
            "NotifyCurrentValue": notify_current,
        })
        sub_id = (result or {}).get("Id")
        self._subscriptions[sub_id] = (query, callback)
        log.debug("Subscribed to %s (id %s)", "/".join(query), sub_id)
        return sub_id

    async def unsubscribe(self, sub_id):
        if self._subscriptions.pop(sub_id, None) is None:
            return
        if self.connected:
            await self._call("xFeedback/Unsubscribe", {"Id": sub_id})
            log.debug("Unsubscribed feedback id %s", sub_id)

# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Sonos OAuth2 helpers (authorization code grant with client secret).

The sign-in page itself is a static web page (``webauth`` in the config)
that forwards to Sonos and receives the redirect; the device web view ends
up on ``<webauth>?code=...&state=...`` and the service reads the code from
the web view URL.

Usage:
    url = build_auth_url(webauth, client_id)
    params = parse_callback_url(webview_url)
    tokens = await exchange_code(session, params["code"], client_id, secret, webauth)
    tokens = await refresh_access_token(session, refresh_token, client_id, secret)
"""

import base64
import logging

import aiohttp

log = logging.getLogger("roomos-sonos.oauth")

TOKEN_URL = "https://api.sonos.com/login/v3/oauth/access"


class TokenError(Exception):
    """The token endpoint rejected a grant."""

    def __init__(self, status, error=""):
        super().__init__(f"Token request failed (HTTP {status}): {error or 'no detail'}")
        self.status = status
        self.error = error


def build_auth_url(webauth: str, client_id: str) -> str:
    """The sign-in page URL, with the client id in the fragment."""
    return f"{webauth}#client_id={client_id}"


def parse_callback_url(url: str):
    """Query parameters of a redirect URL, or None when there is no query."""
    parts = url.split("?")
    if len(parts) != 2:
        return None
    params = {}
    for pair in parts[1].split("&"):
        kv = pair.split("=")
        if len(kv) == 2:
            params[kv[0]] = kv[1]
    return params


def _basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode()
    return "Basic " + base64.b64encode(raw).decode("ascii")


async def _token_request(session, form, client_id, client_secret, token_url):
    headers = {
        "Content-Type": "application/x-www-form-urlencoded;charset=utf-8",
        "Accept": "application/json",
        "Authorization": _basic_auth(client_id, client_secret),
    }
    async with session.post(
        token_url, data=form, headers=headers,
        timeout=aiohttp.ClientTimeout(total=10),
    ) as resp:
        if resp.status >= 400:
            error = ""
            try:
                body = await resp.json(content_type=None)
                error = body.get("error", "") if isinstance(body, dict) else ""
            except ValueError:
                pass
            raise TokenError(resp.status, error)
        try:
            body = await resp.json(content_type=None)
        except ValueError:
            body = None
        if not isinstance(body, dict):
            log.warning("Token endpoint answered HTTP %d without a JSON object", resp.status)
            raise TokenError(resp.status, "invalid_response")
        return body


async def exchange_code(session, code, client_id, client_secret, redirect_uri, token_url=TOKEN_URL):
    """Exchange an authorization code for access + refresh tokens.

    Returns dict with 'access_token', 'refresh_token', 'expires_in', etc.
    Raises TokenError on a rejected grant, aiohttp.ClientError on network failure.
    """
    log.info("Exchanging authorization code for tokens")
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    }
    return await _token_request(session, form, client_id, client_secret, token_url)


async def refresh_access_token(session, refresh_token, client_id, client_secret, token_url=TOKEN_URL):
    """Trade a refresh token for a new access token."""
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    return await _token_request(session, form, client_id, client_secret, token_url)

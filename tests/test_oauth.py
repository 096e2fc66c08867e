"""Tests for the OAuth URL helpers and token endpoint calls."""

import aiohttp
import pytest
from aiohttp.test_utils import TestServer

from conftest import CloudState, make_cloud_app
from roomsonos.sonos.oauth import (
    TokenError,
    build_auth_url,
    exchange_code,
    parse_callback_url,
    refresh_access_token,
)


def test_build_auth_url():
    assert build_auth_url("https://example.test/webapp", "cid-123") == \
        "https://example.test/webapp#client_id=cid-123"


@pytest.mark.parametrize("url, expected", [
    ("https://example.test/webapp?code=abc&state=xyz", {"code": "abc", "state": "xyz"}),
    ("https://example.test/webapp?code=abc&flag&a=b=c", {"code": "abc"}),
    ("https://example.test/webapp?", {}),
    ("https://example.test/webapp", None),
    ("https://example.test/webapp?code=abc?state=xyz", None),
])
def test_parse_callback_url(url, expected):
    assert parse_callback_url(url) == expected


class TestTokenEndpoint:

    @pytest.mark.asyncio
    async def test_exchange_and_refresh(self):
        state = CloudState()
        async with TestServer(make_cloud_app(state)) as server:
            token_url = str(server.make_url("/login/v3/oauth/access"))
            async with aiohttp.ClientSession() as session:
                first = await exchange_code(session, "abc", "id", "secret",
                                            "https://example.test/webapp", token_url=token_url)
                second = await refresh_access_token(session, "RT", "id", "secret", token_url=token_url)
        assert first["access_token"] == "AT1"
        assert second["access_token"] == "AT2"
        assert [r["form"]["grant_type"] for r in state.token_requests] == \
            ["authorization_code", "refresh_token"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["<html>proxy error</html>", "[1, 2]", ""])
    async def test_non_object_body_is_a_token_error(self, raw):
        state = CloudState()
        state.token_raw = raw
        async with TestServer(make_cloud_app(state)) as server:
            async with aiohttp.ClientSession() as session:
                with pytest.raises(TokenError) as excinfo:
                    await refresh_access_token(
                        session, "RT", "id", "secret",
                        token_url=str(server.make_url("/login/v3/oauth/access")))
        assert excinfo.value.status == 200
        assert excinfo.value.error == "invalid_response"

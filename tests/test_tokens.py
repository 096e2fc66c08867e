"""Tests for credential records and token stores."""

import base64
import json
import os
import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeXapi, credentials
from roomsonos.sonos.tokens import (
    FileTokenStore,
    PanelTokenStore,
    decode_blob,
    encode_blob,
    is_expired,
    make_credentials,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class TestMakeCredentials:

    def test_expiry_margins(self):
        creds = make_credentials(
            {"access_token": "a", "refresh_token": "r", "expires_in": 86400}, now=NOW)
        assert creds["access_token"] == "a"
        assert creds["refresh_token"] == "r"
        assert datetime.fromisoformat(creds["access_expire"]) == NOW + timedelta(seconds=86400 - 60)
        assert datetime.fromisoformat(creds["refresh_expire"]) == NOW + timedelta(days=365)

    def test_options_are_keyword_only(self):
        with pytest.raises(TypeError):
            make_credentials({"access_token": "a", "expires_in": 60}, NOW)

    def test_refresh_without_new_refresh_token_keeps_old_one(self):
        previous = {"refresh_token": "old", "refresh_expire": "2027-01-01T00:00:00+00:00"}
        creds = make_credentials({"access_token": "b", "expires_in": 60}, previous=previous, now=NOW)
        assert creds["refresh_token"] == "old"
        assert creds["refresh_expire"] == "2027-01-01T00:00:00+00:00"


class TestIsExpired:

    def test_past_and_future(self):
        assert is_expired((NOW - timedelta(seconds=1)).isoformat(), now=NOW)
        assert not is_expired((NOW + timedelta(seconds=1)).isoformat(), now=NOW)

    @pytest.mark.parametrize("value", [None, "", "not a date"])
    def test_unreadable_counts_as_expired(self, value):
        assert is_expired(value, now=NOW)

    def test_naive_timestamp_is_utc(self):
        assert not is_expired("2026-10-19T13:00:00", now=NOW)


class TestBlob:

    def test_blob_is_reversed_base64(self):
        data = {"access_token": "a"}
        blob = encode_blob(data)
        assert blob[::-1] == base64.b64encode(json.dumps(data).encode()).decode()
        assert decode_blob(blob) == data

    @pytest.mark.parametrize("blob", [None, "", "@@@not-base64@@@"])
    def test_garbage_decodes_to_none(self, blob):
        assert decode_blob(blob) is None


class TestPanelTokenStore:

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        xapi = FakeXapi()
        store = PanelTokenStore(xapi, "sonos")
        assert await store.load() is None

        creds = credentials()
        await store.save(creds)
        assert "sonos-data" in xapi.panels
        assert "Hidden" in xapi.panels["sonos-data"]
        assert await store.load() == creds

    @pytest.mark.asyncio
    async def test_delete(self):
        xapi = FakeXapi()
        store = PanelTokenStore(xapi, "sonos")
        await store.save(credentials())
        await store.delete()
        assert await store.load() is None


class TestFileTokenStore:

    @pytest.mark.asyncio
    async def test_atomic_roundtrip(self, tmp_path):
        path = str(tmp_path / "sonos_tokens.json")
        store = FileTokenStore([path])
        assert await store.load() is None

        creds = credentials()
        assert await store.save(creds) == path
        with open(path) as f:
            on_disk = json.load(f)
        assert on_disk["refresh_token"] == creds["refresh_token"]
        assert "updated_at" in on_disk
        assert not [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]

        loaded = await store.load()
        assert loaded["access_token"] == creds["access_token"]

        assert await store.delete() == path
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_corrupt_file_loads_as_none(self, tmp_path):
        path = tmp_path / "sonos_tokens.json"
        path.write_text("{not json")
        assert await FileTokenStore([str(path)]).load() is None

    @pytest.mark.asyncio
    async def test_file_io_runs_off_the_event_loop(self, tmp_path, monkeypatch):
        store = FileTokenStore([str(tmp_path / "sonos_tokens.json")])
        threads = []

        def recorder(method):
            def wrapper(*args):
                threads.append(threading.get_ident())
                return method(*args)
            return wrapper

        for name in ("_load", "_save", "_delete"):
            monkeypatch.setattr(store, name, recorder(getattr(store, name)))

        await store.save(credentials())
        await store.load()
        await store.delete()
        assert len(threads) == 3
        assert threading.get_ident() not in threads

"""Tests for the JSON config loader and the watchdog notifier."""

import json
import socket

import pytest

from roomsonos.lib import config, watchdog


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point the loader at a temp file only; restore the cache afterwards."""
    path = tmp_path / "config.json"
    monkeypatch.setattr(config, "_SEARCH_PATHS", [str(tmp_path / "missing.json")])
    monkeypatch.setenv("ROOMOS_SONOS_CONFIG", str(path))
    yield path
    config._config = None


def test_reads_sections_and_defaults(config_file):
    config_file.write_text(json.dumps({
        "panel_id": "lobby",
        "device": {"host": "10.0.0.5"},
        "sonos": {"client_id": "abc"},
    }))
    config.reload_config()
    assert config.cfg("panel_id") == "lobby"
    assert config.cfg("device", "host") == "10.0.0.5"
    assert config.cfg("device", "username", default="admin") == "admin"
    assert config.cfg("http", "port", default=8780) == 8780
    assert config.cfg("poll_interval", default=5) == 5


def test_missing_file_gives_empty_config(config_file):
    assert config.reload_config() == {}
    assert config.cfg("panel_id", default="sonos") == "sonos"


def test_invalid_json_is_skipped(config_file):
    config_file.write_text("{broken")
    assert config.reload_config() == {}


def test_config_is_cached(config_file):
    config_file.write_text(json.dumps({"panel_id": "one"}))
    config.reload_config()
    config_file.write_text(json.dumps({"panel_id": "two"}))
    assert config.cfg("panel_id") == "one"
    config.reload_config()
    assert config.cfg("panel_id") == "two"


def test_secret_prefers_environment(config_file, monkeypatch):
    config_file.write_text(json.dumps({"sonos": {"client_secret": "from-file"}}))
    config.reload_config()
    monkeypatch.delenv("SONOS_CLIENT_SECRET", raising=False)
    assert config.secret("SONOS_CLIENT_SECRET", "sonos", "client_secret") == "from-file"
    monkeypatch.setenv("SONOS_CLIENT_SECRET", "from-env")
    assert config.secret("SONOS_CLIENT_SECRET", "sonos", "client_secret") == "from-env"
    assert config.secret("XAPI_PASSWORD", "device", "password") == ""


def test_sd_notify_without_socket(monkeypatch):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert watchdog.sd_notify("READY=1") is False


def test_sd_notify_sends_datagram(tmp_path, monkeypatch):
    path = str(tmp_path / "notify.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    server.bind(path)
    try:
        monkeypatch.setenv("NOTIFY_SOCKET", path)
        assert watchdog.sd_notify("WATCHDOG=1") is True
        assert server.recv(64) == b"WATCHDOG=1"
    finally:
        server.close()

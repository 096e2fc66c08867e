# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Shared configuration loader for the RoomOS Sonos service.

Loads a single JSON config file per deployment.  Search order:
  1. $ROOMOS_SONOS_CONFIG             (explicit path, set by --config)
  2. /etc/roomos-sonos/config.json    (deployed)
  3. config.json                      (CWD — handy for local dev)
  4. ../../config/default.json        (repo fallback)

Secrets (SONOS_CLIENT_SECRET, XAPI_PASSWORD) stay in environment variables,
loaded from /etc/roomos-sonos/secrets.env by systemd EnvironmentFile.

Usage:
    from roomsonos.lib.config import cfg

    panel_id   = cfg("panel_id", default="sonos")
    host       = cfg("device", "host")
    client_id  = cfg("sonos", "client_id", default="")
"""

import json
import logging
import os

logger = logging.getLogger("roomos-sonos.config")

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/roomos-sonos/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _search_paths() -> list:
    explicit = os.getenv("ROOMOS_SONOS_CONFIG")
    if explicit:
        return [explicit] + _SEARCH_PATHS
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    sonos = config.get("sonos") or {}
    if not sonos.get("client_id"):
        logger.warning("Config %s: missing sonos.client_id — sign in will not work", path)
    device = config.get("device") or {}
    if not device.get("host"):
        logger.warning("Config %s: missing device.host", path)
    groups = config.get("filter_groups")
    if groups is not None and not isinstance(groups, list):
        logger.warning("Config %s: filter_groups should be a list of group names", path)
    store = config.get("token_store", "panel")
    if store not in ("panel", "file"):
        logger.warning("Config %s: unknown token_store '%s'", path, store)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("panel_id")                    → config["panel_id"]
    cfg("device", "host")              → config["device"]["host"]
    cfg("http", "port", default=8780)  → config["http"]["port"] or 8780
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def secret(env_name: str, section: str, key: str, default: str = "") -> str:
    """Environment first, then the config file."""
    value = os.getenv(env_name)
    if value:
        return value
    return cfg(section, key, default=default) or default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()

# Presence Relay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Shared configuration loader for the relay and producer services.

Loads a single JSON config file per host.  Search order:
  0. $PRESENCE_RELAY_CONFIG             (explicit path, if set)
  1. /etc/presence-relay/config.json   (system install)
  2. config.json                        (working directory, for local runs)
  3. ../../config/default.json          (repo fallback)

Secrets (DISCORD_CLIENT_ID) and per-host overrides (PRESENCE_RELAY_URL)
stay in environment variables.

Usage:
    from .config import cfg

    relay_port   = cfg("relay", "port", default=8765)
    base_delay   = cfg("connection", "base_delay", default=5.0)
    presence     = cfg("presence")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/presence-relay/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

KNOWN_SOURCES = ("push", "demo")


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    presence = config.get("presence") or {}
    if not presence.get("client_id") and not os.getenv("DISCORD_CLIENT_ID"):
        logger.warning("Config %s: missing presence.client_id (or DISCORD_CLIENT_ID) — "
                       "Discord presence will not connect", path)
    producer = config.get("producer") or {}
    source = producer.get("source", "push")
    if source not in KNOWN_SOURCES:
        logger.warning("Config %s: unknown producer.source '%s'", path, source)
    conn = config.get("connection") or {}
    for key in ("initial_delay", "base_delay", "growth_factor", "max_delay",
                "keepalive_interval"):
        if key in conn and not _is_number(conn[key]):
            logger.warning("Config %s: connection.%s must be a number, got %r",
                           path, key, conn[key])
    base = conn.get("base_delay", 5.0)
    cap = conn.get("max_delay", 60.0)
    if _is_number(base) and _is_number(cap) and base > cap:
        logger.warning("Config %s: connection.base_delay (%s) exceeds max_delay (%s)",
                       path, base, cap)
    factor = conn.get("growth_factor", 1.5)
    if _is_number(factor) and factor <= 1:
        logger.warning("Config %s: connection.growth_factor <= 1 — backoff will not grow", path)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _config_paths() -> list[str]:
    """Search order, with $PRESENCE_RELAY_CONFIG (if set) tried first."""
    override = os.getenv("PRESENCE_RELAY_CONFIG")
    return ([override] if override else []) + list(_SEARCH_PATHS)


def _read(path: str) -> dict | None:
    """Parse one candidate file; None if it is absent or unusable."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in %s: %s", path, e)
        return None
    except OSError as e:
        logger.error("Cannot read %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.error("Config %s: top level must be an object, skipping", path)
        return None
    return data


def load_config() -> dict:
    """Return the first usable config file's contents, cached after the first call."""
    global _config
    if _config is not None:
        return _config

    for path in _config_paths():
        data = _read(path)
        if data is None:
            continue
        logger.info("Config loaded from %s", path)
        _validate(data, path)
        _config = data
        return _config

    logger.warning("No config file found — using built-in defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Look up ``config[section]`` or ``config[section][key]``.

    A missing section, a missing key, or a section that is not an object
    all yield *default*.
    """
    section_val = load_config().get(section)
    if key is None:
        return default if section_val is None else section_val
    if not isinstance(section_val, dict):
        return default
    return section_val.get(key, default)


def reload_config() -> dict:
    """Drop the cache and read the files again."""
    global _config
    _config = None
    return load_config()

"""Test configuration."""

from __future__ import annotations

import pytest

import presence_relay.lib.config as config_module


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Use built-in defaults instead of whatever config.json the host has."""
    monkeypatch.setattr(config_module, "_config", {})
    for var in ("DISCORD_CLIENT_ID", "PRESENCE_RELAY_URL", "PRESENCE_RELAY_CONFIG",
                "NOTIFY_SOCKET"):
        monkeypatch.delenv(var, raising=False)

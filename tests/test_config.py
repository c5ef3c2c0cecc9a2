"""Tests for environment-driven configuration."""
from __future__ import annotations

import sys

import pytest

from tailserve.config import DEFAULT_STATE_DIR, Config, RuntimeMode, parse_port_list

ENV_VARS = [
    "TAILSERVE_HOME",
    "TAILSERVE_PORT",
    "TAILSERVE_PROTECTED_PORTS",
    "TAILSERVE_TAILSCALE_BIN",
    "TAILSERVE_TAILSCALE_DRY_RUN",
    "TAILSERVE_SERVER_AUTOSTART",
    "TAILSERVE_SERVER_ENTRY",
    "TAILSERVE_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:
    def test_defaults(self):
        config = Config.from_env()
        assert config.state_dir == DEFAULT_STATE_DIR
        assert config.port is None
        assert config.protected_ports is None
        assert config.tailscale_bin == "tailscale"
        assert config.mode is RuntimeMode.LIVE
        assert config.autostart is True
        assert config.server_entry == [sys.executable, "-m", "tailserve.main"]

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TAILSERVE_HOME", str(tmp_path))
        monkeypatch.setenv("TAILSERVE_PORT", "9000")
        monkeypatch.setenv("TAILSERVE_PROTECTED_PORTS", "18789, 3000")
        monkeypatch.setenv("TAILSERVE_TAILSCALE_BIN", "/opt/tailscale")
        monkeypatch.setenv("TAILSERVE_SERVER_AUTOSTART", "0")
        monkeypatch.setenv("TAILSERVE_LOG_LEVEL", "debug")

        config = Config.from_env()

        assert config.state_dir == tmp_path
        assert config.state_path == tmp_path / "state.json"
        assert config.pid_path == tmp_path / "server.pid"
        assert config.quick_tunnel_log_dir == tmp_path / "tunnels"
        assert config.port == 9000
        assert config.protected_ports == [18789, 3000]
        assert config.tailscale_bin == "/opt/tailscale"
        assert config.autostart is False
        assert config.log_level == "DEBUG"

    @pytest.mark.parametrize("value, mode", [
        ("1", RuntimeMode.DRY_RUN),
        ("true", RuntimeMode.DRY_RUN),
        ("anything", RuntimeMode.DRY_RUN),
        ("", RuntimeMode.DRY_RUN),
        ("0", RuntimeMode.LIVE),
        ("false", RuntimeMode.LIVE),
    ])
    def test_dry_run_flag(self, monkeypatch, value, mode):
        monkeypatch.setenv("TAILSERVE_TAILSCALE_DRY_RUN", value)
        config = Config.from_env()
        assert config.mode is mode
        assert config.dry_run is (mode is RuntimeMode.DRY_RUN)

    def test_invalid_port_ignored(self, monkeypatch):
        monkeypatch.setenv("TAILSERVE_PORT", "99999")
        assert Config.from_env().port is None

    def test_server_entry_script(self, monkeypatch, tmp_path):
        script = tmp_path / "server.py"
        monkeypatch.setenv("TAILSERVE_SERVER_ENTRY", str(script))
        assert Config.from_env().server_entry == [sys.executable, str(script.resolve())]


class TestParsePortList:
    def test_dedupes_and_drops_invalid(self):
        assert parse_port_list("3000,abc, 3000 ,0,70000,443") == [3000, 443]

    @pytest.mark.parametrize("value", [None, "", "  ", "abc"])
    def test_nothing_valid(self, value):
        assert parse_port_list(value) is None

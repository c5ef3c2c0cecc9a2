from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_STATE_DIR = Path.home() / ".tailserve"


class RuntimeMode(str, Enum):
    """Whether overlay-tool side effects are real or simulated."""

    LIVE = "live"
    DRY_RUN = "dry-run"


def _parse_port(value: str | None) -> int | None:
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit():
        return None
    port = int(value)
    if port <= 0 or port > 65535:
        return None
    return port


def parse_port_list(value: str | None) -> list[int] | None:
    """Parse ``"18789, 3000"`` into ``[18789, 3000]``. None when nothing valid."""
    if not value or not value.strip():
        return None
    ports: list[int] = []
    for entry in value.split(","):
        port = _parse_port(entry)
        if port is not None and port not in ports:
            ports.append(port)
    return ports or None


def _parse_flag(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in ("0", "false", "no", "off"):
        return False
    if normalized in ("1", "true", "yes", "on"):
        return True
    return None


@dataclass
class Config:
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    port: int | None = None
    protected_ports: list[int] | None = None
    tailscale_bin: str = "tailscale"
    mode: RuntimeMode = RuntimeMode.LIVE
    autostart: bool = True
    server_entry: list[str] = field(
        default_factory=lambda: [sys.executable, "-m", "tailserve.main"]
    )
    log_level: str = "INFO"

    @property
    def dry_run(self) -> bool:
        return self.mode is RuntimeMode.DRY_RUN

    @property
    def state_path(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def pid_path(self) -> Path:
        return self.state_dir / "server.pid"

    @property
    def tunnel_config_path(self) -> Path:
        return self.state_dir / "cloudflared-config.yml"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "server.log"

    @property
    def quick_tunnel_log_dir(self) -> Path:
        return self.state_dir / "tunnels"

    @classmethod
    def from_env(cls) -> Config:
        load_dotenv()
        state_dir = os.environ.get("TAILSERVE_HOME", "")
        dry_run = os.environ.get("TAILSERVE_TAILSCALE_DRY_RUN")
        # Any value other than an explicit "off" enables dry-run.
        mode = RuntimeMode.LIVE
        if dry_run is not None and _parse_flag(dry_run) is not False:
            mode = RuntimeMode.DRY_RUN
        autostart = _parse_flag(os.environ.get("TAILSERVE_SERVER_AUTOSTART"))
        entry = os.environ.get("TAILSERVE_SERVER_ENTRY", "").strip()
        config = cls(
            state_dir=Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
            port=_parse_port(os.environ.get("TAILSERVE_PORT")),
            protected_ports=parse_port_list(os.environ.get("TAILSERVE_PROTECTED_PORTS")),
            tailscale_bin=os.environ.get("TAILSERVE_TAILSCALE_BIN", "") or "tailscale",
            mode=mode,
            autostart=True if autostart is None else autostart,
            log_level=os.environ.get("TAILSERVE_LOG_LEVEL", "INFO").upper(),
        )
        if entry:
            config.server_entry = [sys.executable, str(Path(entry).expanduser().resolve())]
        return config

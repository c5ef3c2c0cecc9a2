"""Shared types and output parsers for the cloudflared tunnel capability."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from tailserve.core.errors import TailserveError
from tailserve.storage.state_store import NamedTunnelConfig, TailserveState

CLOUDFLARED_NOT_FOUND = "cloudflared not installed. Install: brew install cloudflared"

UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}",
    re.IGNORECASE,
)
TRY_CLOUDFLARE_URL_PATTERN = re.compile(
    r"(https://[a-z0-9-]+\.trycloudflare\.com(?:/[^\s\"'<>]*)?)", re.IGNORECASE
)
_UNIX_JSON_PATH = re.compile(r"(/[^\s\"'`]+\.json)")
_WINDOWS_JSON_PATH = re.compile(r"([A-Za-z]:\\[^\s\"'`]+\.json)")


@dataclass(frozen=True)
class NamedTunnelCreationResult:
    name: str
    uuid: str
    credentials_path: str

    def to_config(self, hostname: str) -> NamedTunnelConfig:
        return NamedTunnelConfig(
            name=self.name,
            uuid=self.uuid,
            hostname=hostname,
            credentials_path=self.credentials_path,
        )


def extract_uuid(output: str) -> str | None:
    match = UUID_PATTERN.search(output)
    return match.group(0) if match else None


def extract_credentials_path(output: str) -> str | None:
    """First ``.json`` path mentioned in cloudflared output (unix, then windows)."""
    for pattern in (_UNIX_JSON_PATH, _WINDOWS_JSON_PATH):
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


def default_credentials_path(home: Path, uuid: str) -> str:
    """Where cloudflared writes credentials when its output doesn't say."""
    return str(home / ".cloudflared" / f"{uuid}.json")


def extract_quick_tunnel_url(output: str) -> str | None:
    match = TRY_CLOUDFLARE_URL_PATTERN.search(output)
    return match.group(1) if match else None


def is_named_tunnel_run_command(command: str, tunnel_name: str) -> bool:
    """True for a ``cloudflared ... tunnel ... run <tunnel_name>`` command line."""
    if not re.search(r"cloudflared", command, re.IGNORECASE):
        return False
    if not re.search(r"(?:^|\s)tunnel(?:\s|$)", command, re.IGNORECASE):
        return False
    run = re.compile(rf"(?:^|\s)run\s+{re.escape(tunnel_name)}(?:\s|$)", re.IGNORECASE)
    return bool(run.search(command))


def build_tunnel_config(tunnel: NamedTunnelConfig, listen_port: int) -> str:
    """Render the cloudflared ingress config. Pure: same input, same bytes."""
    return "\n".join([
        f"tunnel: {tunnel.uuid}",
        f"credentials-file: {tunnel.credentials_path}",
        "",
        "ingress:",
        f"  - hostname: {tunnel.hostname}",
        f"    service: http://127.0.0.1:{listen_port}",
        "  - service: http_status:404",
        "",
    ])


def require_named_tunnel(state: TailserveState) -> NamedTunnelConfig:
    if state.named_tunnel is None:
        raise TailserveError("Named tunnel not configured in state")
    return state.named_tunnel

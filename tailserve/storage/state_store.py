from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from tailserve.config import Config

logger = logging.getLogger(__name__)

DEFAULT_PORT = 7899
DEFAULT_HOSTNAME = "localhost"
DEFAULT_PROTECTED_PORTS: list[int] = [18789]


def _port_or_none(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 0 < value <= 65535:
        return value
    return None


def _non_empty_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class NamedTunnelConfig:
    """Persistent cloudflared tunnel identity (set once by ``tunnel setup``)."""

    name: str
    uuid: str
    hostname: str
    credentials_path: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "uuid": self.uuid,
            "hostname": self.hostname,
            "credentialsPath": self.credentials_path,
        }

    @classmethod
    def from_dict(cls, data: object) -> NamedTunnelConfig | None:
        if not isinstance(data, dict):
            return None
        values = [
            _non_empty_str(data.get(key))
            for key in ("name", "uuid", "hostname", "credentialsPath")
        ]
        if any(v is None for v in values):
            return None
        return cls(*values)


@dataclass
class TailserveState:
    port: int = DEFAULT_PORT
    ts_hostname: str = DEFAULT_HOSTNAME
    ts_port: int = DEFAULT_PORT
    ts_protocol: str = "https"
    protected_ports: list[int] = field(default_factory=lambda: list(DEFAULT_PROTECTED_PORTS))
    shares: dict[str, dict] = field(default_factory=dict)
    projects: dict[str, dict] = field(default_factory=dict)
    tunnels: dict[str, dict] = field(default_factory=dict)
    named_tunnel: NamedTunnelConfig | None = None
    # Cached for fast liveness checks; never persisted.
    named_tunnel_pid: int | None = None

    def has_active_route(self) -> bool:
        return bool(self.shares) or bool(self.projects)

    def share_origin(self) -> str:
        if self.ts_protocol == "http":
            return f"http://localhost:{self.port}"
        return f"https://{self.ts_hostname}:{self.ts_port}"

    def to_dict(self) -> dict:
        data: dict = {
            "port": self.port,
            "tsHostname": self.ts_hostname,
            "tsPort": self.ts_port,
            "tsProtocol": self.ts_protocol,
            "protectedPorts": list(self.protected_ports),
            "shares": self.shares,
            "projects": self.projects,
            "tunnels": self.tunnels,
        }
        if self.named_tunnel is not None:
            data["namedTunnel"] = self.named_tunnel.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict, config: Config | None = None) -> TailserveState:
        configured_port = config.port if config else None
        configured_protected = config.protected_ports if config else None

        state_port = _port_or_none(data.get("port")) or DEFAULT_PORT
        port = configured_port or state_port
        ts_port = configured_port or _port_or_none(data.get("tsPort")) or state_port

        protected: list[int] = []
        raw_protected = data.get("protectedPorts")
        if isinstance(raw_protected, list):
            for entry in raw_protected:
                p = _port_or_none(entry)
                if p is not None and p not in protected:
                    protected.append(p)

        def _mapping(key: str) -> dict:
            value = data.get(key)
            return value if isinstance(value, dict) else {}

        return cls(
            port=port,
            ts_hostname=_non_empty_str(data.get("tsHostname")) or DEFAULT_HOSTNAME,
            ts_port=ts_port,
            ts_protocol="http" if data.get("tsProtocol") == "http" else "https",
            protected_ports=configured_protected or protected or list(DEFAULT_PROTECTED_PORTS),
            shares=_mapping("shares"),
            projects=_mapping("projects"),
            tunnels=_mapping("tunnels"),
            named_tunnel=NamedTunnelConfig.from_dict(data.get("namedTunnel")),
        )

    @classmethod
    def default(cls, config: Config | None = None) -> TailserveState:
        return cls.from_dict({}, config)


StateMutator = Callable[[TailserveState], None]


class StateStore:
    """Reads and writes ``state.json`` under the tailserve state directory.

    There is no cross-process lock: writers replace the file atomically and
    the last writer wins.
    """

    def __init__(self, config: Config) -> None:
        self._config = config
        self._path = config.state_path

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pid_path(self) -> Path:
        return self._config.pid_path

    def exists(self) -> bool:
        return self._path.exists()

    def read(self) -> TailserveState:
        if not self._path.exists():
            return TailserveState.default(self._config)
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self._path, e)
            return TailserveState.default(self._config)
        if not isinstance(data, dict):
            return TailserveState.default(self._config)
        return TailserveState.from_dict(data, self._config)

    def write(self, state: TailserveState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(
            json.dumps(state.to_dict(), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)

    def update(self, mutator: StateMutator) -> TailserveState:
        """Read, apply *mutator*, write back. Returns the written state."""
        state = self.read()
        mutator(state)
        self.write(state)
        return state

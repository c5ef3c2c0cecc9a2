"""``tailserve doctor``: diagnostics with optional self-healing."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from tailserve.capabilities.tailscale.routes import RouteReconciler
from tailserve.capabilities.tunnel.named import NamedTunnelSupervisor
from tailserve.core.bootstrap import find_available_port
from tailserve.core.errors import TailserveError
from tailserve.core.processes import is_port_in_use, parse_pid, read_pid_file, remove_pid_file
from tailserve.core.server_process import ProcessSupervisor
from tailserve.storage.state_store import StateStore, TailserveState
from tailserve.web.server import is_server_healthy

logger = logging.getLogger(__name__)

PORT_SCAN_MAX_ATTEMPTS = 20
HEALTH_VERIFY_TIMEOUT = 3.0
HEALTH_VERIFY_POLL_INTERVAL = 0.1


@dataclass
class DoctorCheck:
    name: str
    ok: bool
    message: str
    fixed: bool = False


@dataclass
class DoctorSummary:
    checks: list[DoctorCheck] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for c in self.checks if not c.ok)

    @property
    def fixed(self) -> int:
        return sum(1 for c in self.checks if c.fixed)

    @property
    def ok(self) -> bool:
        return self.failed == 0


def _ports(ports: list[int]) -> str:
    return ", ".join(str(p) for p in ports)


class Doctor:
    def __init__(
        self,
        store: StateStore,
        supervisor: ProcessSupervisor,
        reconciler: RouteReconciler,
        tunnels: NamedTunnelSupervisor,
        port_in_use: Callable[[int], bool] = is_port_in_use,
        *,
        health_check: Callable[[int], bool] = is_server_healthy,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._reconciler = reconciler
        self._tunnels = tunnels
        self._port_in_use = port_in_use
        self._health_check = health_check
        self._sleep = sleep
        self._clock = clock

    def check_pid_file(self, fix: bool) -> DoctorCheck:
        name = "pid file"
        raw = read_pid_file(self._supervisor.pid_path)
        if raw is None:
            return DoctorCheck(name, True, "No pid file")
        pid = parse_pid(raw)
        if pid is not None and self._supervisor.is_alive(pid):
            return DoctorCheck(name, True, f"Server running (PID {pid})")
        detail = f"Stale pid file (PID {pid})" if pid else "Malformed pid file"
        if not fix:
            return DoctorCheck(name, False, detail)
        remove_pid_file(self._supervisor.pid_path)
        return DoctorCheck(name, True, f"Removed {detail[0].lower()}{detail[1:]}", fixed=True)

    def check_port(self, state: TailserveState, fix: bool) -> DoctorCheck:
        name = "port"
        status = self._supervisor.read_status()
        if status.running:
            return DoctorCheck(name, True, f"Server listening on {status.port or state.port}")
        if not self._port_in_use(state.port):
            return DoctorCheck(name, True, f"Port {state.port} is available")
        if not fix:
            return DoctorCheck(name, False, f"Port {state.port} is in use by another process")

        replacement = find_available_port(state.port + 1, PORT_SCAN_MAX_ATTEMPTS, self._port_in_use)
        if replacement is None:
            return DoctorCheck(name, False, f"Port {state.port} is in use and no replacement was found")
        old = state.port

        def _apply(s: TailserveState) -> None:
            s.port = replacement
            s.ts_port = replacement

        self._store.update(_apply)
        _apply(state)
        return DoctorCheck(name, True, f"Moved from port {old} to {replacement}", fixed=True)

    def check_tailscale_mappings(self, state: TailserveState, fix: bool) -> DoctorCheck:
        name = "tailscale mappings"
        summary = self._reconciler.cleanup_stale_routes(
            protected_ports=state.protected_ports, dry_run=not fix,
        )
        if not summary.removed:
            return DoctorCheck(name, True, "No stale tailscale serve mappings found")
        if not fix:
            return DoctorCheck(
                name, False, f"Stale tailscale serve mappings on ports {_ports(summary.removed)}",
            )
        return DoctorCheck(
            name, True, f"Removed stale mappings on ports {_ports(summary.removed)}", fixed=True,
        )

    def check_named_tunnel(self, state: TailserveState) -> DoctorCheck:
        name = "named tunnel"
        if state.named_tunnel is None:
            return DoctorCheck(name, True, "Not configured")
        if not self._tunnels.check_installed():
            return DoctorCheck(name, True, "cloudflared is not installed")
        pid = self._tunnels.resolve_pid(state)
        if pid is None:
            return DoctorCheck(name, True, f"{state.named_tunnel.hostname}: not running")
        return DoctorCheck(name, True, f"{state.named_tunnel.hostname}: running (PID {pid})")

    def check_state_file(self, fix: bool) -> DoctorCheck:
        name = "state file"
        if not self._store.exists():
            if not fix:
                return DoctorCheck(name, False, "State file is missing")
            self._store.write(self._store.read())
            return DoctorCheck(name, True, "Created missing state file", fixed=True)

        try:
            data = json.loads(self._store.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            data = None
        if isinstance(data, dict):
            return DoctorCheck(name, True, "State file is valid JSON")
        if not fix:
            return DoctorCheck(name, False, "State file is corrupted")
        # read() falls back to defaults for anything unparseable.
        self._store.write(self._store.read())
        return DoctorCheck(name, True, "Repaired corrupted state file", fixed=True)

    def _wait_until_healthy(self, port: int) -> bool:
        deadline = self._clock() + HEALTH_VERIFY_TIMEOUT
        while True:
            if self._health_check(port):
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(HEALTH_VERIFY_POLL_INTERVAL)

    def check_server_health(self, state: TailserveState, fix: bool) -> DoctorCheck:
        name = "server health"
        status = self._supervisor.read_status()
        port = status.port or state.port
        if status.running and self._health_check(port):
            return DoctorCheck(name, True, f"Server is healthy on port {port}")
        if not fix:
            message = "Server process exists but health check failed" if status.running else "Server is not running"
            return DoctorCheck(name, False, message)

        try:
            self._supervisor.start(state, force=True)
        except TailserveError as e:
            return DoctorCheck(name, False, str(e))

        refreshed = self._supervisor.read_status()
        port = refreshed.port or self._store.read().port
        if not (refreshed.running and self._wait_until_healthy(port)):
            return DoctorCheck(name, False, "Server did not become healthy")
        return DoctorCheck(name, True, f"Server is healthy on port {port}", fixed=True)

    def _tunnel_alive(self, record: object) -> bool:
        pid = record.get("pid") if isinstance(record, dict) else None
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            return False
        return self._supervisor.is_alive(pid)

    def check_zombie_tunnels(self, fix: bool) -> DoctorCheck:
        name = "zombie tunnels"
        state = self._store.read()
        zombies = [tid for tid, record in state.tunnels.items() if not self._tunnel_alive(record)]
        if not zombies:
            return DoctorCheck(name, True, "No zombie tunnel processes found")
        if not fix:
            noun = "process" if len(zombies) == 1 else "processes"
            return DoctorCheck(name, False, f"Found {len(zombies)} zombie tunnel {noun}")

        def _apply(s: TailserveState) -> None:
            for tunnel_id in zombies:
                s.tunnels.pop(tunnel_id, None)

        self._store.update(_apply)
        noun = "record" if len(zombies) == 1 else "records"
        return DoctorCheck(name, True, f"Removed {len(zombies)} zombie tunnel {noun}", fixed=True)

    def run(self, fix: bool = False) -> DoctorSummary:
        state = self._store.read()
        summary = DoctorSummary()
        summary.checks.append(self.check_pid_file(fix))
        summary.checks.append(self.check_port(state, fix))
        summary.checks.append(self.check_tailscale_mappings(state, fix))
        summary.checks.append(self.check_named_tunnel(state))
        summary.checks.append(self.check_state_file(fix))
        summary.checks.append(self.check_server_health(self._store.read(), fix))
        summary.checks.append(self.check_zombie_tunnels(fix))
        return summary

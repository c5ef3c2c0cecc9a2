from __future__ import annotations

from pathlib import Path

import pytest

from tailserve.config import Config, RuntimeMode
from tailserve.core.processes import ProcessEntry
from tailserve.storage.state_store import StateStore


class FakeTailscaleRuntime:
    """Records every tailscale call; behaviour is set through attributes."""

    def __init__(
        self,
        serve_status: str | None = None,
        status_json: str | None = None,
        live_ports: set[int] | None = None,
        enable_ok: bool = True,
    ) -> None:
        self.serve_status = serve_status
        self.status_json = status_json
        self.live_ports = live_ports or set()
        self.enable_ok = enable_ok
        self.calls: list[tuple] = []

    def read_status_json(self) -> str | None:
        self.calls.append(("status",))
        return self.status_json

    def read_serve_status(self) -> str | None:
        self.calls.append(("serve-status",))
        return self.serve_status

    def is_local_port_in_use(self, port: int) -> bool:
        return port in self.live_ports

    def serve_on(self, https_port: int, backend_port: int) -> bool:
        self.calls.append(("serve-on", https_port, backend_port))
        return self.enable_ok

    def serve_off(self, https_port: int) -> bool:
        self.calls.append(("serve-off", https_port))
        return True

    def funnel_on(self, https_port: int, backend_port: int) -> bool:
        self.calls.append(("funnel-on", https_port, backend_port))
        return self.enable_ok

    def funnel_off(self, https_port: int) -> bool:
        self.calls.append(("funnel-off", https_port))
        return True

    @property
    def teardowns(self) -> list[int]:
        return [c[1] for c in self.calls if c[0] == "serve-off"]


class FakeProcessRuntime:
    """In-memory process table."""

    def __init__(self, alive: set[int] | None = None, exits_on_terminate: bool = True) -> None:
        self.alive = alive or set()
        self.exits_on_terminate = exits_on_terminate
        self.entries: list[ProcessEntry] | None = []
        self.uptimes: dict[int, int] = {}
        self.ports: dict[int, int] = {}
        self.terminated: list[int] = []
        self.spawned: list[list[str]] = []
        self.next_pid = 4242
        self.on_spawn = None

    def is_running(self, pid: int) -> bool:
        return pid in self.alive

    def terminate(self, pid: int) -> None:
        self.terminated.append(pid)
        if pid not in self.alive:
            raise ProcessLookupError(pid)
        if self.exits_on_terminate:
            self.alive.discard(pid)

    def kill(self, pid: int) -> None:
        self.alive.discard(pid)

    def list_processes(self) -> list[ProcessEntry] | None:
        return self.entries

    def uptime_seconds(self, pid: int) -> int | None:
        return self.uptimes.get(pid)

    def listening_port(self, pid: int) -> int | None:
        return self.ports.get(pid)

    def spawn_detached(self, args: list[str], env: dict[str, str] | None = None) -> int:
        self.spawned.append(list(args))
        pid = self.next_pid
        self.alive.add(pid)
        if self.on_spawn:
            self.on_spawn(pid)
        return pid


class FakeClock:
    """Monotonic clock advanced only by the sleeps it hands out."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sync_sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sync_sleep(seconds)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide an isolated tailserve state directory."""
    d = tmp_path / "tailserve"
    d.mkdir()
    return d


@pytest.fixture
def config(state_dir: Path) -> Config:
    return Config(state_dir=state_dir, mode=RuntimeMode.LIVE, autostart=True)


@pytest.fixture
def store(config: Config) -> StateStore:
    return StateStore(config)


@pytest.fixture
def tailscale() -> FakeTailscaleRuntime:
    return FakeTailscaleRuntime()


@pytest.fixture
def processes() -> FakeProcessRuntime:
    return FakeProcessRuntime()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

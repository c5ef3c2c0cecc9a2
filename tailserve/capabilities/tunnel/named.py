"""Named cloudflared tunnel: config generation, pid resolution, start/stop.

The tunnel daemon outlives the CLI invocation that started it, so its pid is
only ever a hint: every decision re-verifies liveness, falling back to a
process-table scan for ``cloudflared tunnel ... run <name>``.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Awaitable, Callable

from tailserve.capabilities.tunnel.base import (
    CLOUDFLARED_NOT_FOUND,
    NamedTunnelCreationResult,
    build_tunnel_config,
    default_credentials_path,
    extract_credentials_path,
    extract_uuid,
    is_named_tunnel_run_command,
    require_named_tunnel,
)
from tailserve.core.errors import (
    MalformedOutputError,
    StopTimeoutError,
    TailserveError,
    ToolCommandError,
    ToolUnavailableError,
)
from tailserve.core.processes import (
    CommandResult,
    OSProcessRuntime,
    ProcessRuntime,
    run_command,
)
from tailserve.storage.state_store import TailserveState

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0
STOP_POLL_INTERVAL = 0.1


def _run_inherited(args: list[str]) -> int:
    try:
        return subprocess.run(args).returncode
    except FileNotFoundError as e:
        raise ToolUnavailableError(CLOUDFLARED_NOT_FOUND) from e


class NamedTunnelSupervisor:
    """Supervises the ``cloudflared tunnel run`` daemon for the named tunnel."""

    def __init__(
        self,
        config_path: Path,
        processes: ProcessRuntime | None = None,
        *,
        home: Path | None = None,
        run: Callable[[list[str]], CommandResult] = run_command,
        run_interactive: Callable[[list[str]], int] = _run_inherited,
        which: Callable[[str], str | None] = shutil.which,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config_path = config_path
        self._processes = processes or OSProcessRuntime()
        self._home = home or Path.home()
        self._run = run
        self._run_interactive = run_interactive
        self._which = which
        self._sleep = sleep
        self._clock = clock

    @property
    def config_path(self) -> Path:
        return self._config_path

    # ------------------------------------------------------------------
    # One-shot management commands
    # ------------------------------------------------------------------

    def check_installed(self) -> str | None:
        """Path to the cloudflared binary, or None."""
        return self._which("cloudflared")

    def is_authenticated(self) -> bool:
        return (self._home / ".cloudflared" / "cert.pem").exists()

    def _cloudflared(self, args: list[str], action: str) -> CommandResult:
        if not self.check_installed():
            raise ToolUnavailableError(CLOUDFLARED_NOT_FOUND)
        try:
            result = self._run(["cloudflared", *args])
        except ToolUnavailableError as e:
            raise ToolUnavailableError(CLOUDFLARED_NOT_FOUND) from e
        if not result.ok:
            detail = result.output
            raise ToolCommandError(f"Failed to {action}" + (f": {detail}" if detail else ""))
        return result

    def login(self) -> None:
        """Run the interactive browser login and verify cert.pem appeared."""
        if not self.check_installed():
            raise ToolUnavailableError(CLOUDFLARED_NOT_FOUND)
        code = self._run_interactive(["cloudflared", "tunnel", "login"])
        if code != 0:
            raise ToolCommandError(f"Cloudflare login failed (exit {code})")
        if not self.is_authenticated():
            raise ToolCommandError(
                "Cloudflare login completed but cert.pem was not found; auth may have failed"
            )

    def create(self, name: str) -> NamedTunnelCreationResult:
        name = name.strip()
        if not name:
            raise TailserveError("Tunnel name is required")
        result = self._cloudflared(["tunnel", "create", name], "create named cloudflared tunnel")
        output = result.output
        uuid = extract_uuid(output)
        if not uuid:
            raise MalformedOutputError("Failed to parse tunnel UUID from cloudflared output")
        credentials_path = extract_credentials_path(output) or default_credentials_path(self._home, uuid)
        logger.info("Created named tunnel %s (%s)", name, uuid)
        return NamedTunnelCreationResult(name=name, uuid=uuid, credentials_path=credentials_path)

    def route_dns(self, name: str, hostname: str) -> None:
        name, hostname = name.strip(), hostname.strip()
        if not name:
            raise TailserveError("Tunnel name is required")
        if not hostname:
            raise TailserveError("Tunnel hostname is required")
        self._cloudflared(["tunnel", "route", "dns", name, hostname], "route tunnel DNS")

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def generate_config(self, state: TailserveState) -> str:
        return build_tunnel_config(require_named_tunnel(state), state.port)

    def write_config(self, state: TailserveState) -> Path:
        """(Re)write the ingress config for the current listen port."""
        text = self.generate_config(state)
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(text, encoding="utf-8")
        logger.debug("Wrote tunnel config to %s", self._config_path)
        return self._config_path

    # ------------------------------------------------------------------
    # Daemon lifecycle
    # ------------------------------------------------------------------

    def is_running(self, pid: int) -> bool:
        return pid > 0 and self._processes.is_running(pid)

    def resolve_pid(self, state: TailserveState) -> int | None:
        """Live pid of the tunnel daemon, adopting one found by scan."""
        if state.named_tunnel is None:
            state.named_tunnel_pid = None
            return None

        cached = state.named_tunnel_pid
        if cached and self.is_running(cached):
            return cached

        entries = self._processes.list_processes()
        match = None
        if entries:
            name = state.named_tunnel.name
            match = next((e for e in entries if is_named_tunnel_run_command(e.command, name)), None)
        if match is None:
            state.named_tunnel_pid = None
            return None

        logger.info("Adopted running cloudflared tunnel PID %d", match.pid)
        state.named_tunnel_pid = match.pid
        return match.pid

    def start(self, state: TailserveState) -> int:
        """Spawn ``cloudflared tunnel run`` detached. Records the pid in state."""
        tunnel = require_named_tunnel(state)
        if not self.check_installed():
            raise ToolUnavailableError(CLOUDFLARED_NOT_FOUND)
        config_path = self.write_config(state)
        pid = self._processes.spawn_detached(
            ["cloudflared", "tunnel", "--config", str(config_path), "run", tunnel.name]
        )
        if pid <= 0:
            raise TailserveError("Failed to start named cloudflared tunnel process")
        state.named_tunnel_pid = pid
        logger.info("Started cloudflared tunnel %s (PID %d)", tunnel.name, pid)
        return pid

    def ensure_running(self, state: TailserveState) -> int:
        """Regenerate the config and start the daemon unless one is already live."""
        require_named_tunnel(state)
        self.write_config(state)
        pid = self.resolve_pid(state)
        if pid is not None:
            return pid
        return self.start(state)

    async def stop(self, pid: int) -> None:
        """SIGTERM *pid* and wait for it to exit.

        An already-gone process counts as stopped.  Raises StopTimeoutError
        when it outlives the stop budget.
        """
        if pid <= 0:
            return
        try:
            self._processes.terminate(pid)
        except ProcessLookupError:
            return

        deadline = self._clock() + STOP_TIMEOUT
        while self._clock() <= deadline:
            if not self.is_running(pid):
                logger.info("Stopped cloudflared tunnel PID %d", pid)
                return
            await self._sleep(STOP_POLL_INTERVAL)

        raise StopTimeoutError(pid, "cloudflared tunnel process")

    async def stop_configured(self, state: TailserveState) -> bool:
        """Stop the daemon for the configured tunnel, if any is running."""
        pid = self.resolve_pid(state)
        if pid is None:
            return False
        await self.stop(pid)
        state.named_tunnel_pid = None
        return True

    async def remove(self, state: TailserveState) -> None:
        """Stop the daemon, delete the tunnel at Cloudflare, forget it locally."""
        await self.stop_configured(state)
        if state.named_tunnel is not None:
            self._cloudflared(
                ["tunnel", "delete", state.named_tunnel.name],
                "delete named cloudflared tunnel",
            )
        state.named_tunnel = None
        state.named_tunnel_pid = None

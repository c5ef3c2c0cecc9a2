"""Server process supervision through the ``server.pid`` file.

The pid file is a convention, not a lock: ``start`` checks it, ``status``
verifies it against the OS and removes it when stale, ``stop`` signals the
recorded pid.  Route teardown on stop is unconditional so that ``stop`` is
safe to repeat with nothing running.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from tailserve.capabilities.tailscale.routes import RouteReconciler
from tailserve.config import Config
from tailserve.core.errors import BindConflictError, ServerStartError, StopTimeoutError
from tailserve.core.processes import (
    OSProcessRuntime,
    ProcessRuntime,
    is_port_in_use,
    parse_pid,
    read_pid_file,
    remove_pid_file,
)
from tailserve.storage.state_store import StateStore, TailserveState

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0
STOP_POLL_INTERVAL = 0.05
START_VERIFY_TIMEOUT = 3.0
START_VERIFY_POLL_INTERVAL = 0.05
START_RESPAWN_ATTEMPTS = 1


@dataclass
class ServerStatus:
    running: bool
    pid: int | None = None
    uptime_seconds: int | None = None
    port: int | None = None


class ProcessSupervisor:
    """Start, stop and inspect the detached tailserve server."""

    def __init__(
        self,
        config: Config,
        store: StateStore | None = None,
        reconciler: RouteReconciler | None = None,
        processes: ProcessRuntime | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        sync_sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        port_in_use: Callable[[int], bool] = is_port_in_use,
    ) -> None:
        self._config = config
        self._store = store or StateStore(config)
        self._reconciler = reconciler or RouteReconciler.from_config(config)
        self._processes = processes or OSProcessRuntime()
        self._sleep = sleep
        self._sync_sleep = sync_sleep
        self._clock = clock
        self._port_in_use = port_in_use

    @property
    def pid_path(self) -> Path:
        return self._config.pid_path

    def is_alive(self, pid: int) -> bool:
        return self._processes.is_running(pid)

    def _read_pid(self) -> int | None:
        """Pid from the pid file. Removes the file if it is unparseable."""
        raw = read_pid_file(self.pid_path)
        if raw is None:
            return None
        pid = parse_pid(raw)
        if pid is None:
            logger.info("Removing malformed pid file %s", self.pid_path)
            remove_pid_file(self.pid_path)
        return pid

    def clean_stale_pid_file(self) -> bool:
        """Remove the pid file if it is malformed or names a dead process."""
        if read_pid_file(self.pid_path) is None:
            return False
        pid = self._read_pid()
        if pid is None:
            return True
        if self._processes.is_running(pid):
            return False
        logger.info("Removing stale pid file for dead PID %d", pid)
        remove_pid_file(self.pid_path)
        return True

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def read_status(self) -> ServerStatus:
        """Inspect the pid file without touching persisted state."""
        pid = self._read_pid()
        if pid is None:
            return ServerStatus(running=False)
        if not self._processes.is_running(pid):
            remove_pid_file(self.pid_path)
            return ServerStatus(running=False)
        return ServerStatus(
            running=True,
            pid=pid,
            uptime_seconds=self._processes.uptime_seconds(pid),
            port=self._processes.listening_port(pid),
        )

    def reconcile_port(self, status: ServerStatus, state: TailserveState | None = None) -> bool:
        """Persist the port the server actually listens on if it drifted."""
        if not status.running or status.port is None:
            return False
        current = state or self._store.read()
        if current.port == status.port and current.ts_port == status.port:
            return False

        def _apply(s: TailserveState) -> None:
            s.port = status.port
            s.ts_port = status.port

        logger.info("Server listens on %d, correcting persisted port %d", status.port, current.port)
        _apply(current)
        self._store.update(_apply)
        return True

    def status(self, state: TailserveState | None = None) -> ServerStatus:
        status = self.read_status()
        self.reconcile_port(status, state)
        return status

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def _wait_for_pid_file(self, timeout: float) -> int | None:
        deadline = self._clock() + max(timeout, 0)
        while True:
            raw = read_pid_file(self.pid_path)
            pid = parse_pid(raw) if raw is not None else None
            if pid is not None and self._processes.is_running(pid):
                return pid
            if self._clock() >= deadline:
                return None
            self._sync_sleep(START_VERIFY_POLL_INTERVAL)

    def start(
        self,
        state: TailserveState | None = None,
        timeout: float = START_VERIFY_TIMEOUT,
        force: bool = False,
    ) -> bool:
        """Spawn the server unless one is running. True if a server was started.

        Does nothing when autostart is disabled, unless *force* is set.

        Raises BindConflictError if the configured port is taken by something
        other than a tailserve server.  If the spawned server never writes its
        pid file, the stale port mapping and pid file are cleared and the spawn
        is retried before ServerStartError.
        """
        if not self._config.autostart and not force:
            return False

        self.clean_stale_pid_file()
        status = self.read_status()
        if status.running:
            self.reconcile_port(status, state)
            return False

        current = state or self._store.read()
        if self._port_in_use(current.port):
            raise BindConflictError(current.port)

        env = {**os.environ, "TAILSERVE_HOME": str(self._config.state_dir)}
        for attempt in range(1 + START_RESPAWN_ATTEMPTS):
            if attempt:
                logger.warning("Server did not come up on port %d, respawning", current.port)
                self._reconciler.clean_stale_mapping(current.port)
                self.clean_stale_pid_file()
            self._processes.spawn_detached(list(self._config.server_entry), env=env)
            pid = self._wait_for_pid_file(timeout)
            if pid is not None:
                logger.info("Server started (PID %d)", pid)
                return True

        raise ServerStartError(
            f"Failed to start tailserve server: spawned process did not become ready on port {current.port}"
        )

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------

    async def _stop_process(self) -> bool:
        pid = self._read_pid()
        if pid is None:
            return False

        try:
            self._processes.terminate(pid)
        except ProcessLookupError:
            remove_pid_file(self.pid_path)
            return False

        deadline = self._clock() + STOP_TIMEOUT
        while self._clock() < deadline:
            if not self._processes.is_running(pid):
                remove_pid_file(self.pid_path)
                logger.info("Server stopped (PID %d)", pid)
                return True
            await self._sleep(STOP_POLL_INTERVAL)

        raise StopTimeoutError(pid, "server")

    def _teardown_routes(self, state: TailserveState) -> None:
        try:
            self._reconciler.disable_route(state)
            self._reconciler.cleanup_stale_routes(protected_ports=state.protected_ports)
        except Exception as e:
            logger.warning("Route teardown during stop failed: %s", e)

    async def stop(self) -> bool:
        """Stop the server if running, then tear down tailscale routes.

        Returns True if a running server was stopped.  Raises
        StopTimeoutError if it ignored SIGTERM; routes are torn down anyway.
        """
        state = self._store.read()
        try:
            return await self._stop_process()
        finally:
            self._teardown_routes(state)

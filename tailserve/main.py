from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from tailserve.capabilities.tailscale.routes import RouteReconciler
from tailserve.capabilities.tunnel.named import NamedTunnelSupervisor
from tailserve.config import Config
from tailserve.core.bootstrap import Bootstrap
from tailserve.core.errors import BindConflictError, ListenError, TailserveError
from tailserve.core.processes import parse_pid, read_pid_file, remove_pid_file, write_pid_file
from tailserve.storage.state_store import StateStore, TailserveState
from tailserve.web.server import WebServer

logger = logging.getLogger("tailserve")


def _configure_logging(config: Config) -> None:
    config.state_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file),
        ],
    )


def _remove_own_pid_file(config: Config) -> None:
    raw = read_pid_file(config.pid_path)
    if raw is not None and parse_pid(raw) == os.getpid():
        remove_pid_file(config.pid_path)


async def _stop_named_tunnel(store: StateStore, tunnels: NamedTunnelSupervisor) -> None:
    state = store.read()
    if state.named_tunnel is None:
        return
    try:
        await tunnels.stop_configured(state)
    except (TailserveError, OSError) as e:
        logger.error("Failed to stop named tunnel: %s", e)


async def serve(config: Config, tunnels: NamedTunnelSupervisor | None = None) -> None:
    store = StateStore(config)
    reconciler = RouteReconciler.from_config(config)
    tunnels = tunnels or NamedTunnelSupervisor(config.tunnel_config_path)

    # -- Bind (may exit with a diagnostic) --
    bootstrap = Bootstrap(store, reconciler, tunnels)
    _state, bound = bootstrap.run()
    write_pid_file(config.pid_path, os.getpid())

    # Restore tailscale routing for persisted shares/projects
    def _restore(state: TailserveState) -> None:
        warning = reconciler.ensure_for_restored_routes(state)
        if warning:
            logger.warning(warning)

    store.update(_restore)

    web_server = WebServer(store)

    # Handle shutdown signals
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    try:
        await web_server.start(bound.sock)
        logger.info("tailserve is running (PID %d)", os.getpid())
        await stop_event.wait()

        # The tunnel forwards to our socket, so it goes first.
        logger.info("Shutting down...")
        await _stop_named_tunnel(store, tunnels)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await web_server.stop()
        bound.sock.close()
        _remove_own_pid_file(config)
    logger.info("tailserve stopped.")


def run() -> None:
    config = Config.from_env()
    _configure_logging(config)
    try:
        asyncio.run(serve(config))
    except (BindConflictError, ListenError) as e:
        sys.stderr.write(f"{e}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

"""Listener bootstrap: bind with stale-mapping retry and port fallback.

    INITIAL_BIND ──in use──▶ STALE_CLEANUP_RETRY ──in use──▶ FALLBACK_SCAN
         │                          │                           │    │
         └──────────────────────────┴──────────▶ BOUND ◀────────┘    └──▶ FATAL

Any bind error other than "address in use" goes straight to FATAL.  The
persisted port only changes once a bind has succeeded.
"""
from __future__ import annotations

import errno
import logging
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from tailserve.capabilities.tailscale.routes import RouteReconciler
from tailserve.capabilities.tunnel.named import NamedTunnelSupervisor
from tailserve.core.errors import BindConflictError, ListenError, TailserveError
from tailserve.core.processes import is_port_in_use
from tailserve.storage.state_store import StateStore, TailserveState

logger = logging.getLogger(__name__)

LISTEN_HOST = "127.0.0.1"
# Same-port retries after stale tailscale mapping cleanup.
STALE_CLEANUP_RETRIES = 1
# Candidates probed after the configured port, starting at port + 1.
FALLBACK_PORT_ATTEMPTS = 10


class BindStage(str, Enum):
    """Where in the state machine a bind succeeded."""

    INITIAL_BIND = "initial-bind"
    STALE_CLEANUP_RETRY = "stale-cleanup-retry"
    FALLBACK_SCAN = "fallback-scan"


@dataclass
class BindResult:
    port: int
    sock: socket.socket
    stage: BindStage
    attempts: list[int] = field(default_factory=list)


def bind_listener(port: int, host: str = LISTEN_HOST) -> socket.socket:
    """Bind and listen on host:port. Raises OSError on failure."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def find_available_port(
    start_port: int,
    max_attempts: int,
    in_use: Callable[[int], bool] = is_port_in_use,
) -> int | None:
    """First port in ``[start_port, start_port + max_attempts)`` nothing listens on."""
    for candidate in range(start_port, start_port + max_attempts):
        if not 0 < candidate <= 65535:
            return None
        if not in_use(candidate):
            return candidate
    return None


def _is_addr_in_use(error: OSError) -> bool:
    return error.errno == errno.EADDRINUSE


def _listen_error(error: OSError) -> ListenError:
    message = (error.strerror or str(error)).strip() or "Unknown listen error"
    return ListenError(f"Failed to start tailserve server: {message}")


class Bootstrap:
    """Runs once at server start: bind, persist the port, start the tunnel."""

    def __init__(
        self,
        store: StateStore,
        reconciler: RouteReconciler,
        tunnels: NamedTunnelSupervisor | None = None,
        *,
        binder: Callable[[int], socket.socket] = bind_listener,
        port_in_use: Callable[[int], bool] = is_port_in_use,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._tunnels = tunnels
        self._binder = binder
        self._port_in_use = port_in_use

    def bind(self, port: int) -> BindResult:
        """Walk the bind state machine for *port*.

        Raises ListenError for non-conflict errors and BindConflictError when
        retry and fallback are exhausted.
        """
        attempts: list[int] = []

        def _try(candidate: int) -> socket.socket | None:
            attempts.append(candidate)
            try:
                return self._binder(candidate)
            except OSError as e:
                if not _is_addr_in_use(e):
                    raise _listen_error(e) from e
                return None

        sock = _try(port)
        if sock is not None:
            return BindResult(port=port, sock=sock, stage=BindStage.INITIAL_BIND, attempts=attempts)

        for _ in range(STALE_CLEANUP_RETRIES):
            logger.warning("Port %d in use, cleaning stale tailscale mapping and retrying", port)
            if not self._reconciler.clean_stale_mapping(port):
                logger.info("No tailscale mapping removed for port %d", port)
            sock = _try(port)
            if sock is not None:
                return BindResult(port=port, sock=sock, stage=BindStage.STALE_CLEANUP_RETRY, attempts=attempts)

        candidate = find_available_port(port + 1, FALLBACK_PORT_ATTEMPTS, self._port_in_use)
        if candidate is not None:
            logger.warning("Port %d still in use, falling back to %d", port, candidate)
            sock = _try(candidate)
            if sock is not None:
                return BindResult(port=candidate, sock=sock, stage=BindStage.FALLBACK_SCAN, attempts=attempts)

        raise BindConflictError(port)

    def _persist_port(self, state: TailserveState, port: int) -> None:
        def _apply(s: TailserveState) -> None:
            s.port = port
            s.ts_port = port

        _apply(state)
        self._store.update(_apply)

    def _ensure_named_tunnel(self, state: TailserveState) -> None:
        if self._tunnels is None or state.named_tunnel is None:
            return
        try:
            self._tunnels.ensure_running(state)
        except (TailserveError, OSError) as e:
            logger.error("Failed to start named tunnel: %s", e)

    def run(self) -> tuple[TailserveState, BindResult]:
        state = self._store.read()
        result = self.bind(state.port)
        logger.info("Listening on %s:%d (%s)", LISTEN_HOST, result.port, result.stage.value)
        self._persist_port(state, result.port)
        # The listen port may have changed; the ingress config must follow it.
        self._ensure_named_tunnel(state)
        return state, result

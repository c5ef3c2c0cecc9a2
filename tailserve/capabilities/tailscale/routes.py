"""Tailscale serve route reconciliation.

Parses ``tailscale serve status`` output into (exposed port, backend port)
pairs and decides which exposed ports are stale.  The status format is
human-readable text with no versioning, so parsing is kept in a pure function
with narrow patterns and falls back to defaults on anything unexpected.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

from tailserve.capabilities.tailscale.runtime import CliTailscaleRuntime, TailscaleRuntime
from tailserve.config import Config, RuntimeMode
from tailserve.storage.state_store import DEFAULT_PROTECTED_PORTS, TailserveState

logger = logging.getLogger(__name__)

DEFAULT_HTTPS_PORT = 443

_EXPOSED_URL = re.compile(r"^https://[^\s/:]+(?::(\d+))?")
_LOOPBACK_BACKEND = re.compile(r"https?://(?:localhost|127\.0\.0\.1):(\d+)")


@dataclass(frozen=True)
class RouteEntry:
    https_port: int
    backend_port: int


@dataclass
class CleanupSummary:
    removed: list[int] = field(default_factory=list)
    protected: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


def parse_serve_routes(status_output: str) -> list[RouteEntry]:
    """Parse serve-status text into route entries.

    Header lines (``https://host[:port]``) set the current exposed port,
    default 443.  Each following line naming a loopback backend yields one
    entry for that port, so an exposed port with several path mappings
    appears several times.
    """
    routes: list[RouteEntry] = []
    current_https_port = DEFAULT_HTTPS_PORT

    for raw_line in status_output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        header = _EXPOSED_URL.match(line)
        if header:
            port = int(header.group(1)) if header.group(1) else DEFAULT_HTTPS_PORT
            if port > 0:
                current_https_port = port

        backend = _LOOPBACK_BACKEND.search(line)
        if not backend:
            continue
        backend_port = int(backend.group(1))
        if backend_port <= 0:
            continue
        routes.append(RouteEntry(https_port=current_https_port, backend_port=backend_port))

    return routes


def parse_self_dns_name(status_json: str) -> str | None:
    """Extract ``Self.DNSName`` without the trailing dot. None if absent or malformed."""
    try:
        parsed = json.loads(status_json)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    self_node = parsed.get("Self")
    if not isinstance(self_node, dict):
        return None
    dns_name = self_node.get("DNSName")
    if not isinstance(dns_name, str):
        return None
    hostname = dns_name.strip().rstrip(".")
    return hostname or None


def _sorted_ports(ports: Iterable[int]) -> list[int]:
    return sorted(set(ports))


def classify_routes(
    routes: list[RouteEntry],
    protected_ports: Iterable[int],
    is_live: Callable[[int], bool],
) -> CleanupSummary:
    """Partition exposed ports into protected / skipped / stale (``removed``).

    Classification is per exposed port: one protected mapping protects the
    whole port, one live backend skips it.
    """
    protected_set = set(protected_ports)
    protected: set[int] = set()
    skipped: set[int] = set()
    stale: set[int] = set()

    for route in routes:
        if route.https_port == DEFAULT_HTTPS_PORT or route.backend_port in protected_set:
            protected.add(route.https_port)
        elif is_live(route.backend_port):
            skipped.add(route.https_port)
        else:
            stale.add(route.https_port)

    return CleanupSummary(
        removed=_sorted_ports(stale - protected - skipped),
        protected=_sorted_ports(protected),
        skipped=_sorted_ports(skipped - protected),
    )


def unavailable_warning(port: int) -> str:
    return f"Warning: tailscale unavailable, using http://localhost:{port}"


class RouteReconciler:
    """Enables, disables and garbage-collects tailscale serve routes."""

    def __init__(
        self,
        runtime: TailscaleRuntime | None = None,
        mode: RuntimeMode = RuntimeMode.LIVE,
        protected_ports: Iterable[int] | None = None,
    ) -> None:
        self._runtime = runtime
        self._mode = mode
        self._protected_ports = list(protected_ports) if protected_ports is not None else None

    @classmethod
    def from_config(cls, config: Config) -> RouteReconciler:
        return cls(
            CliTailscaleRuntime(config.tailscale_bin),
            mode=config.mode,
            protected_ports=config.protected_ports,
        )

    @property
    def dry_run(self) -> bool:
        return self._mode is RuntimeMode.DRY_RUN

    @property
    def runtime(self) -> TailscaleRuntime:
        if self._runtime is None:
            self._runtime = CliTailscaleRuntime()
        return self._runtime

    # -- enable ---------------------------------------------------------

    def _refresh_hostname(self, state: TailserveState) -> None:
        status_json = self.runtime.read_status_json()
        if not status_json:
            return
        hostname = parse_self_dns_name(status_json)
        if hostname:
            state.ts_hostname = hostname

    def _enable(self, state: TailserveState, funnel: bool) -> str | None:
        if self.dry_run:
            state.ts_protocol = "https"
            return None

        self._refresh_hostname(state)
        enable = self.runtime.funnel_on if funnel else self.runtime.serve_on
        if enable(state.ts_port, state.port):
            state.ts_protocol = "https"
            return None

        logger.warning("tailscale %s unavailable, falling back to localhost", "funnel" if funnel else "serve")
        state.ts_hostname = "localhost"
        state.ts_port = state.port
        state.ts_protocol = "http"
        return unavailable_warning(state.port)

    def enable_route(self, state: TailserveState) -> str | None:
        """Expose ``state.port`` on the tailnet. Returns a warning on fallback."""
        return self._enable(state, funnel=False)

    def enable_funnel_route(self, state: TailserveState) -> str | None:
        """Expose ``state.port`` on the public internet via funnel."""
        return self._enable(state, funnel=True)

    def ensure_for_first_share(self, state: TailserveState) -> str | None:
        if state.shares:
            return None
        return self.enable_route(state)

    def ensure_for_restored_routes(self, state: TailserveState) -> str | None:
        if not state.has_active_route():
            return None
        return self.enable_route(state)

    # -- disable --------------------------------------------------------

    def disable_route(self, state: TailserveState) -> None:
        if self.dry_run:
            return
        self.runtime.serve_off(state.ts_port)

    def disable_funnel_route(self, state: TailserveState) -> None:
        if self.dry_run:
            return
        self.runtime.funnel_off(state.ts_port)

    def clean_stale_mapping(self, port: int) -> bool:
        """Best-effort teardown of one exposed port. True if it succeeded."""
        if not 0 < port <= 65535:
            return False
        if self.dry_run:
            return True
        return self.runtime.serve_off(port)

    # -- cleanup --------------------------------------------------------

    def cleanup_stale_routes(
        self,
        protected_ports: Iterable[int] | None = None,
        dry_run: bool = False,
    ) -> CleanupSummary:
        """Remove serve routes whose backend is gone and not protected.

        With ``dry_run`` the partition is computed but nothing is torn down.
        """
        if self.dry_run:
            return CleanupSummary()

        status = self.runtime.read_serve_status()
        if not status or not status.strip():
            return CleanupSummary()

        if protected_ports is None:
            protected_ports = self._protected_ports or DEFAULT_PROTECTED_PORTS
        summary = classify_routes(
            parse_serve_routes(status),
            protected_ports,
            self.runtime.is_local_port_in_use,
        )

        if not dry_run:
            for https_port in summary.removed:
                logger.info("Removing stale tailscale serve route on :%d", https_port)
                self.runtime.serve_off(https_port)

        return summary

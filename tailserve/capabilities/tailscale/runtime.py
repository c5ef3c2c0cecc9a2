"""Tailscale CLI runtime: the only place that invokes the ``tailscale`` binary."""
from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from tailserve.core.errors import ToolUnavailableError
from tailserve.core.processes import CommandResult, is_port_in_use, run_command

logger = logging.getLogger(__name__)


@runtime_checkable
class TailscaleRuntime(Protocol):
    """Capability surface consumed by RouteReconciler."""

    def read_status_json(self) -> str | None: ...

    def read_serve_status(self) -> str | None: ...

    def is_local_port_in_use(self, port: int) -> bool: ...

    def serve_on(self, https_port: int, backend_port: int) -> bool: ...

    def serve_off(self, https_port: int) -> bool: ...

    def funnel_on(self, https_port: int, backend_port: int) -> bool: ...

    def funnel_off(self, https_port: int) -> bool: ...


class CliTailscaleRuntime:
    """TailscaleRuntime that shells out to the tailscale CLI.

    A missing binary is reported as a failed call, never raised: callers
    degrade to localhost instead.
    """

    def __init__(self, binary: str = "tailscale") -> None:
        self._binary = binary

    def _run(self, *args: str) -> CommandResult | None:
        try:
            return run_command([self._binary, *args])
        except ToolUnavailableError:
            logger.warning("tailscale binary not found: %s", self._binary)
            return None

    def _read(self, *args: str) -> str | None:
        result = self._run(*args)
        if result is None or not result.ok:
            return None
        return result.stdout

    def read_status_json(self) -> str | None:
        return self._read("status", "--json")

    def read_serve_status(self) -> str | None:
        return self._read("serve", "status")

    def is_local_port_in_use(self, port: int) -> bool:
        return is_port_in_use(port)

    def _toggle(self, mode: str, https_port: int, backend_port: int | None) -> bool:
        if backend_port is None:
            args = [mode, f"--https={https_port}", "off"]
        else:
            args = [mode, "--bg", f"--https={https_port}", f"http://localhost:{backend_port}"]
        result = self._run(*args)
        if result is None:
            return False
        if not result.ok:
            logger.warning("tailscale %s failed (%d): %s", " ".join(args), result.returncode, result.output)
        return result.ok

    def serve_on(self, https_port: int, backend_port: int) -> bool:
        return self._toggle("serve", https_port, backend_port)

    def serve_off(self, https_port: int) -> bool:
        return self._toggle("serve", https_port, None)

    def funnel_on(self, https_port: int, backend_port: int) -> bool:
        return self._toggle("funnel", https_port, backend_port)

    def funnel_off(self, https_port: int) -> bool:
        return self._toggle("funnel", https_port, None)

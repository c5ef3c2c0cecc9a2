"""Error types shared by the route, process and tunnel layers."""
from __future__ import annotations


class TailserveError(RuntimeError):
    """Base class for failures surfaced to the CLI as a single error line."""


class ToolUnavailableError(TailserveError):
    """An external executable (tailscale, cloudflared) is not installed."""


class ToolCommandError(TailserveError):
    """An external tool ran but exited nonzero."""


class MalformedOutputError(TailserveError):
    """An essential value could not be parsed out of tool output."""


class BindConflictError(TailserveError):
    """The listener port and every fallback candidate were in use."""

    def __init__(self, port: int) -> None:
        super().__init__(
            f"Failed to start tailserve server: port {port} is already in use. "
            f"Check with `lsof -i :{port}` or run `tailserve server stop`."
        )
        self.port = port


class ListenError(TailserveError):
    """Binding failed for a reason other than the address being in use."""


class StopTimeoutError(TailserveError):
    """A process received SIGTERM but did not exit within the stop budget."""

    def __init__(self, pid: int, what: str = "process") -> None:
        super().__init__(f"Timed out waiting for {what} {pid} to stop")
        self.pid = pid


class ServerStartError(TailserveError):
    """A spawned server never recorded a live pid."""

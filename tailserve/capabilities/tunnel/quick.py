"""Cloudflared quick tunnels: ephemeral ``*.trycloudflare.com`` URLs.

A quick tunnel outlives the command that started it; its output goes to a log
file under the state directory, never to pipes owned by the caller.
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from tailserve.capabilities.tunnel.base import CLOUDFLARED_NOT_FOUND, extract_quick_tunnel_url
from tailserve.core.errors import TailserveError, ToolUnavailableError
from tailserve.core.processes import OSProcessRuntime, ProcessRuntime
from tailserve.storage.state_store import TailserveState

logger = logging.getLogger(__name__)

QUICK_TUNNEL_TIMEOUT = 15.0
QUICK_TUNNEL_POLL_INTERVAL = 0.1


@dataclass
class QuickTunnel:
    pid: int
    url: str
    port: int
    log_path: Path | None = None

    def to_record(self) -> dict:
        record = {
            "pid": self.pid,
            "url": self.url,
            "port": self.port,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        if self.log_path is not None:
            record["logPath"] = str(self.log_path)
        return record


class _LogFollower:
    """Returns the complete lines appended to a file since the last read."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._offset = 0
        self._partial = b""

    def read_lines(self, final: bool = False) -> list[str]:
        with open(self._path, "rb") as f:
            f.seek(self._offset)
            chunk = f.read()
        self._offset += len(chunk)
        lines = (self._partial + chunk).split(b"\n")
        self._partial = b"" if final else lines.pop()
        return [line.decode("utf-8", errors="replace").strip() for line in lines]


async def _follow_for_url(
    proc: subprocess.Popen,
    follower: _LogFollower,
    poll_interval: float,
) -> str:
    while True:
        # Exit status first: output written before exit must still be scanned.
        exited = proc.poll() is not None
        for line in follower.read_lines(final=exited):
            if line:
                logger.debug("cloudflared: %s", line)
            url = extract_quick_tunnel_url(line)
            if url:
                return url
        if exited:
            raise TailserveError("cloudflared tunnel exited before URL was available")
        await asyncio.sleep(poll_interval)


async def spawn_quick_tunnel(
    port: int,
    log_dir: Path,
    timeout: float = QUICK_TUNNEL_TIMEOUT,
    binary: str = "cloudflared",
    poll_interval: float = QUICK_TUNNEL_POLL_INTERVAL,
) -> QuickTunnel:
    """Start ``cloudflared tunnel --url`` for *port* and wait for its public URL.

    stdout and stderr both go to ``quick-<port>-<id>.log`` under *log_dir*;
    the first URL written to either resolves the call.  Raises
    ToolUnavailableError if cloudflared is missing and TailserveError if the
    process exits first or no URL appears within *timeout* seconds (the
    process is killed in that case).
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"quick-{port}-{uuid.uuid4().hex[:8]}.log"
    with open(log_path, "wb") as log:
        try:
            proc = subprocess.Popen(
                [binary, "tunnel", "--url", f"http://localhost:{port}"],
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            log_path.unlink(missing_ok=True)
            raise ToolUnavailableError(CLOUDFLARED_NOT_FOUND) from e

    try:
        url = await asyncio.wait_for(
            _follow_for_url(proc, _LogFollower(log_path), poll_interval),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        raise TailserveError("Timed out waiting for cloudflared tunnel URL")

    logger.info("Quick tunnel for port %d: %s (PID %d, log %s)", port, url, proc.pid, log_path)
    return QuickTunnel(pid=proc.pid, url=url, port=port, log_path=log_path)


def record_quick_tunnel(state: TailserveState, tunnel: QuickTunnel) -> str:
    """Store *tunnel* under ``state.tunnels``. Returns its id."""
    tunnel_id = uuid.uuid4().hex[:8]
    state.tunnels[tunnel_id] = tunnel.to_record()
    return tunnel_id


def kill_tunnel_process(pid: int, processes: ProcessRuntime | None = None) -> bool:
    """SIGTERM a quick-tunnel process. False if it was already gone."""
    processes = processes or OSProcessRuntime()
    try:
        processes.terminate(pid)
    except ProcessLookupError:
        return False
    return True


def stop_tracked_tunnels(state: TailserveState, processes: ProcessRuntime | None = None) -> list[str]:
    """Kill every recorded quick tunnel and forget it. Returns removed ids."""
    removed: list[str] = []
    for tunnel_id, record in list(state.tunnels.items()):
        pid = record.get("pid") if isinstance(record, dict) else None
        if isinstance(pid, int) and pid > 0:
            kill_tunnel_process(pid, processes)
        del state.tunnels[tunnel_id]
        removed.append(tunnel_id)
    return removed

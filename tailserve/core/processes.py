"""OS process helpers: pid probes, process-table scans, detached spawns.

Everything that touches the OS process table goes through ``ProcessRuntime``
so that supervisors can be driven by a fake in tests.  The default
implementation uses signals for liveness and psutil for process-table,
uptime and listening-socket lookups.
"""
from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil

from tailserve.core.errors import ToolUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, trimmed."""
        return f"{self.stdout}\n{self.stderr}".strip()


def run_command(args: list[str], timeout: float | None = 30) -> CommandResult:
    """Run *args* to completion and capture its output.

    Raises ToolUnavailableError when the executable does not exist.
    """
    try:
        proc = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise ToolUnavailableError(f"{args[0]} not found") from e
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out: %s", " ".join(args))
        return CommandResult(returncode=-1, stdout="", stderr="timed out")
    return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


# ---------------------------------------------------------------------------
# Parsers and probes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    command: str


def parse_pid(text: str) -> int | None:
    """Parse pid-file contents. Only a bare positive integer is accepted."""
    text = text.strip()
    if not text.isdigit():
        return None
    pid = int(text)
    return pid if pid > 0 else None


def is_port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Return True if something accepts TCP connections on host:port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(timeout)
        try:
            return s.connect_ex((host, port)) == 0
        except OSError:
            return False


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------

@runtime_checkable
class ProcessRuntime(Protocol):
    """OS process operations used by the server and tunnel supervisors."""

    def is_running(self, pid: int) -> bool: ...

    def terminate(self, pid: int) -> None: ...

    def kill(self, pid: int) -> None: ...

    def list_processes(self) -> list[ProcessEntry] | None: ...

    def uptime_seconds(self, pid: int) -> int | None: ...

    def listening_port(self, pid: int) -> int | None: ...

    def spawn_detached(self, args: list[str], env: dict[str, str] | None = None) -> int: ...


class OSProcessRuntime:
    """ProcessRuntime backed by signals and psutil."""

    def is_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else.
            return True
        return True

    def terminate(self, pid: int) -> None:
        os.kill(pid, signal.SIGTERM)

    def kill(self, pid: int) -> None:
        os.kill(pid, signal.SIGKILL)

    def list_processes(self) -> list[ProcessEntry] | None:
        entries: list[ProcessEntry] = []
        # Unreadable attributes come back as None, vanished processes are skipped.
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline")
            if not cmdline:
                continue
            entries.append(ProcessEntry(pid=proc.info["pid"], command=" ".join(cmdline)))
        return entries

    def uptime_seconds(self, pid: int) -> int | None:
        try:
            created = psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        return max(0, int(time.time() - created))

    def listening_port(self, pid: int) -> int | None:
        try:
            connections = psutil.Process(pid).net_connections(kind="tcp")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        for conn in connections:
            if conn.status == psutil.CONN_LISTEN and conn.laddr:
                return conn.laddr.port
        return None

    def spawn_detached(self, args: list[str], env: dict[str, str] | None = None) -> int:
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise ToolUnavailableError(f"{args[0]} not found") from e
        logger.debug("Spawned detached PID %d: %s", proc.pid, " ".join(args))
        return proc.pid


# ---------------------------------------------------------------------------
# Pid files
# ---------------------------------------------------------------------------

def read_pid_file(path: Path) -> str | None:
    """Raw pid-file contents, or None if it does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def write_pid_file(path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid}\n", encoding="utf-8")


def remove_pid_file(path: Path) -> None:
    path.unlink(missing_ok=True)

"""``tailserve`` command line: server lifecycle, route cleanup, tunnels."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

from tailserve.capabilities.tailscale.routes import CleanupSummary, RouteReconciler
from tailserve.capabilities.tunnel.named import NamedTunnelSupervisor
from tailserve.capabilities.tunnel.quick import (
    record_quick_tunnel,
    spawn_quick_tunnel,
    stop_tracked_tunnels,
)
from tailserve.config import Config
from tailserve.core.errors import TailserveError
from tailserve.core.server_process import ProcessSupervisor
from tailserve.doctor import Doctor
from tailserve.storage.state_store import StateStore, TailserveState

logger = logging.getLogger(__name__)


def format_uptime(seconds: int | None) -> str:
    if seconds is None:
        return "-"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_table(rows: list[tuple[str, str]]) -> str:
    width = max(len(label) for label, _ in rows)
    return "\n".join(f"{label.ljust(width)}  {value}" for label, value in rows)


def format_cleanup_summary(summary: CleanupSummary, dry_run: bool) -> str:
    def _fmt(ports: list[int]) -> str:
        return ", ".join(str(p) for p in ports) if ports else "none"

    removed_label = "Would remove" if dry_run else "Removed"
    return "\n".join([
        f"{removed_label}: {_fmt(summary.removed)}",
        f"Protected: {_fmt(summary.protected)}",
        f"Skipped (in use): {_fmt(summary.skipped)}",
    ])


class Cli:
    """Wires the engine components together for one CLI invocation."""

    def __init__(self, config: Config, stdout: TextIO = sys.stdout) -> None:
        self.config = config
        self.stdout = stdout
        self.store = StateStore(config)
        self.reconciler = RouteReconciler.from_config(config)
        self.supervisor = ProcessSupervisor(config, self.store, self.reconciler)
        self.tunnels = NamedTunnelSupervisor(config.tunnel_config_path)

    def _print(self, text: str) -> None:
        self.stdout.write(text + "\n")

    # -- server --------------------------------------------------------

    def server_start(self, args: argparse.Namespace) -> int:
        self.supervisor.start(self.store.read())
        return 0

    def server_stop(self, args: argparse.Namespace) -> int:
        asyncio.run(self.supervisor.stop())
        return 0

    def server_status(self, args: argparse.Namespace) -> int:
        state = self.store.read()
        status = self.supervisor.status(state)
        port = status.port if status.running and status.port else state.port
        self._print(format_table([
            ("Status", "running" if status.running else "stopped"),
            ("Port", str(port)),
            ("Active Shares", str(len(state.shares))),
            ("Active Projects", str(len(state.projects))),
            ("Uptime", format_uptime(status.uptime_seconds) if status.running else "-"),
        ]))
        return 0

    # -- routes --------------------------------------------------------

    def cleanup(self, args: argparse.Namespace) -> int:
        state = self.store.read()
        summary = self.reconciler.cleanup_stale_routes(
            protected_ports=state.protected_ports, dry_run=args.dry_run,
        )
        self._print(format_cleanup_summary(summary, args.dry_run))
        return 0

    def doctor(self, args: argparse.Namespace) -> int:
        doctor = Doctor(self.store, self.supervisor, self.reconciler, self.tunnels)
        summary = doctor.run(fix=args.fix)
        for check in summary.checks:
            prefix = "✓" if check.ok else "✗"
            self._print(f"{prefix} {check.name}: {check.message}")
        self._print(f"{summary.failed + summary.fixed} issue(s), {summary.fixed} fixed, {summary.failed} remaining")
        return 1 if summary.failed else 0

    # -- tunnels -------------------------------------------------------

    def tunnel_setup(self, args: argparse.Namespace) -> int:
        if not self.tunnels.is_authenticated():
            self.tunnels.login()
        created = self.tunnels.create(args.name)
        self.tunnels.route_dns(created.name, args.hostname)

        def _apply(state: TailserveState) -> None:
            state.named_tunnel = created.to_config(args.hostname)

        state = self.store.update(_apply)
        if self.supervisor.read_status().running:
            self.tunnels.ensure_running(state)
        self._print(f"Named tunnel ready: https://{args.hostname}")
        return 0

    def tunnel_remove(self, args: argparse.Namespace) -> int:
        state = self.store.read()
        if state.named_tunnel is None:
            self._print("No named tunnel configured")
            return 0
        asyncio.run(self.tunnels.remove(state))
        self.store.update(lambda s: setattr(s, "named_tunnel", None))
        return 0

    def tunnel_quick(self, args: argparse.Namespace) -> int:
        tunnel = asyncio.run(spawn_quick_tunnel(args.port, self.config.quick_tunnel_log_dir))
        tunnel_id: list[str] = []
        self.store.update(lambda s: tunnel_id.append(record_quick_tunnel(s, tunnel)))
        self._print(f"{tunnel.url}  (id {tunnel_id[0]}, PID {tunnel.pid})")
        return 0

    def tunnel_stop_all(self, args: argparse.Namespace) -> int:
        removed: list[str] = []
        self.store.update(lambda s: removed.extend(stop_tracked_tunnels(s)))
        self._print(f"Stopped {len(removed)} tunnel(s)")
        return 0


def build_parser(cli: Cli) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tailserve")
    sub = parser.add_subparsers(dest="command", required=True)

    server = sub.add_parser("server").add_subparsers(dest="action", required=True)
    server.add_parser("start").set_defaults(handler=cli.server_start)
    server.add_parser("stop").set_defaults(handler=cli.server_stop)
    server.add_parser("status").set_defaults(handler=cli.server_status)

    cleanup = sub.add_parser("cleanup")
    cleanup.add_argument("--dry-run", action="store_true")
    cleanup.set_defaults(handler=cli.cleanup)

    doctor = sub.add_parser("doctor")
    doctor.add_argument("--fix", action="store_true")
    doctor.set_defaults(handler=cli.doctor)

    tunnel = sub.add_parser("tunnel").add_subparsers(dest="action", required=True)
    setup = tunnel.add_parser("setup")
    setup.add_argument("name")
    setup.add_argument("hostname")
    setup.set_defaults(handler=cli.tunnel_setup)
    tunnel.add_parser("remove").set_defaults(handler=cli.tunnel_remove)
    quick = tunnel.add_parser("quick")
    quick.add_argument("port", type=int)
    quick.set_defaults(handler=cli.tunnel_quick)
    tunnel.add_parser("stop-all").set_defaults(handler=cli.tunnel_stop_all)

    return parser


def main(
    argv: list[str] | None = None,
    config: Config | None = None,
    stdout: TextIO = sys.stdout,
    stderr: TextIO = sys.stderr,
) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")
    cli = Cli(config or Config.from_env(), stdout=stdout)
    args = build_parser(cli).parse_args(argv)
    try:
        return args.handler(args)
    except (TailserveError, OSError) as e:
        stderr.write(f"{e}\n")
        return 1


def run() -> None:
    sys.exit(main())

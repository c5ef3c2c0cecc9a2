from __future__ import annotations

import asyncio
import logging
import os
import socket

import aiohttp
from aiohttp import web

from tailserve.storage.state_store import StateStore

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 2.0


def _build_app(store: StateStore) -> web.Application:
    app = web.Application()
    app["store"] = store

    app.router.add_get("/api/health", _handle_health)
    app.router.add_get("/api/status", _handle_status)
    return app


async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True, "pid": os.getpid()})


async def _handle_status(request: web.Request) -> web.Response:
    store: StateStore = request.app["store"]
    state = store.read()
    data = {
        "port": state.port,
        "origin": state.share_origin(),
        "protocol": state.ts_protocol,
        "shares": len(state.shares),
        "projects": len(state.projects),
        "tunnels": len(state.tunnels),
        "namedTunnel": state.named_tunnel.hostname if state.named_tunnel else None,
    }
    return web.json_response(data)


class WebServer:
    """aiohttp server running on a socket that Bootstrap already bound."""

    def __init__(self, store: StateStore) -> None:
        self._app = _build_app(store)
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self, sock: socket.socket) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.SockSite(self._runner, sock)
        await site.start()
        host, port = sock.getsockname()[:2]
        logger.info("Server running at http://%s:%d", host, port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Server stopped")


async def fetch_health(port: int, host: str = "127.0.0.1", timeout: float = HEALTH_TIMEOUT) -> bool:
    """True if the server on host:port answers ``/api/health`` with ``ok``."""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"http://{host}:{port}/api/health",
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    return False
                data = await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError):
        return False
    return isinstance(data, dict) and data.get("ok") is True


def is_server_healthy(port: int) -> bool:
    return asyncio.run(fetch_health(port))

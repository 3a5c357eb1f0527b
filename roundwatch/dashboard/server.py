from __future__ import annotations

import asyncio

from aiohttp import web

from roundwatch.data.snapshot_store import StatusStore
from roundwatch.infra.log import get_logger


def build_status_app(store: StatusStore) -> web.Application:
    async def handle_api(_req: web.Request) -> web.Response:
        return web.json_response(store.read(), headers={"Cache-Control": "no-store"})

    async def handle_health(_req: web.Request) -> web.Response:
        status = store.read()
        code = 200 if status.get("ok") else 503
        return web.json_response(
            {"ok": bool(status.get("ok")), "last_seen_epoch": status.get("last_seen_epoch"), "ts": status.get("ts")},
            status=code,
        )

    app = web.Application()
    app.router.add_get("/", handle_api)
    app.router.add_get("/api", handle_api)
    app.router.add_get("/health", handle_health)
    return app


async def run_status_server(*, data_dir: str, port: int, stop: asyncio.Event, log_level: str = "INFO") -> None:
    log = get_logger("status", log_level)
    runner = web.AppRunner(build_status_app(StatusStore(data_dir)))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log.info("status server running on :%s", port)
    try:
        await stop.wait()
    finally:
        await runner.cleanup()
        log.info("status server stopped")

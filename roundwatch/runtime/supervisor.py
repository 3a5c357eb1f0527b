from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable


class LoopSupervisor:
    """Restarts a managed async loop after a crash, with bounded backoff, until stopped."""

    def __init__(self, *, base_delay: float = 2.0, max_delay: float = 20.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.restarts = 0

    async def run_until(self, stop: asyncio.Event, name: str, fn: Callable[[], Awaitable[None]], log) -> None:
        delay = self.base_delay
        while not stop.is_set():
            try:
                await fn()
                if stop.is_set():
                    return
                log.warning("loop %s exited cleanly; restarting", name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.exception("loop %s crashed: %s", name, exc)
            self.restarts += 1
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(self.max_delay, max(self.base_delay, delay * 1.5))

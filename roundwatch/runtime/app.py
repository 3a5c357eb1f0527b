from __future__ import annotations

import asyncio
import signal
import sqlite3
from collections.abc import Callable
from typing import Any

from roundwatch.config import Settings
from roundwatch.dashboard import run_status_server
from roundwatch.data import (
    EndpointPool,
    RetryPolicy,
    RoundReader,
    RoundStore,
    RpcClient,
    StatusStore,
    contract_factory,
)
from roundwatch.domain import RoundwatchError, StartupError
from roundwatch.engine import Backfiller, BackfillSummary, RoundTracker, TrackerConfig
from roundwatch.infra import RuntimeEventLogger, get_logger
from roundwatch.runtime.supervisor import LoopSupervisor


def open_store(settings: Settings) -> RoundStore:
    try:
        return RoundStore(settings.db_path, settings.snapshot_offsets)
    except (sqlite3.Error, OSError) as exc:
        raise StartupError(f"cannot open store {settings.db_path}: {exc}") from exc


def build_reader(settings: Settings, *, events=None, factory: Callable[[str], Any] | None = None) -> RoundReader:
    pool = EndpointPool(
        settings.rpc_urls,
        factory or contract_factory(settings.contract_address, timeout=settings.rpc_timeout_sec),
        failure_threshold=settings.rpc_failure_threshold,
        events=events,
    )
    policy = RetryPolicy(
        max_attempts=settings.rpc_max_attempts,
        base_delay=settings.rpc_base_delay_sec,
        max_delay=settings.rpc_max_delay_sec,
    )
    return RoundReader(RpcClient(pool, policy))


async def reachable_epoch(reader: RoundReader) -> int:
    """Current epoch, or StartupError when no endpoint answers."""
    try:
        return await reader.current_epoch()
    except asyncio.CancelledError:
        raise
    except RoundwatchError as exc:
        raise StartupError(f"no reachable endpoint: {exc}") from exc


class App:
    """Live runtime: tracker loop, optional status server, signal-driven shutdown."""

    def __init__(self, settings: Settings, *, factory: Callable[[str], Any] | None = None):
        self.settings = settings
        self.factory = factory
        self.log = get_logger("roundwatch", settings.log_level)
        self.stop = asyncio.Event()

    def _install_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._request_stop, sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _request_stop(self, sig=None) -> None:
        if not self.stop.is_set():
            self.log.info("shutdown requested (%s); finishing current tick", getattr(sig, "name", sig))
        self.stop.set()

    async def run(self) -> None:
        s = self.settings
        self.log.info(
            "starting roundwatch contract=%s endpoints=%d offsets=%s poll=%.1fs db=%s",
            s.contract_address, len(s.rpc_urls), s.snapshot_offsets, s.poll_interval_sec, s.db_path,
        )
        events = RuntimeEventLogger(s.data_dir, enabled=s.events_enabled)
        store = open_store(s)
        try:
            reader = build_reader(s, events=events, factory=self.factory)
            tracker = RoundTracker(
                reader,
                store,
                TrackerConfig.from_settings(s),
                events=events,
                status=StatusStore(s.data_dir),
                log=get_logger("tracker", s.log_level),
            )
            try:
                await tracker.start()
            except RoundwatchError as exc:
                raise StartupError(f"no reachable endpoint: {exc}") from exc
            except sqlite3.Error as exc:
                raise StartupError(f"cannot read store {s.db_path}: {exc}") from exc

            self._install_signals()
            supervisor = LoopSupervisor()
            jobs = [supervisor.run_until(self.stop, "round_tracker", lambda: tracker.run(self.stop), self.log)]
            if s.status_server_enabled:
                jobs.append(run_status_server(data_dir=s.data_dir, port=s.status_port, stop=self.stop, log_level=s.log_level))
            await asyncio.gather(*jobs)
        finally:
            store.close()
            self.log.info("store closed")


async def run_backfill_job(
    settings: Settings,
    *,
    mode: str = "incomplete",
    start: int | None = None,
    end: int | None = None,
    count: int | None = None,
    limit: int | None = None,
    delay: float | None = None,
    factory: Callable[[str], Any] | None = None,
) -> BackfillSummary:
    events = RuntimeEventLogger(settings.data_dir, enabled=settings.events_enabled)
    store = open_store(settings)
    try:
        reader = build_reader(settings, events=events, factory=factory)
        await reachable_epoch(reader)
        backfiller = Backfiller(
            reader,
            store,
            delay=settings.backfill_delay_sec if delay is None else delay,
            events=events,
            log=get_logger("backfill", settings.log_level),
        )
        if mode == "range":
            if start is None or end is None:
                raise ValueError("range mode needs start and end")
            return await backfiller.run_range(start, end)
        if mode == "last":
            return await backfiller.run_last(count or settings.backfill_last_count)
        if mode == "gaps":
            return await backfiller.fill_gaps()
        if mode == "incomplete":
            return await backfiller.repair_incomplete(limit or settings.incomplete_limit)
        raise ValueError(f"unknown backfill mode {mode!r}")
    finally:
        store.close()


def run_main(settings: Settings) -> int:
    log = get_logger("roundwatch", settings.log_level)
    try:
        asyncio.run(App(settings).run())
    except StartupError as exc:
        log.error("startup failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        log.info("interrupted")
    return 0

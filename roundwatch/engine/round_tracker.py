from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from roundwatch.data import RoundReader, RoundStore
from roundwatch.domain import PermanentRemoteError, RawRound, TrackedRound
from roundwatch.engine.backfill import fill_from_chain
from roundwatch.infra import ErrorTracker
from roundwatch.settlement import implied_multiples, settle


def snapshot_due(time_until_lock: float, offset: int, tolerance: float) -> bool:
    return abs(time_until_lock - offset) <= tolerance


def _pct(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return (part * 10_000 // total) / 100.0


@dataclass(frozen=True)
class TrackerConfig:
    poll_interval_sec: float = 5.0
    snapshot_offsets: tuple[int, ...] = (20, 8, 4)
    snapshot_tolerance_sec: float = 2.0
    settle_retry_delay_sec: float = 10.0
    max_settle_attempts: int = 12
    discovery_max_batch: int = 5
    catchup_per_tick: int = 20
    max_parallel_rounds: int = 4
    resume_grace_sec: int = 900
    summary_every_ticks: int = 60
    stale_after_sec: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> TrackerConfig:
        return cls(
            poll_interval_sec=settings.poll_interval_sec,
            snapshot_offsets=tuple(settings.snapshot_offsets),
            snapshot_tolerance_sec=settings.snapshot_tolerance_sec,
            settle_retry_delay_sec=settings.settle_retry_delay_sec,
            max_settle_attempts=settings.max_settle_attempts,
            discovery_max_batch=settings.discovery_max_batch,
            catchup_per_tick=settings.catchup_per_tick,
            max_parallel_rounds=settings.max_parallel_rounds,
            resume_grace_sec=settings.resume_grace_sec,
            summary_every_ticks=settings.summary_every_ticks,
            stale_after_sec=settings.status_stale_sec,
        )


class RoundTracker:
    """Live poller: discovers rounds, captures snapshots, lock and settlement.

    The tracked-round map and the catch-up queue are owned by this object
    and only touched from `tick()`, which never runs twice at once. Nothing
    inside a tick raises: remote and store failures are logged and retried
    on a later tick.
    """

    def __init__(
        self,
        reader: RoundReader,
        store: RoundStore,
        cfg: TrackerConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        events=None,
        status=None,
        log: logging.Logger | None = None,
    ):
        self.reader = reader
        self.store = store
        self.cfg = cfg or TrackerConfig()
        self._clock = clock
        self._sleep = sleep
        self.events = events
        self.status_store = status
        self.log = log or logging.getLogger("roundwatch.tracker")

        self._tracked: dict[int, TrackedRound] = {}
        self.last_seen: int | None = None
        self.counters: dict[str, int] = defaultdict(int)
        self.errors = ErrorTracker()
        self._in_tick = False
        # epochs skipped by a capped discovery; inserted and filled without snapshots
        self._catchup: deque[int] = deque()
        self.last_discovery_ok: float | None = None
        self.discovery_failures = 0

    @property
    def tracked(self) -> MappingProxyType:
        return MappingProxyType(self._tracked)

    # -- startup ---------------------------------------------------------------

    async def start(self) -> int:
        """Read the current epoch and pick up unfinished rounds from the store.

        Remote failures propagate: with no reachable endpoint the caller
        should treat this as a startup failure.
        """
        current = await self.reader.current_epoch()
        self.last_discovery_ok = self._clock()
        if self.last_seen is None:
            self.last_seen = current - 1
        resumed = self.resume_incomplete()
        self.log.info("tracker start epoch=%d resumed=%d", current, resumed)
        return current

    def resume_incomplete(self) -> int:
        now = self._clock()
        limit = max(10, self.cfg.discovery_max_batch * 4)
        resumed = 0
        for rec in self.store.query_incomplete(limit):
            if rec.epoch in self._tracked or rec.has_settlement:
                continue
            if rec.close_timestamp + self.cfg.resume_grace_sec < now:
                continue
            entry = TrackedRound(
                epoch=rec.epoch,
                lock_time=rec.lock_timestamp,
                close_time=rec.close_timestamp,
                locked=rec.has_lock,
            )
            for off, slot in rec.snapshots.items():
                if slot is not None:
                    entry.mark_snapshot(off)
            self._tracked[rec.epoch] = entry
            resumed += 1
            self.log.info("resumed epoch=%d stage=%s", rec.epoch, entry.stage.value)
        return resumed

    # -- main loop -------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            started = loop.time()
            await self.tick()
            remaining = max(0.0, self.cfg.poll_interval_sec - (loop.time() - started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
        self.log.info("tracker stopped tracked=%d last_seen=%s", len(self._tracked), self.last_seen)

    async def tick(self) -> bool:
        if self._in_tick:
            self.counters["ticks_skipped"] += 1
            return False
        self._in_tick = True
        try:
            await self._discover()
            entries = sorted(self._tracked.values(), key=lambda e: e.epoch)
            if entries:
                await self._gather_bounded([self._process(e) for e in entries], self.cfg.max_parallel_rounds)
            if self._catchup:
                await self._catch_up()
            self.counters["ticks"] += 1
            if self.counters["ticks"] % max(1, self.cfg.summary_every_ticks) == 0:
                self._log_summary()
            self._write_status()
        finally:
            self._in_tick = False
        return True

    async def _gather_bounded(self, coros: list[Awaitable], limit: int):
        sem = asyncio.Semaphore(max(1, int(limit)))

        async def _run(coro):
            async with sem:
                return await coro

        return await asyncio.gather(*[_run(c) for c in coros], return_exceptions=True)

    # -- discovery -------------------------------------------------------------

    async def _discover(self) -> None:
        try:
            current = await self.reader.current_epoch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.discovery_failures += 1
            self._failure("discover", exc)
            return
        self.last_discovery_ok = self._clock()
        self.discovery_failures = 0

        if self.last_seen is None:
            self.last_seen = current - 1
        if current <= self.last_seen:
            return

        first = self.last_seen + 1
        batch = max(1, self.cfg.discovery_max_batch)
        if current - first + 1 > batch:
            skip_to = current - batch + 1
            self.log.warning(
                "discovery gap: epochs %d..%d queued for catch-up without snapshots", first, skip_to - 1
            )
            self._catchup.extend(range(first, skip_to))
            self.counters["catchup_queued"] += skip_to - first
            if self.events is not None:
                self.events.emit("discovery_gap", first=first, last=skip_to - 1)
            first = skip_to
            self.last_seen = first - 1

        for epoch in range(first, current + 1):
            if not await self._discover_one(epoch):
                break
            self.last_seen = epoch

    async def _discover_one(self, epoch: int) -> bool:
        """Returns False when the epoch should be retried next tick."""
        try:
            raw = await self.reader.fetch_round(epoch)
        except asyncio.CancelledError:
            raise
        except PermanentRemoteError as exc:
            self._failure("discover", exc, epoch=epoch)
            return True
        except Exception as exc:
            self._failure("discover", exc, epoch=epoch)
            return False

        if not raw.started:
            self.log.warning("epoch=%d reports start_ts=0; not tracking", epoch)
            self.counters["never_started"] += 1
            return True

        try:
            inserted = self.store.insert_round(epoch, raw.lock_ts, raw.close_ts)
        except Exception as exc:
            self._failure("insert", exc, epoch=epoch)
            return False

        if epoch not in self._tracked:
            self._tracked[epoch] = TrackedRound(epoch=epoch, lock_time=raw.lock_ts, close_time=raw.close_ts)
            self.counters["discovered"] += 1
            self.log.info(
                "new round epoch=%d lock=%d close=%d inserted=%s", epoch, raw.lock_ts, raw.close_ts, inserted
            )
            if self.events is not None:
                self.events.emit("discovered", epoch=epoch, lock_ts=raw.lock_ts, close_ts=raw.close_ts, inserted=inserted)
        return True

    async def _catch_up(self) -> None:
        """Insert and fill up to `catchup_per_tick` queued epochs, oldest first."""
        for _ in range(max(1, self.cfg.catchup_per_tick)):
            if not self._catchup:
                return
            epoch = self._catchup.popleft()
            try:
                raw = await self.reader.fetch_round(epoch)
            except asyncio.CancelledError:
                self._catchup.appendleft(epoch)
                raise
            except PermanentRemoteError as exc:
                self._failure("catchup", exc, epoch=epoch)
                continue
            except Exception as exc:
                self._failure("catchup", exc, epoch=epoch)
                self._catchup.appendleft(epoch)
                return

            if not raw.started:
                self.counters["never_started"] += 1
                continue
            try:
                inserted = self.store.insert_round(epoch, raw.lock_ts, raw.close_ts)
                locked, result = fill_from_chain(self.store, raw)
            except Exception as exc:
                self._failure("store_catchup", exc, epoch=epoch)
                self._catchup.appendleft(epoch)
                return
            self.counters["caught_up"] += 1
            self.log.info(
                "catch-up epoch=%d inserted=%s locked=%s winner=%s",
                epoch, inserted, locked, result.winner.value if result else None,
            )

    # -- per-round -------------------------------------------------------------

    async def _process(self, entry: TrackedRound) -> None:
        try:
            await self._process_round(entry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failure("round", exc, epoch=entry.epoch)

    async def _process_round(self, entry: TrackedRound) -> None:
        time_until_lock = entry.lock_time - self._clock()
        due = [
            off
            for off in self.cfg.snapshot_offsets
            if off not in entry.snapshots_taken
            and snapshot_due(time_until_lock, off, self.cfg.snapshot_tolerance_sec)
        ]
        if due:
            await self._capture_snapshots(entry, due)

        now = self._clock()
        if not entry.locked and entry.lock_time - now <= 0 and now < entry.close_time:
            await self._capture_lock(entry)

        if not entry.settled and self._clock() >= entry.close_time:
            await self._capture_settlement(entry)

    async def _fetch(self, epoch: int, stage: str) -> RawRound | None:
        try:
            return await self.reader.fetch_round(epoch)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failure(stage, exc, epoch=epoch)
            return None

    def _store_write(self, stage: str, epoch: int, fn: Callable[..., bool], *args) -> bool:
        """True once the write went through (or the slot was already filled)."""
        try:
            fn(*args)
        except Exception as exc:
            self._failure(f"store_{stage}", exc, epoch=epoch)
            return False
        return True

    async def _capture_snapshots(self, entry: TrackedRound, offsets: list[int]) -> None:
        raw = await self._fetch(entry.epoch, "snapshot")
        if raw is None:
            return
        if raw.pool_empty:
            self.counters["anomalies"] += 1
            self.log.warning("epoch=%d snapshot skipped: both pools empty", entry.epoch)
            return
        captured_at = int(self._clock())
        total = raw.bull_amount + raw.bear_amount
        for off in offsets:
            if not self._store_write(
                "snapshot", entry.epoch, self.store.update_snapshot,
                entry.epoch, off, raw.bull_amount, raw.bear_amount, captured_at,
            ):
                continue
            entry.mark_snapshot(off)
            self.counters["snapshots"] += 1
            up, down = implied_multiples(raw.bull_amount, raw.bear_amount)
            self.log.info(
                "snapshot t%ds epoch=%d bull=%.2f%% bear=%.2f%% total_wei=%d up=%s down=%s",
                off, entry.epoch, _pct(raw.bull_amount, total), _pct(raw.bear_amount, total), total, up, down,
            )
            if self.events is not None:
                self.events.emit(
                    "snapshot", epoch=entry.epoch, offset=off, bull_wei=str(raw.bull_amount),
                    bear_wei=str(raw.bear_amount), captured_at=captured_at,
                )

    def _write_lock(self, entry: TrackedRound, raw: RawRound) -> bool:
        if not self._store_write(
            "lock", entry.epoch, self.store.update_lock,
            entry.epoch, raw.bull_amount, raw.bear_amount, raw.lock_price,
        ):
            return False
        entry.mark_locked()
        self.counters["locks"] += 1
        total = raw.bull_amount + raw.bear_amount
        self.log.info(
            "lock epoch=%d price=%d bull=%.2f%% bear=%.2f%% total_wei=%d",
            entry.epoch, raw.lock_price, _pct(raw.bull_amount, total), _pct(raw.bear_amount, total), total,
        )
        if self.events is not None:
            self.events.emit("lock", epoch=entry.epoch, lock_price=str(raw.lock_price), total_wei=str(total))
        return True

    async def _capture_lock(self, entry: TrackedRound) -> None:
        raw = await self._fetch(entry.epoch, "lock")
        if raw is None:
            return
        if not raw.locked:
            self.log.debug("epoch=%d lock price not published yet", entry.epoch)
            return
        self._write_lock(entry, raw)

    async def _capture_settlement(self, entry: TrackedRound) -> None:
        raw = await self._fetch(entry.epoch, "settle")
        if raw is None:
            return
        if not raw.finalized:
            self.log.info("epoch=%d waiting %.0fs for oracle", entry.epoch, self.cfg.settle_retry_delay_sec)
            await self._sleep(self.cfg.settle_retry_delay_sec)
            raw = await self._fetch(entry.epoch, "settle")
            if raw is None:
                return
        if not raw.finalized:
            entry.settle_attempts += 1
            if entry.settle_attempts < self.cfg.max_settle_attempts:
                return
            if self._store_write("unresolved", entry.epoch, self.store.mark_unresolved, entry.epoch):
                self._tracked.pop(entry.epoch, None)
                self.counters["unresolved"] += 1
                self.log.warning(
                    "epoch=%d oracle not final after %d attempts; marked unknown", entry.epoch, entry.settle_attempts
                )
                if self.events is not None:
                    self.events.emit("unresolved", epoch=entry.epoch, attempts=entry.settle_attempts)
            return

        if not entry.locked and not self._write_lock(entry, raw):
            return

        result = settle(raw.lock_price, raw.close_price, raw.bull_amount, raw.bear_amount)
        if not self._store_write(
            "settle", entry.epoch, self.store.update_settlement,
            entry.epoch, raw.close_price, result.winner, result.payout_multiple,
        ):
            return
        entry.mark_settled()
        self._tracked.pop(entry.epoch, None)
        self.counters["settled"] += 1
        self.log.info(
            "settled epoch=%d lock=%d close=%d winner=%s payout=%sx",
            entry.epoch, raw.lock_price, raw.close_price, result.winner.value, result.payout_multiple,
        )
        if self.events is not None:
            self.events.emit(
                "settled", epoch=entry.epoch, close_price=str(raw.close_price),
                winner=result.winner.value, payout_multiple=str(result.payout_multiple),
            )

    # -- reporting -------------------------------------------------------------

    def _failure(self, stage: str, err: BaseException, *, epoch: int | None = None) -> None:
        self.counters[f"{stage}_errors"] += 1
        self.log.warning("stage=%s epoch=%s error=%s: %s", stage, epoch, type(err).__name__, err)
        self.errors.tick(f"{stage}:{type(err).__name__}", self.log.warning, err=err, every=20)
        if self.events is not None:
            try:
                self.events.failure(stage, err, epoch=epoch)
            except OSError as exc:
                self.log.debug("event log write failed: %s", exc)

    def healthy(self) -> bool:
        """True while `currentEpoch` has answered within `stale_after_sec`."""
        if self.last_discovery_ok is None:
            return False
        return self._clock() - self.last_discovery_ok <= self.cfg.stale_after_sec

    def status(self) -> dict[str, Any]:
        return {
            "ok": self.healthy(),
            "ts": int(self._clock()),
            "last_seen_epoch": self.last_seen,
            "last_discovery_ok": self.last_discovery_ok,
            "discovery_failures": self.discovery_failures,
            "catchup_pending": len(self._catchup),
            "tracked": [e.as_dict() for e in sorted(self._tracked.values(), key=lambda e: e.epoch)],
            "rpc": self.reader.status(),
            "counters": dict(self.counters),
        }

    def _log_summary(self) -> None:
        rpc = self.reader.status()
        self.log.info(
            "summary tracked=%d last_seen=%s endpoint=%s failures=%d rotations=%d counters=%s",
            len(self._tracked), self.last_seen, rpc.get("endpoint"), rpc.get("failures", 0),
            rpc.get("rotations", 0), dict(self.counters),
        )

    def _write_status(self) -> None:
        if self.status_store is None:
            return
        try:
            self.status_store.write(self.status())
        except OSError as exc:
            self.log.warning("status write failed: %s", exc)

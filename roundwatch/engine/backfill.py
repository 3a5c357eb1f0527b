from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass
from typing import Any

from roundwatch.data import RoundReader, RoundStore
from roundwatch.domain import RawRound, Settlement
from roundwatch.settlement import settle


def fill_from_chain(
    store: RoundStore,
    raw: RawRound,
    *,
    need_lock: bool = True,
    need_settlement: bool = True,
) -> tuple[bool, Settlement | None]:
    """Write the lock and settlement slots a fetched round already has.

    Returns (lock written, settlement written or None). Slots the store
    already holds are left alone.
    """
    locked = False
    if need_lock and raw.locked:
        locked = store.update_lock(raw.epoch, raw.bull_amount, raw.bear_amount, raw.lock_price)
    if need_settlement and raw.finalized:
        result = settle(raw.lock_price, raw.close_price, raw.bull_amount, raw.bear_amount)
        if store.update_settlement(raw.epoch, raw.close_price, result.winner, result.payout_multiple):
            return locked, result
    return locked, None


@dataclass
class BackfillSummary:
    mode: str
    requested: int = 0
    processed: int = 0
    inserted: int = 0
    locked: int = 0
    completed: int = 0
    skipped: int = 0
    errors: int = 0
    first_epoch: int | None = None
    last_epoch: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def as_line(self) -> str:
        return (
            f"mode={self.mode} requested={self.requested} processed={self.processed} "
            f"new={self.inserted} locked={self.locked} completed={self.completed} "
            f"skipped={self.skipped} errors={self.errors} last_epoch={self.last_epoch}"
        )


class Backfiller:
    """Batch filler for historical, missing or incomplete rounds.

    Re-runnable: it only ever inserts missing rows and fills empty lock and
    settlement slots. Snapshots are never written here.
    """

    def __init__(
        self,
        reader: RoundReader,
        store: RoundStore,
        *,
        delay: float = 0.2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        events=None,
        progress_every: int = 100,
        log: logging.Logger | None = None,
    ):
        self.reader = reader
        self.store = store
        self.delay = max(0.0, float(delay))
        self._sleep = sleep
        self.events = events
        self.progress_every = max(1, int(progress_every))
        self.log = log or logging.getLogger("roundwatch.backfill")

    def _apply(self, raw: RawRound, *, need_lock: bool, need_settlement: bool, summary: BackfillSummary) -> None:
        locked, result = fill_from_chain(self.store, raw, need_lock=need_lock, need_settlement=need_settlement)
        if locked:
            summary.locked += 1
        if result is not None:
            summary.completed += 1
            self.log.debug("epoch=%d winner=%s payout=%sx", raw.epoch, result.winner.value, result.payout_multiple)

    def _error(self, summary: BackfillSummary, epoch: int, exc: BaseException) -> None:
        summary.errors += 1
        self.log.warning("backfill epoch=%d error=%s: %s", epoch, type(exc).__name__, exc)
        if self.events is not None:
            try:
                self.events.failure("backfill", exc, epoch=epoch, mode=summary.mode)
            except OSError as log_exc:
                self.log.debug("event log write failed: %s", log_exc)

    def _progress(self, summary: BackfillSummary, done: int) -> None:
        if done % self.progress_every == 0 or done == summary.requested:
            pct = (done * 100.0 / summary.requested) if summary.requested else 100.0
            self.log.info("progress %d/%d (%.1f%%) %s", done, summary.requested, pct, summary.as_line())

    async def _walk(self, epochs: Iterable[int], summary: BackfillSummary) -> None:
        """Insert and fill each epoch in order, pausing `delay` between ids."""
        for i, epoch in enumerate(epochs, start=1):
            if i > 1 and self.delay > 0:
                await self._sleep(self.delay)
            try:
                raw = await self.reader.fetch_round(epoch)
                if not raw.started:
                    summary.skipped += 1
                else:
                    if self.store.insert_round(epoch, raw.lock_ts, raw.close_ts):
                        summary.inserted += 1
                    current = self.store.get_round(epoch)
                    self._apply(
                        raw,
                        need_lock=current is None or not current.has_lock,
                        need_settlement=current is None or not current.has_settlement,
                        summary=summary,
                    )
                    summary.processed += 1
                    summary.last_epoch = epoch
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._error(summary, epoch, exc)
            self._progress(summary, i)

    async def run_range(self, start: int, end: int, *, mode: str = "range") -> BackfillSummary:
        start, end = int(start), int(end)
        if start < 0 or start > end:
            raise ValueError(f"invalid range [{start}, {end}]")
        summary = BackfillSummary(mode=mode, requested=end - start + 1, first_epoch=start)
        self.log.info("backfill %s epochs %d..%d (%d rounds)", mode, start, end, summary.requested)
        await self._walk(range(start, end + 1), summary)
        self._finish(summary)
        return summary

    async def run_last(self, count: int) -> BackfillSummary:
        current = await self.reader.current_epoch()
        start = max(1, current - max(1, int(count)) + 1)
        return await self.run_range(start, current, mode="last")

    async def fill_gaps(self) -> BackfillSummary:
        """Fetch every epoch missing between the lowest and highest stored rows."""
        gaps = self.store.find_gaps()
        summary = BackfillSummary(mode="gaps", requested=sum(end - start + 1 for start, end in gaps))
        if not gaps:
            self.log.info("no gaps in stored epochs")
            return summary
        summary.first_epoch = gaps[0][0]
        self.log.info(
            "filling %d gaps (%d epochs): %s",
            len(gaps), summary.requested, ", ".join(f"{a}..{b}" for a, b in gaps[:10]),
        )
        await self._walk((e for start, end in gaps for e in range(start, end + 1)), summary)
        self._finish(summary)
        return summary

    async def repair_incomplete(self, limit: int = 1000) -> BackfillSummary:
        rows = self.store.query_incomplete(limit)
        summary = BackfillSummary(mode="incomplete", requested=len(rows))
        if not rows:
            self.log.info("no incomplete rounds")
            return summary
        summary.first_epoch = rows[-1].epoch
        self.log.info("repairing %d incomplete rounds", len(rows))

        for i, rec in enumerate(rows, start=1):
            try:
                raw = await self.reader.fetch_round(rec.epoch)
                if not raw.started:
                    summary.skipped += 1
                else:
                    self._apply(
                        raw,
                        need_lock=not rec.has_lock,
                        need_settlement=not rec.has_settlement,
                        summary=summary,
                    )
                    summary.processed += 1
                    summary.last_epoch = rec.epoch
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._error(summary, rec.epoch, exc)
            self._progress(summary, i)
            if i < len(rows) and self.delay > 0:
                await self._sleep(self.delay)

        self._finish(summary)
        return summary

    def _finish(self, summary: BackfillSummary) -> None:
        self.log.info("backfill complete %s", summary.as_line())
        if self.events is not None:
            try:
                self.events.emit("backfill_done", **summary.as_dict())
            except OSError as exc:
                self.log.debug("event log write failed: %s", exc)

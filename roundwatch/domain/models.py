from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class Winner(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    DRAW = "draw"
    UNKNOWN = "unknown"


class RoundStage(str, Enum):
    DISCOVERED = "discovered"
    SNAPSHOTTED = "snapshotted"
    LOCKED = "locked"
    SETTLED = "settled"


@dataclass(frozen=True)
class RawRound:
    """Typed view of one `rounds(epoch)` result from the prediction contract."""

    epoch: int
    start_ts: int
    lock_ts: int
    close_ts: int
    lock_price: int
    close_price: int
    lock_oracle_id: int
    close_oracle_id: int
    total_amount: int
    bull_amount: int
    bear_amount: int
    reward_base_cal_amount: int
    reward_amount: int
    oracle_called: bool

    @property
    def started(self) -> bool:
        return self.start_ts != 0

    @property
    def locked(self) -> bool:
        return self.lock_price != 0

    @property
    def finalized(self) -> bool:
        return bool(self.oracle_called) and self.close_price != 0

    @property
    def pool_empty(self) -> bool:
        return self.bull_amount == 0 and self.bear_amount == 0


@dataclass(frozen=True)
class PoolSlot:
    bull_wei: int
    bear_wei: int
    total_wei: int
    timestamp: int | None = None
    lock_price: int | None = None


@dataclass(frozen=True)
class Settlement:
    winner: Winner
    payout_multiple: Decimal


@dataclass(frozen=True)
class RoundRecord:
    """One persisted row of the `rounds` table."""

    epoch: int
    lock_timestamp: int
    close_timestamp: int
    snapshots: dict[int, PoolSlot | None]
    lock: PoolSlot | None
    close_price: int | None
    winner: Winner | None
    winner_payout_multiple: float | None
    is_complete: bool
    created_at: int | None = None
    updated_at: int | None = None

    @property
    def has_lock(self) -> bool:
        return self.lock is not None

    @property
    def has_settlement(self) -> bool:
        return self.close_price is not None


@dataclass
class TrackedRound:
    """In-memory lifecycle state for a round the live tracker is watching.

    Flags only ever go from False to True. Settlement requires lock.
    """

    epoch: int
    lock_time: int
    close_time: int
    snapshots_taken: set[int] = field(default_factory=set)
    locked: bool = False
    settled: bool = False
    settle_attempts: int = 0

    @property
    def stage(self) -> RoundStage:
        if self.settled:
            return RoundStage.SETTLED
        if self.locked:
            return RoundStage.LOCKED
        if self.snapshots_taken:
            return RoundStage.SNAPSHOTTED
        return RoundStage.DISCOVERED

    def mark_snapshot(self, offset: int) -> None:
        self.snapshots_taken.add(int(offset))

    def mark_locked(self) -> None:
        self.locked = True

    def mark_settled(self) -> None:
        if not self.locked:
            raise ValueError(f"epoch {self.epoch}: cannot settle before lock")
        self.settled = True

    def as_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "lock_time": self.lock_time,
            "close_time": self.close_time,
            "snapshots": sorted(self.snapshots_taken, reverse=True),
            "locked": self.locked,
            "settled": self.settled,
            "settle_attempts": self.settle_attempts,
            "stage": self.stage.value,
        }

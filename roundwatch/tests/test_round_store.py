from decimal import Decimal
from pathlib import Path

import pytest

from roundwatch.data import RoundStore
from roundwatch.domain import Winner


def _store(tmp_path: Path) -> RoundStore:
    return RoundStore(str(tmp_path / "rounds.db"), (20, 8, 4), clock=lambda: 1_700_000_000)


def test_insert_is_idempotent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.insert_round(1000, 300, 600) is True
    assert store.insert_round(1000, 999, 1999) is False
    rec = store.get_round(1000)
    assert rec is not None
    assert (rec.lock_timestamp, rec.close_timestamp) == (300, 600)
    assert store.count_rounds() == 1


def test_insert_rejects_lock_not_before_close(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        store.insert_round(1, 600, 600)


def test_schema_has_slot_columns(tmp_path: Path) -> None:
    cols = _store(tmp_path).columns()
    for name in ("t20s_bull_wei", "t8s_total_wei", "t4s_timestamp", "lock_total_wei", "winner_payout_multiple", "is_complete"):
        assert name in cols


def test_snapshot_slot_is_write_once(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_round(1000, 300, 600)
    assert store.update_snapshot(1000, 20, 100, 50, 280) is True
    assert store.update_snapshot(1000, 20, 999, 999, 281) is False
    slot = store.get_round(1000).snapshots[20]
    assert (slot.bull_wei, slot.bear_wei, slot.total_wei, slot.timestamp) == (100, 50, 150, 280)
    assert store.get_round(1000).snapshots[8] is None


def test_unknown_offset_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_round(1000, 300, 600)
    with pytest.raises(ValueError):
        store.update_snapshot(1000, 30, 1, 1, 270)


def test_amounts_beyond_int64_survive(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_round(1, 300, 600)
    big = 123_456_789_012_345_678_901_234
    store.update_lock(1, big, big, 31_000_000_000)
    rec = store.get_round(1)
    assert rec.lock.bull_wei == big
    assert rec.lock.total_wei == 2 * big


def test_complete_requires_snapshot_lock_and_settlement(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_round(1000, 300, 600)
    store.update_lock(1000, 100, 50, 300_00)
    store.update_settlement(1000, 301_00, Winner.BULL, Decimal("1.5"))
    assert store.get_round(1000).is_complete is False

    store.insert_round(1001, 600, 900)
    store.update_snapshot(1001, 4, 10, 10, 596)
    store.update_lock(1001, 10, 10, 5)
    assert store.get_round(1001).is_complete is False
    store.update_settlement(1001, 4, "bear", 2)
    rec = store.get_round(1001)
    assert rec.is_complete is True
    assert rec.winner is Winner.BEAR
    assert rec.winner_payout_multiple == 2.0


def test_settled_row_is_frozen(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_round(1000, 300, 600)
    store.update_lock(1000, 100, 50, 300_00)
    assert store.update_settlement(1000, 301_00, Winner.BULL, Decimal("1.5")) is True
    assert store.update_settlement(1000, 1, Winner.BEAR, Decimal("3")) is False
    assert store.update_snapshot(1000, 8, 1, 1, 292) is False
    assert store.update_lock(1000, 1, 1, 1) is False
    assert store.mark_unresolved(1000) is False
    rec = store.get_round(1000)
    assert rec.winner is Winner.BULL
    assert rec.close_price == 301_00


def test_unresolved_can_still_settle(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_round(1000, 300, 600)
    assert store.mark_unresolved(1000) is True
    assert store.get_round(1000).winner is Winner.UNKNOWN
    assert store.update_settlement(1000, 5, Winner.DRAW, 1) is True
    assert store.get_round(1000).winner is Winner.DRAW


def test_query_incomplete_and_complete(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for epoch in (1, 2, 3):
        store.insert_round(epoch, epoch * 300, epoch * 300 + 300)
    store.update_snapshot(3, 20, 1, 1, 880)
    store.update_lock(3, 1, 1, 10)
    store.update_settlement(3, 11, Winner.BULL, 2)
    # snapshots are the only gap here; not repairable
    store.update_lock(2, 1, 1, 10)
    store.update_settlement(2, 11, Winner.BULL, 2)

    assert [r.epoch for r in store.query_incomplete(10)] == [1]
    assert [r.epoch for r in store.query_incomplete(10, repairable_only=False)] == [2, 1]
    assert [r.epoch for r in store.query_complete()] == [3]
    assert store.latest_epoch() == 3


def test_stats(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for epoch in (1, 2, 3, 4):
        store.insert_round(epoch, 300, 600)
    store.update_lock(1, 1, 1, 10)
    store.update_settlement(1, 11, Winner.BULL, 2)
    store.update_lock(2, 1, 1, 10)
    store.update_settlement(2, 9, Winner.BEAR, 2)
    store.mark_unresolved(3)
    stats = store.stats()
    assert stats["total"] == 4
    assert stats["bull"] == 1 and stats["bear"] == 1
    assert stats["unknown"] == 1
    assert stats["pending"] == 2


def test_reopen_adds_new_offset_columns(tmp_path: Path) -> None:
    path = str(tmp_path / "rounds.db")
    store = RoundStore(path, (20,))
    store.insert_round(1, 300, 600)
    store.close()
    reopened = RoundStore(path, (30, 20))
    assert "t30s_total_wei" in reopened.columns()
    assert reopened.get_round(1).snapshots == {30: None, 20: None}


def test_find_gaps(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.find_gaps() == []
    for epoch in (9, 1, 5, 2):
        store.insert_round(epoch, 300, 600)
    assert store.find_gaps() == [(3, 4), (6, 8)]
    assert store.stats()["missing"] == 5

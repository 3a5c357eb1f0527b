from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Iterator
from decimal import Decimal
from pathlib import Path
from typing import Any

from roundwatch.domain import PoolSlot, RoundRecord, Winner

WINNER_VALUES = tuple(w.value for w in Winner)


def slot_prefix(offset: int) -> str:
    return f"t{int(offset)}s"


def _int_or_none(value) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


class RoundStore:
    """SQLite round table keyed by epoch.

    All writes are idempotent: inserts ignore existing epochs and every slot
    write only lands while that slot is still empty. A settled row is never
    touched again.
    """

    def __init__(
        self,
        db_path: str,
        snapshot_offsets: tuple[int, ...] | list[int] = (20, 8, 4),
        *,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = str(db_path)
        self.offsets = tuple(sorted({int(o) for o in snapshot_offsets}, reverse=True))
        if not self.offsets:
            raise ValueError("at least one snapshot offset is required")
        self._clock = clock
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, timeout=timeout)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self._init_schema()

    # -- schema ---------------------------------------------------------------

    def _snapshot_columns(self) -> list[tuple[str, str]]:
        cols: list[tuple[str, str]] = []
        for off in self.offsets:
            p = slot_prefix(off)
            cols += [
                (f"{p}_bull_wei", "TEXT"),
                (f"{p}_bear_wei", "TEXT"),
                (f"{p}_total_wei", "TEXT"),
                (f"{p}_timestamp", "INTEGER"),
            ]
        return cols

    def _init_schema(self) -> None:
        snap_ddl = ",\n".join(f"    {name} {typ}" for name, typ in self._snapshot_columns())
        with self.conn:
            self.conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS rounds (
                    epoch INTEGER PRIMARY KEY,
                    lock_timestamp INTEGER NOT NULL,
                    close_timestamp INTEGER NOT NULL,
                {snap_ddl},
                    lock_bull_wei TEXT,
                    lock_bear_wei TEXT,
                    lock_total_wei TEXT,
                    lock_price TEXT,
                    close_price TEXT,
                    winner TEXT CHECK (winner IS NULL OR winner IN ('bull','bear','draw','unknown')),
                    winner_payout_multiple REAL,
                    is_complete INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER,
                    updated_at INTEGER
                )
                """
            )
            existing = {r["name"] for r in self.conn.execute("PRAGMA table_info(rounds)")}
            for name, typ in self._snapshot_columns():
                if name not in existing:
                    self.conn.execute(f"ALTER TABLE rounds ADD COLUMN {name} {typ}")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_rounds_complete ON rounds(is_complete)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_rounds_lock_ts ON rounds(lock_timestamp)")

    def columns(self) -> list[str]:
        return [r["name"] for r in self.conn.execute("PRAGMA table_info(rounds)")]

    def _complete_expr(self) -> str:
        any_snapshot = " OR ".join(f"{slot_prefix(o)}_total_wei IS NOT NULL" for o in self.offsets)
        return (
            f"CASE WHEN ({any_snapshot}) AND lock_price IS NOT NULL "
            "AND close_price IS NOT NULL THEN 1 ELSE 0 END"
        )

    def _now(self) -> int:
        return int(self._clock())

    def _write(self, sql: str, params: tuple, epoch: int) -> bool:
        with self.conn:
            cur = self.conn.execute(sql, params)
            changed = cur.rowcount > 0
            if changed:
                self.conn.execute(f"UPDATE rounds SET is_complete = {self._complete_expr()} WHERE epoch = ?", (int(epoch),))
        return changed

    # -- writes ---------------------------------------------------------------

    def insert_round(self, epoch: int, lock_ts: int, close_ts: int) -> bool:
        """Insert a new round; returns False (and changes nothing) if it exists."""
        if int(lock_ts) >= int(close_ts):
            raise ValueError(f"epoch {epoch}: lock_ts {lock_ts} must be before close_ts {close_ts}")
        now = self._now()
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO rounds (epoch, lock_timestamp, close_timestamp, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(epoch) DO NOTHING
                """,
                (int(epoch), int(lock_ts), int(close_ts), now, now),
            )
            return cur.rowcount > 0

    def update_snapshot(self, epoch: int, offset: int, bull_wei: int, bear_wei: int, captured_at: int) -> bool:
        if int(offset) not in self.offsets:
            raise ValueError(f"unknown snapshot offset {offset}; configured {self.offsets}")
        p = slot_prefix(offset)
        bull, bear = int(bull_wei), int(bear_wei)
        return self._write(
            f"""
            UPDATE rounds
            SET {p}_bull_wei = ?, {p}_bear_wei = ?, {p}_total_wei = ?, {p}_timestamp = ?, updated_at = ?
            WHERE epoch = ? AND {p}_timestamp IS NULL AND close_price IS NULL
            """,
            (str(bull), str(bear), str(bull + bear), int(captured_at), self._now(), int(epoch)),
            epoch,
        )

    def update_lock(self, epoch: int, bull_wei: int, bear_wei: int, lock_price: int) -> bool:
        bull, bear = int(bull_wei), int(bear_wei)
        return self._write(
            """
            UPDATE rounds
            SET lock_bull_wei = ?, lock_bear_wei = ?, lock_total_wei = ?, lock_price = ?, updated_at = ?
            WHERE epoch = ? AND lock_price IS NULL AND close_price IS NULL
            """,
            (str(bull), str(bear), str(bull + bear), str(int(lock_price)), self._now(), int(epoch)),
            epoch,
        )

    def update_settlement(self, epoch: int, close_price: int, winner: Winner | str, payout_multiple: Decimal | float) -> bool:
        winner_value = Winner(winner).value
        return self._write(
            """
            UPDATE rounds
            SET close_price = ?, winner = ?, winner_payout_multiple = ?, updated_at = ?
            WHERE epoch = ? AND close_price IS NULL
            """,
            (str(int(close_price)), winner_value, float(payout_multiple), self._now(), int(epoch)),
            epoch,
        )

    def mark_unresolved(self, epoch: int) -> bool:
        """Flag a round whose oracle never finalized; a later settlement may still replace it."""
        return self._write(
            "UPDATE rounds SET winner = ?, updated_at = ? WHERE epoch = ? AND close_price IS NULL",
            (Winner.UNKNOWN.value, self._now(), int(epoch)),
            epoch,
        )

    # -- reads ----------------------------------------------------------------

    def _to_record(self, row: sqlite3.Row) -> RoundRecord:
        keys = row.keys()
        snapshots: dict[int, PoolSlot | None] = {}
        for off in self.offsets:
            p = slot_prefix(off)
            if f"{p}_total_wei" in keys and row[f"{p}_total_wei"] is not None:
                snapshots[off] = PoolSlot(
                    bull_wei=int(row[f"{p}_bull_wei"]),
                    bear_wei=int(row[f"{p}_bear_wei"]),
                    total_wei=int(row[f"{p}_total_wei"]),
                    timestamp=_int_or_none(row[f"{p}_timestamp"]),
                )
            else:
                snapshots[off] = None
        lock = None
        if row["lock_price"] is not None:
            lock = PoolSlot(
                bull_wei=int(row["lock_bull_wei"]),
                bear_wei=int(row["lock_bear_wei"]),
                total_wei=int(row["lock_total_wei"]),
                lock_price=int(row["lock_price"]),
            )
        return RoundRecord(
            epoch=int(row["epoch"]),
            lock_timestamp=int(row["lock_timestamp"]),
            close_timestamp=int(row["close_timestamp"]),
            snapshots=snapshots,
            lock=lock,
            close_price=_int_or_none(row["close_price"]),
            winner=Winner(row["winner"]) if row["winner"] else None,
            winner_payout_multiple=row["winner_payout_multiple"],
            is_complete=bool(row["is_complete"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_round(self, epoch: int) -> RoundRecord | None:
        row = self.conn.execute("SELECT * FROM rounds WHERE epoch = ?", (int(epoch),)).fetchone()
        return self._to_record(row) if row is not None else None

    def query_incomplete(self, limit: int = 100, *, repairable_only: bool = True) -> list[RoundRecord]:
        """Incomplete rounds, newest first.

        With `repairable_only`, rows whose only gap is snapshots are left out;
        snapshots cannot be reconstructed after the fact.
        """
        where = "is_complete = 0"
        if repairable_only:
            where += " AND (lock_price IS NULL OR close_price IS NULL)"
        rows = self.conn.execute(
            f"SELECT * FROM rounds WHERE {where} ORDER BY epoch DESC LIMIT ?",
            (max(1, int(limit)),),
        ).fetchall()
        return [self._to_record(r) for r in rows]

    def query_complete(self, limit: int | None = None) -> list[RoundRecord]:
        sql = "SELECT * FROM rounds WHERE is_complete = 1 ORDER BY epoch ASC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (max(1, int(limit)),)
        return [self._to_record(r) for r in self.conn.execute(sql, params).fetchall()]

    def count_rounds(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM rounds").fetchone()[0] or 0)

    def latest_epoch(self) -> int | None:
        value = self.conn.execute("SELECT MAX(epoch) FROM rounds").fetchone()[0]
        return int(value) if value is not None else None

    def find_gaps(self) -> list[tuple[int, int]]:
        """Inclusive (start, end) ranges of epochs missing between the lowest and highest stored rows."""
        rows = self.conn.execute(
            """
            SELECT prev + 1 AS gap_start, epoch - 1 AS gap_end
            FROM (SELECT epoch, LAG(epoch) OVER (ORDER BY epoch) AS prev FROM rounds)
            WHERE prev IS NOT NULL AND epoch - prev > 1
            ORDER BY gap_start
            """
        ).fetchall()
        return [(int(r["gap_start"]), int(r["gap_end"])) for r in rows]

    def stats(self) -> dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(is_complete), 0) AS complete,
                COALESCE(SUM(CASE WHEN winner = 'bull' THEN 1 ELSE 0 END), 0) AS bull,
                COALESCE(SUM(CASE WHEN winner = 'bear' THEN 1 ELSE 0 END), 0) AS bear,
                COALESCE(SUM(CASE WHEN winner = 'draw' THEN 1 ELSE 0 END), 0) AS draw,
                COALESCE(SUM(CASE WHEN winner = 'unknown' THEN 1 ELSE 0 END), 0) AS unknown,
                COALESCE(SUM(CASE WHEN close_price IS NULL THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(MAX(epoch) - MIN(epoch) + 1 - COUNT(*), 0) AS missing
            FROM rounds
            """
        ).fetchone()
        return {k: int(row[k]) for k in row.keys()}

    def iter_rounds(self, *, complete_only: bool = False) -> Iterator[dict[str, Any]]:
        sql = "SELECT * FROM rounds"
        if complete_only:
            sql += " WHERE is_complete = 1"
        sql += " ORDER BY epoch ASC"
        for row in self.conn.execute(sql):
            yield dict(row)

    def close(self) -> None:
        self.conn.close()

import csv
from pathlib import Path

from roundwatch.data import RoundStore, export_rounds_csv
from roundwatch.domain import Winner


def test_export_rounds_csv(tmp_path: Path) -> None:
    store = RoundStore(str(tmp_path / "rounds.db"), (20,))
    store.insert_round(2, 600, 900)
    store.insert_round(1, 300, 600)
    store.update_snapshot(1, 20, 3, 1, 280)
    store.update_lock(1, 3, 1, 10)
    store.update_settlement(1, 11, Winner.BULL, 1.3333)

    out = tmp_path / "out" / "rounds.csv"
    assert export_rounds_csv(store, str(out)) == 2
    with out.open(newline="") as f:
        rows = list(csv.DictReader(f))
    assert [r["epoch"] for r in rows] == ["1", "2"]
    assert rows[0]["t20s_total_wei"] == "4"
    assert rows[0]["winner"] == "bull"
    assert rows[1]["close_price"] == ""

    assert export_rounds_csv(store, str(out), complete_only=True) == 1

from __future__ import annotations

import csv
from pathlib import Path

from roundwatch.data.round_store import RoundStore


def export_rounds_csv(store: RoundStore, out_path: str, *, complete_only: bool = False) -> int:
    """Write the rounds table to CSV; NULL columns become empty cells. Returns the row count."""
    path = Path(out_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = store.columns()
    n = 0
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=columns)
        writer.writeheader()
        for row in store.iter_rounds(complete_only=complete_only):
            writer.writerow(row)
            n += 1
    return n

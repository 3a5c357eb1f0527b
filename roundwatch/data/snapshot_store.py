from __future__ import annotations

import json
from pathlib import Path
from typing import Any


class StatusStore:
    """Tracker status as one JSON file, written atomically, for the status server and operators."""

    def __init__(self, data_dir: str, filename: str = "tracker_status.json"):
        self.path = Path(data_dir) / filename
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, payload: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str))
        tmp.replace(self.path)

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {
                "ok": True,
                "tracked": [],
                "counters": {},
                "message": "status not ready",
            }
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError):
            return {
                "ok": False,
                "tracked": [],
                "counters": {},
                "message": "status parse error",
            }

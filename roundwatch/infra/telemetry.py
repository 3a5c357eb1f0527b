from __future__ import annotations

import json
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Any


class RuntimeEventLogger:
    """Append-only structured event log (one JSON object per line)."""

    def __init__(self, data_dir: str, filename: str = "round_events.jsonl", *, enabled: bool = True):
        self.enabled = bool(enabled)
        self.path = Path(data_dir) / filename
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {
            "ts": time.time(),
            "event": event,
            **fields,
        }
        row = json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(row + "\n")

    def failure(self, stage: str, err: BaseException, *, epoch: int | None = None, **fields: Any) -> None:
        self.emit("failure", stage=stage, epoch=epoch, error=type(err).__name__, message=str(err)[:300], **fields)


class ErrorTracker:
    """Counts repeated failures per key and surfaces every Nth one."""

    def __init__(self):
        self.counts: dict[str, int] = defaultdict(int)

    def tick(self, key: str, log_fn, err=None, every: int = 25) -> int:
        self.counts[key] += 1
        n = self.counts[key]
        if n % every == 0:
            suffix = f" last={err}" if err else ""
            log_fn("%s repeated %dx%s", key, n, suffix)
        return n

    def snapshot(self) -> dict[str, int]:
        return dict(self.counts)

import asyncio
import json
import sqlite3
from dataclasses import replace
from pathlib import Path

import pytest

from roundwatch.config import load_settings
from roundwatch.data import RoundStore
from roundwatch.domain import StartupError
from roundwatch.runtime.app import App, run_backfill_job
from roundwatch.tests.fakes import FakeContract, make_round


def _settings(tmp_path: Path):
    base = load_settings(str(tmp_path / "missing.env"))
    return replace(
        base,
        rpc_urls=("fake://one",),
        data_dir=str(tmp_path),
        db_path=str(tmp_path / "rounds.db"),
        rpc_max_attempts=1,
        rpc_base_delay_sec=0.0,
        poll_interval_sec=0.5,
        status_server_enabled=False,
    )


def test_backfill_job_writes_rows_and_events(tmp_path: Path) -> None:
    contract = FakeContract(current=2)
    contract.put(make_round(1, start=10, lock=300, close=600, lock_price=5, close_price=6, bull=1, bear=1, oracle=True))
    summary = asyncio.run(
        run_backfill_job(_settings(tmp_path), mode="range", start=1, end=2, delay=0, factory=lambda _url: contract)
    )
    assert summary.completed == 1
    assert summary.skipped == 1
    lines = (tmp_path / "round_events.jsonl").read_text().splitlines()
    assert json.loads(lines[-1])["event"] == "backfill_done"


def test_backfill_job_fails_fast_without_endpoint(tmp_path: Path) -> None:
    contract = FakeContract()
    contract.fail_next = 100
    with pytest.raises(StartupError):
        asyncio.run(run_backfill_job(_settings(tmp_path), mode="incomplete", factory=lambda _url: contract))


def test_app_startup_error(tmp_path: Path) -> None:
    contract = FakeContract()
    contract.fail_next = 100
    with pytest.raises(StartupError):
        asyncio.run(App(_settings(tmp_path), factory=lambda _url: contract).run())


def test_app_runs_until_stopped(tmp_path: Path) -> None:
    contract = FakeContract(current=1000)
    contract.put(make_round(1000, start=100, lock=10**10, close=10**10 + 300))
    app = App(_settings(tmp_path), factory=lambda _url: contract)

    async def _run() -> None:
        task = asyncio.create_task(app.run())
        await asyncio.sleep(0.2)
        app.stop.set()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_run())
    status = json.loads((tmp_path / "tracker_status.json").read_text())
    assert status["last_seen_epoch"] == 1000
    assert status["tracked"][0]["epoch"] == 1000


def test_app_unreadable_store_is_startup_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    contract = FakeContract(current=1000)

    def _broken(self, limit=100, *, repairable_only=True):
        raise sqlite3.DatabaseError("database disk image is malformed")

    monkeypatch.setattr(RoundStore, "query_incomplete", _broken)
    with pytest.raises(StartupError, match="cannot read store"):
        asyncio.run(App(_settings(tmp_path), factory=lambda _url: contract).run())

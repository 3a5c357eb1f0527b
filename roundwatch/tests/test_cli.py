import json
from pathlib import Path

import pytest

from roundwatch.cli import build_parser, main
from roundwatch.data import RoundStore


def test_backfill_modes_parse() -> None:
    ap = build_parser()
    assert ap.parse_args(["backfill", "--range", "10", "20"]).range == [10, 20]
    assert ap.parse_args(["backfill", "--last", "50"]).last == 50
    assert ap.parse_args(["backfill", "--gaps"]).gaps is True
    args = ap.parse_args(["backfill"])
    assert args.range is None and args.last is None
    with pytest.raises(SystemExit):
        ap.parse_args(["backfill", "--last", "5", "--range", "1", "2"])


def test_stats_and_export(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:
    db = tmp_path / "rounds.db"
    monkeypatch.setenv("DB_PATH", str(db))
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    store = RoundStore(str(db))
    store.insert_round(7, 300, 600)
    store.close()

    env_file = str(tmp_path / "none.env")
    assert main(["--env-file", env_file, "stats", "--offline"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total"] == 1
    assert stats["latest_epoch"] == 7
    assert stats["gaps"] == []

    out = tmp_path / "rounds.csv"
    assert main(["--env-file", env_file, "export", "--out", str(out)]) == 0
    assert out.read_text().splitlines()[1].startswith("7,")

from pathlib import Path

import pytest

from roundwatch.config import DEFAULT_RPC_URLS, PREDICTION_V2_ADDRESS, load_settings

_KEYS = ("RPC_URLS", "SNAPSHOT_OFFSETS", "DATA_DIR", "DB_PATH", "POLL_INTERVAL_SEC", "STATUS_SERVER_ENABLED", "LOG_LEVEL")


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    return tmp_path / "missing.env"


def test_defaults(clean_env: Path) -> None:
    s = load_settings(str(clean_env))
    assert s.rpc_urls == DEFAULT_RPC_URLS
    assert s.contract_address == PREDICTION_V2_ADDRESS
    assert s.snapshot_offsets == (20, 8, 4)
    assert s.poll_interval_sec == 5.0
    assert s.max_settle_attempts == 12
    assert s.status_server_enabled is False
    assert s.db_path.endswith("prediction.db")


def test_env_overrides(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RPC_URLS", "http://a, http://b ,")
    monkeypatch.setenv("SNAPSHOT_OFFSETS", "4,30,8,8")
    monkeypatch.setenv("POLL_INTERVAL_SEC", "0.1")
    monkeypatch.setenv("STATUS_SERVER_ENABLED", "yes")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = load_settings(str(clean_env))
    assert s.rpc_urls == ("http://a", "http://b")
    assert s.snapshot_offsets == (30, 8, 4)
    assert s.poll_interval_sec == 0.5
    assert s.status_server_enabled is True
    assert s.log_level == "DEBUG"


def test_dotenv_file_is_loaded(clean_env: Path, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / "roundwatch.env"
    env_file.write_text(f"DATA_DIR={tmp_path}/data\n")
    # registers DATA_DIR with monkeypatch so the value load_dotenv sets is removed afterwards
    monkeypatch.setenv("DATA_DIR", "")
    monkeypatch.delenv("DATA_DIR")
    s = load_settings(str(env_file))
    assert s.data_dir == f"{tmp_path}/data"
    assert s.db_path == f"{tmp_path}/data/prediction.db"

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_RPC_URLS = (
    "https://bsc-dataseed.binance.org",
    "https://bsc-dataseed1.defibit.io",
    "https://bsc-dataseed1.ninicoin.io",
    "https://bsc.publicnode.com",
    "https://binance.llamarpc.com",
)
PREDICTION_V2_ADDRESS = "0x18B2A687610328590Bc8F2e5fEdDe3b582A49cdA"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None:
        value = default
    else:
        value = int(raw)
    if min_value is not None:
        value = max(min_value, value)
    return value


def _env_float(name: str, default: float, min_value: float | None = None) -> float:
    raw = os.environ.get(name)
    if raw is None:
        value = default
    else:
        value = float(raw)
    if min_value is not None:
        value = max(min_value, value)
    return value


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    items = tuple(p.strip() for p in raw.split(",") if p.strip())
    return items or default


def _env_offsets(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = _env_list(name, tuple(str(x) for x in default))
    # largest offset first; duplicates dropped
    return tuple(sorted({max(1, int(x)) for x in raw}, reverse=True))


@dataclass(frozen=True)
class Settings:
    rpc_urls: tuple[str, ...]
    contract_address: str
    db_path: str
    data_dir: str
    log_level: str
    poll_interval_sec: float
    snapshot_offsets: tuple[int, ...]
    snapshot_tolerance_sec: int
    rpc_timeout_sec: int
    rpc_max_attempts: int
    rpc_base_delay_sec: float
    rpc_max_delay_sec: float
    rpc_failure_threshold: int
    settle_retry_delay_sec: float
    max_settle_attempts: int
    discovery_max_batch: int
    catchup_per_tick: int
    max_parallel_rounds: int
    resume_grace_sec: int
    backfill_delay_sec: float
    backfill_last_count: int
    incomplete_limit: int
    status_server_enabled: bool
    status_port: int
    events_enabled: bool
    summary_every_ticks: int
    status_stale_sec: float


def load_settings(env_file: str | None = None) -> Settings:
    load_dotenv(env_file or os.environ.get("ROUNDWATCH_ENV_FILE", ".env"))
    data_dir = os.environ.get("DATA_DIR", "./data")
    return Settings(
        rpc_urls=_env_list("RPC_URLS", DEFAULT_RPC_URLS),
        contract_address=os.environ.get("PREDICTION_CONTRACT", PREDICTION_V2_ADDRESS).strip(),
        db_path=os.environ.get("DB_PATH", os.path.join(data_dir, "prediction.db")),
        data_dir=data_dir,
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        poll_interval_sec=_env_float("POLL_INTERVAL_SEC", 5.0, min_value=0.5),
        snapshot_offsets=_env_offsets("SNAPSHOT_OFFSETS", (20, 8, 4)),
        snapshot_tolerance_sec=_env_int("SNAPSHOT_TOLERANCE_SEC", 2, min_value=0),
        rpc_timeout_sec=_env_int("RPC_TIMEOUT_SEC", 10, min_value=1),
        rpc_max_attempts=_env_int("RPC_MAX_ATTEMPTS", 3, min_value=1),
        rpc_base_delay_sec=_env_float("RPC_BASE_DELAY_SEC", 2.0, min_value=0.0),
        rpc_max_delay_sec=_env_float("RPC_MAX_DELAY_SEC", 30.0, min_value=0.0),
        rpc_failure_threshold=_env_int("RPC_FAILURE_THRESHOLD", 5, min_value=1),
        settle_retry_delay_sec=_env_float("SETTLE_RETRY_DELAY_SEC", 10.0, min_value=0.0),
        max_settle_attempts=_env_int("MAX_SETTLE_ATTEMPTS", 12, min_value=1),
        discovery_max_batch=_env_int("DISCOVERY_MAX_BATCH", 5, min_value=1),
        catchup_per_tick=_env_int("CATCHUP_PER_TICK", 20, min_value=1),
        max_parallel_rounds=_env_int("MAX_PARALLEL_ROUNDS", 4, min_value=1),
        resume_grace_sec=_env_int("RESUME_GRACE_SEC", 900, min_value=0),
        backfill_delay_sec=_env_float("BACKFILL_DELAY_SEC", 0.2, min_value=0.0),
        backfill_last_count=_env_int("BACKFILL_LAST_COUNT", 500, min_value=1),
        incomplete_limit=_env_int("INCOMPLETE_LIMIT", 1000, min_value=1),
        status_server_enabled=_env_bool("STATUS_SERVER_ENABLED", False),
        status_port=_env_int("STATUS_PORT", 8080, min_value=1),
        events_enabled=_env_bool("EVENTS_ENABLED", True),
        summary_every_ticks=_env_int("SUMMARY_EVERY_TICKS", 60, min_value=1),
        status_stale_sec=_env_float("STATUS_STALE_SEC", 60.0, min_value=1.0),
    )

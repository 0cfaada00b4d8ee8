"""
Runtime configuration for the curtailment reconciliation engine.

Everything is read from environment variables once, by load_settings(), and
frozen into a Settings object that is passed to the engine components.

Environment variables:
  DATABASE_URL                - PostgreSQL connection string
  ELEXON_BASE_URL             - BMRS API root       (default: https://data.elexon.co.uk/bmrs/api/v1)
  BMU_MAPPING_PATH            - BMU reference JSON  (default: data/bmu_mapping.json)
  ELEXON_MAX_REQUESTS         - requests per window (default: 4500)
  ELEXON_WINDOW_SECONDS       - window length       (default: 60)
  ELEXON_THROTTLE_COOLDOWN    - sleep after a 429   (default: 60)
  ELEXON_TIMEOUT              - HTTP timeout        (default: 30)
  SLICE_MAX_RETRIES           - retries per period  (default: 3)
  SLICE_RETRY_DELAY           - seconds             (default: 2.0)
  INGEST_BATCH_SIZE           - concurrent periods  (default: 4)
  INGEST_BATCH_DELAY          - seconds             (default: 1.5)
  VERIFY_REQUEST_DELAY        - seconds             (default: 0.5)
  VERIFY_TOLERANCE            - relative tolerance  (default: 0.01)
  VERIFY_RANDOM_SAMPLES       - random(n) default   (default: 10)
  VERIFY_PROGRESSIVE_SAMPLES  - escalation size     (default: 10)
  VERIFY_AFTER_REPAIR         - 1/0                 (default: 1)
  DEFAULT_DIFFICULTY          - fallback difficulty (default: 108105433845147)
  MINER_MODELS                - comma separated     (default: S19J_PRO,S9,M20S)
  RECONCILE_LOG_DIR           - audit log directory (default: logs)
  DB_POOL_MIN / DB_POOL_MAX   - pool bounds         (default: 1 / 10)
  API_PORT                    - summary API port    (default: 8200)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from errors import ConfigurationError
from mining import PROFILES

SETTLEMENT_PERIODS = 48

DEFAULT_DATABASE_URL = "postgresql://curtailment@localhost:5432/curtailment"
DEFAULT_ELEXON_BASE_URL = "https://data.elexon.co.uk/bmrs/api/v1"
DEFAULT_DIFFICULTY = 108105433845147.0
DEFAULT_MINER_MODELS = ("S19J_PRO", "S9", "M20S")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    elexon_base_url: str = DEFAULT_ELEXON_BASE_URL
    bmu_mapping_path: str = os.path.join("data", "bmu_mapping.json")
    max_requests_per_window: int = 4500
    rate_window_seconds: float = 60.0
    throttle_cooldown_seconds: float = 60.0
    request_timeout: float = 30.0
    slice_max_retries: int = 3
    slice_retry_delay: float = 2.0
    batch_size: int = 4
    batch_delay: float = 1.5             # on top of the limiter, between batches
    verify_request_delay: float = 0.5
    verify_tolerance: float = 0.01       # relative, applied to volume and payment
    random_sample_size: int = 10
    progressive_extra_samples: int = 10
    verify_after_repair: bool = True
    default_difficulty: float = DEFAULT_DIFFICULTY
    miner_models: Tuple[str, ...] = DEFAULT_MINER_MODELS
    log_dir: str = "logs"
    db_pool_min: int = 1
    db_pool_max: int = 10
    api_port: int = 8200


def _get(env: Mapping[str, str], name: str, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name}={raw!r} is not a valid {type(default).__name__}")
    return raw.strip()


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from *env* (defaults to os.environ).

    Raises ConfigurationError for malformed numbers, non-positive limits,
    or unknown miner models.
    """
    env = os.environ if env is None else env
    base = Settings()

    models_raw = env.get("MINER_MODELS", "")
    if models_raw.strip():
        models = tuple(m.strip().upper() for m in models_raw.split(",") if m.strip())
    else:
        models = base.miner_models
    unknown = [m for m in models if m not in PROFILES]
    if unknown or not models:
        raise ConfigurationError(
            f"Unknown MINER_MODELS {unknown or models_raw!r}. Valid: {sorted(PROFILES)}"
        )

    settings = Settings(
        database_url=_get(env, "DATABASE_URL", base.database_url),
        elexon_base_url=_get(env, "ELEXON_BASE_URL", base.elexon_base_url).rstrip("/"),
        bmu_mapping_path=_get(env, "BMU_MAPPING_PATH", base.bmu_mapping_path),
        max_requests_per_window=_get(env, "ELEXON_MAX_REQUESTS", base.max_requests_per_window),
        rate_window_seconds=_get(env, "ELEXON_WINDOW_SECONDS", base.rate_window_seconds),
        throttle_cooldown_seconds=_get(env, "ELEXON_THROTTLE_COOLDOWN", base.throttle_cooldown_seconds),
        request_timeout=_get(env, "ELEXON_TIMEOUT", base.request_timeout),
        slice_max_retries=_get(env, "SLICE_MAX_RETRIES", base.slice_max_retries),
        slice_retry_delay=_get(env, "SLICE_RETRY_DELAY", base.slice_retry_delay),
        batch_size=_get(env, "INGEST_BATCH_SIZE", base.batch_size),
        batch_delay=_get(env, "INGEST_BATCH_DELAY", base.batch_delay),
        verify_request_delay=_get(env, "VERIFY_REQUEST_DELAY", base.verify_request_delay),
        verify_tolerance=_get(env, "VERIFY_TOLERANCE", base.verify_tolerance),
        random_sample_size=_get(env, "VERIFY_RANDOM_SAMPLES", base.random_sample_size),
        progressive_extra_samples=_get(env, "VERIFY_PROGRESSIVE_SAMPLES", base.progressive_extra_samples),
        verify_after_repair=_get(env, "VERIFY_AFTER_REPAIR", base.verify_after_repair),
        default_difficulty=_get(env, "DEFAULT_DIFFICULTY", base.default_difficulty),
        miner_models=models,
        log_dir=_get(env, "RECONCILE_LOG_DIR", base.log_dir),
        db_pool_min=_get(env, "DB_POOL_MIN", base.db_pool_min),
        db_pool_max=_get(env, "DB_POOL_MAX", base.db_pool_max),
        api_port=_get(env, "API_PORT", base.api_port),
    )

    if settings.max_requests_per_window <= 0 or settings.rate_window_seconds <= 0:
        raise ConfigurationError("Rate limit window must allow at least one request")
    if settings.batch_size <= 0:
        raise ConfigurationError("INGEST_BATCH_SIZE must be positive")
    if settings.default_difficulty <= 0:
        raise ConfigurationError("DEFAULT_DIFFICULTY must be positive")
    if not 0 <= settings.verify_tolerance < 1:
        raise ConfigurationError("VERIFY_TOLERANCE must be in [0, 1)")
    if settings.db_pool_max < settings.batch_size + 1:
        raise ConfigurationError(
            f"DB_POOL_MAX ({settings.db_pool_max}) must exceed INGEST_BATCH_SIZE ({settings.batch_size})"
        )
    return settings

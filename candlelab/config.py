"""
config.py — Runtime settings for CandleLab.

Settings are read from CANDLELAB_* environment variables after loading a
local .env file (python-dotenv). Every field has a default so the library
works without any environment at all.

Usage:
    settings = Settings.from_env()
    store = SessionStore(settings.db_path)
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv


ENV_PREFIX = "CANDLELAB_"


# ─── Settings ─────────────────────────────────────────────────────────────────

@dataclass
class Settings:
    """Process-wide configuration."""
    db_path: str = ":memory:"
    log_level: str = "INFO"
    log_file: Optional[str] = None          # None → stdout only
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    metrics_ttl: float = 30.0               # session metrics cache, seconds
    prediction_cache_ttl: float = 300.0     # ensemble prediction cache, seconds
    prediction_cache_size: int = 500
    feature_cache_size: int = 1000
    market_cache_ttl: float = 300.0
    use_synthetic_data: bool = False
    http_timeout: float = 5.0
    random_seed: Optional[int] = 42
    data_validation_level: str = "normal"  # strict / normal / relaxed

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        load_dotenv_file: bool = True,
    ) -> "Settings":
        """Build settings from the environment (or an explicit mapping)."""
        if environ is None:
            if load_dotenv_file:
                load_dotenv()
            environ = os.environ

        def get(name: str) -> Optional[str]:
            value = environ.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        defaults = cls()
        seed_raw = get("RANDOM_SEED")
        no_seed = seed_raw is not None and seed_raw.lower() == "none"
        return cls(
            db_path=get("DB_PATH") or defaults.db_path,
            log_level=(get("LOG_LEVEL") or defaults.log_level).upper(),
            log_file=get("LOG_FILE"),
            api_host=get("API_HOST") or defaults.api_host,
            api_port=_parse_int("API_PORT", get("API_PORT"), defaults.api_port),
            metrics_ttl=_parse_float("METRICS_TTL", get("METRICS_TTL"), defaults.metrics_ttl),
            prediction_cache_ttl=_parse_float(
                "PREDICTION_CACHE_TTL", get("PREDICTION_CACHE_TTL"), defaults.prediction_cache_ttl
            ),
            prediction_cache_size=_parse_int(
                "PREDICTION_CACHE_SIZE", get("PREDICTION_CACHE_SIZE"), defaults.prediction_cache_size
            ),
            feature_cache_size=_parse_int(
                "FEATURE_CACHE_SIZE", get("FEATURE_CACHE_SIZE"), defaults.feature_cache_size
            ),
            market_cache_ttl=_parse_float(
                "MARKET_CACHE_TTL", get("MARKET_CACHE_TTL"), defaults.market_cache_ttl
            ),
            use_synthetic_data=_parse_bool(get("USE_SYNTHETIC_DATA"), defaults.use_synthetic_data),
            http_timeout=_parse_float("HTTP_TIMEOUT", get("HTTP_TIMEOUT"), defaults.http_timeout),
            random_seed=None if no_seed else _parse_int("RANDOM_SEED", seed_raw, 42),
            data_validation_level=(
                get("DATA_VALIDATION_LEVEL") or defaults.data_validation_level
            ).lower(),
        )


# ─── Parsing Helpers ──────────────────────────────────────────────────────────

def _parse_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _parse_float(name: str, raw: Optional[str], default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be non-negative, got {raw!r}")
    return value


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}

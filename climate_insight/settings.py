"""
Runtime configuration for the climate insight services.
Reads settings from environment variables (optionally a secrets.env file) and
provides defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from climate_insight.models import OperationKind

ENV_PATH = Path(__file__).resolve().parents[1] / "config" / "secrets.env"

SNOWFLAKE_REQUIRED_VARS = [
    "SNOWFLAKE_ACCOUNT",
    "SNOWFLAKE_USER",
    "SNOWFLAKE_PASSWORD",
    "SNOWFLAKE_ROLE",
    "SNOWFLAKE_WAREHOUSE",
]


class DataMode(str, Enum):
    DEMO = "demo"
    REMOTE = "remote"


def get_env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip().strip("\"'").strip()


def flag_enabled(name: str) -> bool:
    value = os.getenv(name, "").strip().lower()
    return value in {"1", "true", "yes", "on"}


def _float_env(name: str, default: float) -> float:
    raw = get_env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"Invalid number for env var {name}: {raw!r}")
    if value < 0:
        raise RuntimeError(f"Env var {name} must be non-negative, got {raw!r}")
    return value


def _int_env(name: str, default: int) -> int:
    raw = get_env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid integer for env var {name}: {raw!r}")
    if value < 0:
        raise RuntimeError(f"Env var {name} must be non-negative, got {raw!r}")
    return value


def _json_env(name: str) -> Dict[str, Any]:
    raw = get_env(name)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON for env var {name}: {exc}")
    if not isinstance(data, dict):
        raise RuntimeError(f"Env var {name} must hold a JSON object.")
    return data


@dataclass
class Settings:
    mode: DataMode = DataMode.DEMO
    poll_interval_s: float = 30.0
    cache_ttl_s: float = 300.0
    narrative_ttl_s: float = 300.0
    similarity_ttl_s: float = 600.0
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    remote_timeout_s: float = 20.0
    cortex_model: str = "mistral-large2"
    notifications_enabled: bool = False
    alert_webhook_url: Optional[str] = None
    stream_url: Optional[str] = None
    stream_retries: int = 3
    synthetic_seed: Optional[int] = None
    synthetic_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_path: Optional[Path] = ENV_PATH) -> "Settings":
        if env_path is not None and env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)
        mode_raw = get_env("CLIMATE_DATA_MODE", DataMode.DEMO.value).lower()
        try:
            mode = DataMode(mode_raw)
        except ValueError:
            raise RuntimeError(f"CLIMATE_DATA_MODE must be 'demo' or 'remote', got {mode_raw!r}")
        seed_raw = get_env("CLIMATE_SYNTHETIC_SEED")
        return cls(
            mode=mode,
            poll_interval_s=_float_env("CLIMATE_POLL_INTERVAL_S", 30.0),
            cache_ttl_s=_float_env("CLIMATE_CACHE_TTL_S", 300.0),
            narrative_ttl_s=_float_env("CLIMATE_NARRATIVE_TTL_S", 300.0),
            similarity_ttl_s=_float_env("CLIMATE_SIMILARITY_TTL_S", 600.0),
            max_retries=_int_env("CLIMATE_MAX_RETRIES", 3),
            retry_base_delay_s=_float_env("CLIMATE_RETRY_BASE_DELAY_S", 1.0),
            remote_timeout_s=_float_env("CLIMATE_REMOTE_TIMEOUT_S", 20.0),
            cortex_model=get_env("CLIMATE_CORTEX_MODEL", "mistral-large2"),
            notifications_enabled=flag_enabled("CLIMATE_NOTIFICATIONS"),
            alert_webhook_url=get_env("CLIMATE_ALERT_WEBHOOK_URL") or None,
            stream_url=get_env("CLIMATE_STREAM_URL") or None,
            stream_retries=_int_env("CLIMATE_STREAM_RETRIES", 3),
            synthetic_seed=_int_env("CLIMATE_SYNTHETIC_SEED", 0) if seed_raw else None,
            synthetic_overrides=_json_env("CLIMATE_SYNTHETIC_OVERRIDES"),
            log_level=get_env("CLIMATE_LOG_LEVEL", "INFO").upper() or "INFO",
        )

    def ttl_for(self, kind: OperationKind) -> float:
        ttls: Mapping[OperationKind, float] = {
            OperationKind.FORECAST: self.cache_ttl_s,
            OperationKind.STRUCTURED_TABLE: self.cache_ttl_s,
            OperationKind.NARRATIVE: self.narrative_ttl_s,
            OperationKind.SIMILARITY: self.similarity_ttl_s,
            OperationKind.LATEST: 0.0,
        }
        return ttls[kind]


def snowflake_configured() -> bool:
    return all(get_env(name) for name in SNOWFLAKE_REQUIRED_VARS)

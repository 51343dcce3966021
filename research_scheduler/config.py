from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


def _env_str(name: str, default: str | None = None) -> str:
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return value


def _env_int(name: str, default: int | None = None) -> int:
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return int(value)


def _env_int_between(name: str, default: int, low: int, high: int) -> int:
    value = _env_int(name, default)
    if not low <= value <= high:
        raise RuntimeError(f"Env {name} must be between {low} and {high}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip().lower()
    return value in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Config:
    # Answer-generation API
    ai_base_url: str
    ai_api_key: str
    ai_model: str
    ai_timeout_seconds: int
    ai_max_retries: int
    ai_max_tokens: int
    ai_temperature: float
    ai_top_p: float

    # Storage
    sqlite_path: Path
    sqlite_auto_migrate: bool

    # Follow-ups
    followup_delay_minutes: int

    # Document export
    export_enabled: bool
    google_access_token: str
    google_token_path: Path
    google_folder_name: str
    google_timeout_seconds: int

    # HTTP
    http_bind: str
    http_port: int

    # Metrics
    metrics_enabled: bool
    metrics_bind: str
    metrics_port: int

    # Startup
    check_connections_on_start: bool

    # Logging
    log_level: str
    log_file: str
    log_max_bytes: int
    log_backup_count: int
    access_log: bool


def load_config() -> Config:
    return Config(
        ai_base_url=_env_str("AI_BASE_URL", "https://api.perplexity.ai"),
        ai_api_key=_env_str("AI_API_KEY", os.getenv("PERPLEXITY_API_KEY", "")),
        ai_model=_env_str("AI_MODEL", "sonar-pro"),
        ai_timeout_seconds=_env_int("AI_TIMEOUT_SECONDS", 120),
        ai_max_retries=_env_int("AI_MAX_RETRIES", 2),
        ai_max_tokens=_env_int("AI_MAX_TOKENS", 1000),
        ai_temperature=_env_float("AI_TEMPERATURE", 0.2),
        ai_top_p=_env_float("AI_TOP_P", 0.9),
        sqlite_path=Path(_env_str("SQLITE_PATH", "data/queries.db")),
        sqlite_auto_migrate=_env_bool("SQLITE_AUTO_MIGRATE", True),
        followup_delay_minutes=_env_int_between("FOLLOWUP_DELAY_MINUTES", 5, 1, 59),
        export_enabled=_env_bool("EXPORT_ENABLED", True),
        google_access_token=_env_str("GOOGLE_ACCESS_TOKEN", ""),
        google_token_path=Path(_env_str("GOOGLE_TOKEN_PATH", "token.json")),
        google_folder_name=_env_str("GOOGLE_FOLDER_NAME", "Query Scheduler Results"),
        google_timeout_seconds=_env_int("GOOGLE_TIMEOUT_SECONDS", 60),
        http_bind=_env_str("HTTP_BIND", "127.0.0.1"),
        http_port=_env_int("HTTP_PORT", _env_int("PORT", 3000)),
        metrics_enabled=_env_bool("METRICS_ENABLED", False),
        metrics_bind=_env_str("METRICS_BIND", "127.0.0.1"),
        metrics_port=_env_int("METRICS_PORT", 9109),
        check_connections_on_start=_env_bool("CHECK_CONNECTIONS_ON_START", True),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        log_file=_env_str("LOG_FILE", ""),
        log_max_bytes=_env_int("LOG_MAX_BYTES", 10 * 1024 * 1024),
        log_backup_count=_env_int("LOG_BACKUP_COUNT", 5),
        access_log=_env_bool("ACCESS_LOG", False),
    )

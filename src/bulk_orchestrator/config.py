"""Configuration management for the bulk orchestrator."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")
    audit_file: str | None = Field(
        default=None, description="Optional separate file for per-target audit lines"
    )


MAX_CONCURRENCY = 100
MAX_RETRIES = 10
MAX_RETRY_DELAY_SECONDS = 300.0


class ExecutionSettings(BaseModel):
    default_concurrency: int = Field(default=5, ge=1, le=MAX_CONCURRENCY)
    default_retries: int = Field(default=0, ge=0, le=MAX_RETRIES)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0, le=MAX_RETRY_DELAY_SECONDS)
    operation_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Maximum run time of one operation; None disables the deadline.",
    )
    max_targets: int = Field(default=500, ge=1, le=10_000)
    persist_retries: int = Field(default=3, ge=0, le=10)
    audit_timeout_seconds: float = Field(default=5.0, gt=0, le=300.0)


class StorageSettings(BaseModel):
    backend: Literal["memory", "sqlite"] = Field(default="memory")
    sqlite_path: str = Field(default="./data/bulk_operations.sqlite")
    sqlite_wal: bool = Field(default=True)


class RateLimitSettings(BaseModel):
    """Fixed-window limits per limiter class.

    Defaults mirror the limits the service has always shipped with:
    bulk operations are expensive, so they get the tightest budget after auth.
    """

    general_max_requests: int = Field(default=100, ge=1)
    general_window_seconds: float = Field(default=60.0, gt=0)
    bulk_max_requests: int = Field(default=10, ge=1)
    bulk_window_seconds: float = Field(default=60.0, gt=0)
    sync_max_requests: int = Field(default=30, ge=1)
    sync_window_seconds: float = Field(default=60.0, gt=0)
    auth_max_requests: int = Field(default=5, ge=1)
    auth_window_seconds: float = Field(default=60.0, gt=0)
    cleanup_interval_seconds: float = Field(default=60.0, gt=0)
    policy_path: str | None = Field(
        default=None,
        description="Optional YAML file overriding the limiter table",
    )


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1024, le=65535)
    trust_forwarded_headers: bool = Field(default=False)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    @model_validator(mode="after")
    def _check_sqlite_path(self) -> "Settings":
        if self.storage.backend == "sqlite" and not self.storage.sqlite_path.strip():
            raise ValueError("SQLITE_PATH must be set when STORAGE_BACKEND=sqlite")
        return self


ENV_KEYS = {
    "host": "BULK_HOST",
    "port": "BULK_PORT",
    "trust_forwarded_headers": "HTTP_TRUST_FORWARDED_HEADERS",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "log_audit_file": "LOG_AUDIT_FILE",
    "concurrency": "BULK_CONCURRENCY",
    "retries": "BULK_RETRIES",
    "retry_delay": "BULK_RETRY_DELAY_SECONDS",
    "operation_timeout": "BULK_OPERATION_TIMEOUT_SECONDS",
    "max_targets": "BULK_MAX_TARGETS",
    "persist_retries": "BULK_PERSIST_RETRIES",
    "audit_timeout": "BULK_AUDIT_TIMEOUT_SECONDS",
    "storage_backend": "STORAGE_BACKEND",
    "sqlite_path": "SQLITE_PATH",
    "sqlite_wal": "SQLITE_WAL",
    "rate_limit_policy_path": "RATE_LIMIT_POLICY_PATH",
}

_LIMITER_NAMES = ("general", "bulk", "sync", "auth")

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float | None) -> float | None:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _rate_limit_data() -> dict[str, object]:
    defaults = RateLimitSettings()
    data: dict[str, object] = {}
    for name in _LIMITER_NAMES:
        prefix = f"RATE_LIMIT_{name.upper()}"
        data[f"{name}_max_requests"] = _env_int(
            f"{prefix}_MAX", getattr(defaults, f"{name}_max_requests")
        )
        data[f"{name}_window_seconds"] = _env_float(
            f"{prefix}_WINDOW_SECONDS", getattr(defaults, f"{name}_window_seconds")
        )
    data["cleanup_interval_seconds"] = _env_float(
        "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval_seconds
    )
    policy_path = os.getenv(ENV_KEYS["rate_limit_policy_path"])
    data["policy_path"] = _resolve_path(policy_path) if policy_path else None
    return data


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    audit_file_env = os.getenv(ENV_KEYS["log_audit_file"])

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "trust_forwarded_headers": _env_bool(
                ENV_KEYS["trust_forwarded_headers"],
                ServerSettings().trust_forwarded_headers,
            ),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
            "audit_file": _resolve_path(audit_file_env) if audit_file_env else None,
        },
        "execution": {
            "default_concurrency": _env_int(
                ENV_KEYS["concurrency"], ExecutionSettings().default_concurrency
            ),
            "default_retries": _env_int(ENV_KEYS["retries"], ExecutionSettings().default_retries),
            "retry_delay_seconds": _env_float(
                ENV_KEYS["retry_delay"], ExecutionSettings().retry_delay_seconds
            ),
            "operation_timeout_seconds": _env_float(
                ENV_KEYS["operation_timeout"],
                ExecutionSettings().operation_timeout_seconds,
            ),
            "max_targets": _env_int(ENV_KEYS["max_targets"], ExecutionSettings().max_targets),
            "persist_retries": _env_int(
                ENV_KEYS["persist_retries"], ExecutionSettings().persist_retries
            ),
            "audit_timeout_seconds": _env_float(
                ENV_KEYS["audit_timeout"], ExecutionSettings().audit_timeout_seconds
            ),
        },
        "storage": {
            "backend": os.getenv(ENV_KEYS["storage_backend"], StorageSettings().backend),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool(ENV_KEYS["sqlite_wal"], StorageSettings().sqlite_wal),
        },
        "rate_limit": _rate_limit_data(),
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.storage.backend == "sqlite":
        Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings

"""
config/settings.py — pipeclock Runtime Settings

Merges config.yaml (defaults/structure) with environment variables / .env.
Pydantic-powered — all fields are validated and typed.

  - PIPECLOCK_DIR selects the storage root for persisted task state;
    without it, state lives under ~/.pipeclock
  - SchedulerConfig rejects a tick that is not finer than one second,
    the smallest interval a task can be registered with
  - validate_all() performs cross-field startup validation and raises
    ConfigError listing every problem found
  - load_settings() respects PIPECLOCK_CONFIG as a fallback when no
    explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_BASE_DIR = "~/.pipeclock"
DEFAULT_NAMESPACE = "scheduler"

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerConfig(BaseModel):
    namespace: str = DEFAULT_NAMESPACE
    tick_seconds: float = 0.5
    max_concurrent_tasks: Optional[int] = None
    history_limit: int = 100

    @field_validator("tick_seconds")
    @classmethod
    def _valid_tick(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError(
                "scheduler.tick_seconds must be > 0 and <= 1.0 so that "
                "one-second tasks are still checked every tick"
            )
        return v

    @field_validator("max_concurrent_tasks")
    @classmethod
    def _positive_tasks(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("scheduler.max_concurrent_tasks must be >= 1 (or omitted)")
        return v

    @field_validator("history_limit")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("scheduler.history_limit must be >= 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = None  # None = <storage root>/logs
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    pipeclock runtime settings.

    Priority (highest to lowest):
      1. Explicit keyword arguments
      2. Environment variables
      3. .env file
      4. Field defaults (config.yaml sections are passed in as arguments)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    base_dir: Optional[str] = Field(default=None, alias="PIPECLOCK_DIR")

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("base_dir", mode="before")
    @classmethod
    def _blank_dir_is_unset(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("scheduler", mode="before")
    @classmethod
    def _coerce_scheduler(cls, v: Any) -> Any:
        return SchedulerConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def storage_root(self) -> Path:
        return Path(self.base_dir or DEFAULT_BASE_DIR).expanduser()

    @property
    def state_dir(self) -> Path:
        return self.storage_root / self.scheduler.namespace

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        if self.logging.log_dir:
            return Path(self.logging.log_dir).expanduser()
        return self.storage_root / "logs"

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches problems that only show up against the filesystem.
        """
        errors: list[str] = []

        ns = self.scheduler.namespace
        if not ns.strip():
            errors.append("scheduler.namespace must not be empty.")
        elif "/" in ns or "\\" in ns or ns in (".", ".."):
            errors.append(
                f"scheduler.namespace '{ns}' must be a single directory name."
            )

        root = self.storage_root
        if root.exists() and not root.is_dir():
            errors.append(
                f"Storage root '{root}' exists but is not a directory. "
                f"Point PIPECLOCK_DIR somewhere else."
            )

        log_dir = self.log_dir
        if log_dir.exists() and not log_dir.is_dir():
            errors.append(f"logging.log_dir '{log_dir}' exists but is not a directory.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\npipeclock startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and retry.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = threading.Lock()

_KNOWN_SECTIONS = {"scheduler", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return data


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. PIPECLOCK_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("PIPECLOCK_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def _build_settings(config_path: str | Path | None, overrides: dict[str, Any]) -> Settings:
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    init_kwargs.update(overrides)
    return Settings(**init_kwargs)


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> Settings:
    """
    Load settings by merging config.yaml with environment variables.

    Keyword overrides win over both (e.g. PIPECLOCK_DIR from a --dir flag).
    """
    global _singleton
    instance = _build_settings(config_path, overrides)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading it from the default
    config path on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = _build_settings(None, {})
        return _singleton


def reset_settings() -> None:
    """Forget the cached singleton (tests, config reloads)."""
    global _singleton
    with _singleton_lock:
        _singleton = None

"""Global configuration using Pydantic settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application wide settings loaded from environment variables."""

    database_path: Path = Field(default_factory=lambda: Path("cueline.db"))
    session_prefix: str = "interview"
    profile: str = "interview"
    language: str = "en-US"
    system_prompt: Optional[str] = None

    # Voice activity detection
    sample_rate: int = 24_000
    frame_size: int = 480
    energy_threshold: float = 0.002
    speech_frames: int = 1
    silence_frames: int = 8
    min_silence_frames: int = 4
    max_silence_frames: int = 30
    pause_history_size: int = 20
    chunk_seconds: float = 0.5
    visualization_size: int = 128
    visualization_interval: int = 16
    stats_interval_seconds: float = 1.0

    # Debounce and completeness
    speaker_detection_enabled: bool = True
    adaptive_debounce_enabled: bool = True
    debounce_fallback_seconds: float = 5.0
    debounce_base_seconds: float = 8.0
    debounce_min_seconds: float = 2.0
    debounce_medium_seconds: float = 4.0
    debounce_long_seconds: float = 12.0
    max_buffer_words: int = 40
    max_buffer_chars: int = 200
    warmup_seconds: float = 300.0
    context_reset_seconds: float = 60.0
    debounce_duplicate_seconds: float = 10.0
    completion_duplicate_seconds: float = 15.0
    queue_duplicate_seconds: float = 20.0

    # Conversation history
    history_max_turns: int = 25
    history_preserve_turns: int = 10
    summary_max_chars: int = 800

    # Backend connection
    backend: str = "dummy"
    openai_model: str = "gpt-4o-mini"
    openai_api_keys: Optional[str] = None
    reconnect_max_attempts: int = 3
    reconnect_delay_seconds: float = 2.0
    send_retries: int = 3
    send_retry_base_seconds: float = 0.5

    # Exchange deadlines per priority
    urgent_timeout_seconds: float = 15.0
    high_timeout_seconds: float = 25.0
    normal_timeout_seconds: float = 40.0
    low_timeout_seconds: float = 60.0

    model_config = SettingsConfigDict(
        env_prefix="CUELINE_",
        env_file=".env",
        case_sensitive=False,
    )

    @property
    def api_keys(self) -> List[str]:
        if not self.openai_api_keys:
            return []
        return [key.strip() for key in self.openai_api_keys.split(",") if key.strip()]


_settings: Optional[Settings] = None


_MODEL_CONFIG: Dict[str, Any] = dict(Settings.model_config or {})
_ENV_PREFIX: str = (_MODEL_CONFIG.get("env_prefix") or "").upper()
_CASE_SENSITIVE: bool = bool(_MODEL_CONFIG.get("case_sensitive", True))
_ENV_FILE = _MODEL_CONFIG.get("env_file") or ".env"
_ENV_PATH = Path(_ENV_FILE)


@dataclass
class EnvironmentSetting:
    """Metadata about a configuration option backed by an environment variable."""

    field: str
    env_name: str
    value: Any
    default: Any
    annotation: Any


class EnvironmentSettingError(RuntimeError):
    """Raised when environment-backed configuration updates fail."""


def _env_key(field: str) -> str:
    key = f"{_ENV_PREFIX}{field}" if _ENV_PREFIX else field
    return key if _CASE_SENSITIVE else key.upper()


def _field_default(field_info) -> Any:
    if field_info.default is not None:
        return field_info.default
    if field_info.default_factory is not None:  # type: ignore[truthy-function]
        return field_info.default_factory()
    return None


def _load_env_file() -> Iterable[str]:
    if not _ENV_PATH.exists():
        return []
    return _ENV_PATH.read_text().splitlines()


def _persist_env_value(env_name: str, value: Optional[str]) -> None:
    lines = list(_load_env_file())
    updated = False
    new_lines = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in line:
            new_lines.append(line)
            continue
        key, _current = line.split("=", 1)
        if key.strip() == env_name:
            updated = True
            if value is None:
                continue
            new_lines.append(f"{env_name}={value}")
        else:
            new_lines.append(line)
    if not updated and value is not None:
        new_lines.append(f"{env_name}={value}")

    if new_lines:
        _ENV_PATH.write_text("\n".join(new_lines) + "\n")
    elif _ENV_PATH.exists():
        _ENV_PATH.unlink()


def list_environment_settings(settings: Optional[Settings] = None) -> Iterable[EnvironmentSetting]:
    """Return metadata for all environment-backed settings."""

    settings = settings or get_settings()
    for name, field in Settings.model_fields.items():
        yield EnvironmentSetting(
            field=name,
            env_name=_env_key(name),
            value=getattr(settings, name),
            default=_field_default(field),
            annotation=field.annotation,
        )


def _apply_setting_update(field: str, raw_value: Optional[str]) -> Settings:
    if field not in Settings.model_fields:
        raise EnvironmentSettingError(f"Unknown setting: {field}")

    env_name = _env_key(field)
    previous = os.environ.get(env_name)

    if raw_value is None:
        os.environ.pop(env_name, None)
    else:
        os.environ[env_name] = raw_value

    try:
        new_settings = Settings()
    except ValidationError as exc:
        if previous is None:
            os.environ.pop(env_name, None)
        else:
            os.environ[env_name] = previous
        raise EnvironmentSettingError(str(exc)) from exc

    global _settings
    _settings = new_settings
    _persist_env_value(env_name, raw_value)
    return new_settings


def update_environment_setting(field: str, raw_value: str) -> Settings:
    """Update an environment setting and reload configuration."""

    return _apply_setting_update(field, raw_value)


def clear_environment_setting(field: str) -> Settings:
    """Remove an environment override for the given field and reload configuration."""

    return _apply_setting_update(field, None)


def get_settings() -> Settings:
    """Return a singleton instance of the application settings."""

    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


__all__ = [
    "Settings",
    "EnvironmentSetting",
    "EnvironmentSettingError",
    "clear_environment_setting",
    "get_settings",
    "list_environment_settings",
    "update_environment_setting",
]

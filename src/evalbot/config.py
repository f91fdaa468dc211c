"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (the bot token) live in
.env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``SECRETS__TELEGRAM_TOKEN``). Secrets use SecretStr for
masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from evalbot.config import get_settings

    s = get_settings()
    print(s.bot.admin_id)
    print(s.records.path)
"""

from __future__ import annotations

import types
import typing
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from evalbot import __version__

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class BotConfig(_StrictModel):
    admin_id: int | None = None  # Telegram user id allowed to /shutdown; gets boot/bye notices
    version: str = __version__  # shown in the boot notice and /about
    homepage: str = "https://github.com/upsuper/telegram-rustevalbot"


class SecretsConfig(_StrictModel):
    telegram_token: SecretStr | None = None


class TelegramConfig(_StrictModel):
    api_url: str = "https://api.telegram.org"
    poll_timeout_seconds: int = 5  # long-poll timeout passed to getUpdates
    max_poll_retries: int = 13  # backoff doubles from 1s each attempt

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class RecordsConfig(_StrictModel):
    path: str = "record_list.json"
    # Telegram refuses edits to messages older than 48 hours, so tracking
    # them any longer is pointless.
    max_age_hours: float = 48.0


class ResponderConfig(_StrictModel):
    timeout_seconds: float = 30.0
    playground_url: str = "https://play.rust-lang.org"
    registry_url: str = "https://crates.io"
    docs_index: str = "search-index.json"
    docs_base_url: str = "https://doc.rust-lang.org"
    user_agent: str = f"evalbot/{__version__}"

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v

    @field_validator("playground_url", "registry_url", "docs_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class LifecycleConfig(_StrictModel):
    upgrade_marker: str = "upgrade"
    poll_interval_seconds: float = 2.0
    drain_timeout_seconds: float = 60.0


class QueueConfig(_StrictModel):
    max_concurrent_chats: int = 32

    @field_validator("max_concurrent_chats")
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Explicit-fields validation
# ---------------------------------------------------------------------------


def _is_exempt_field(model_cls: type[BaseModel], field_name: str) -> bool:
    """Optional fields (X | None) are exempt: TOML has no null type."""
    annotation = model_cls.model_fields[field_name].annotation
    if isinstance(annotation, types.UnionType) and type(None) in annotation.__args__:
        return True
    origin = getattr(annotation, "__origin__", None)
    return origin is typing.Union and type(None) in annotation.__args__


def _collect_implicit_fields(model: BaseModel) -> list[str]:
    """Find fields left implicit in config sections that were present in the input.

    Sections omitted entirely use known defaults and are not checked.
    """
    errors: list[str] = []
    for field_name in type(model).model_fields:
        value = getattr(model, field_name)
        if not isinstance(value, _StrictModel) or field_name not in model.model_fields_set:
            continue
        child_cls = type(value)
        missing = {
            f
            for f in set(child_cls.model_fields) - value.model_fields_set
            if not _is_exempt_field(child_cls, f)
        }
        if missing:
            errors.append(f"{field_name}: missing {sorted(missing)}")
    return errors


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    bot: BotConfig = BotConfig()
    secrets: SecretsConfig = SecretsConfig()
    telegram: TelegramConfig = TelegramConfig()
    records: RecordsConfig = RecordsConfig()
    responder: ResponderConfig = ResponderConfig()
    lifecycle: LifecycleConfig = LifecycleConfig()
    queue: QueueConfig = QueueConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _require_explicit_fields(self) -> Settings:
        """If you include a section in config.toml, spell out every field."""
        errors = _collect_implicit_fields(self)
        if errors:
            msg = "Config fields must be explicitly set:\n"
            msg += "\n".join(f"  - {e}" for e in errors)
            raise ValueError(msg)
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def records_path(self) -> Path:
        return (self.project_root / self.records.path).resolve()

    @cached_property
    def upgrade_marker_path(self) -> Path:
        return (self.project_root / self.lifecycle.upgrade_marker).resolve()

    @cached_property
    def docs_index_path(self) -> Path:
        return (self.project_root / self.responder.docs_index).resolve()

    @cached_property
    def about_text(self) -> str:
        return f"evalbot {self.bot.version}\n{self.bot.homepage}"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None

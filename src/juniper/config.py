"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (bot tokens) live in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``IPC__POLL_INTERVAL_MS=500``, ``SECRETS__TELEGRAM_BOT_TOKEN=...``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from juniper.config import get_settings

    s = get_settings()
    print(s.agent.name)
    print(s.ipc_dir)
"""

from __future__ import annotations

import re
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# Folder names double as directory names under data/ipc/
FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

# Reserved: quarantine lane under the IPC root
ERRORS_DIR_NAME = "errors"


def is_valid_group_folder(folder: str) -> bool:
    """True if *folder* is a filesystem-safe, non-reserved group folder."""
    return bool(FOLDER_RE.match(folder)) and folder != ERRORS_DIR_NAME


# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    name: str = "Juniper"
    trigger_aliases: list[str] = []
    idle_timeout_ms: int = 1800000  # 30 minutes


class IpcConfig(_StrictModel):
    poll_interval_ms: int = 1000
    main_group_folder: str = "main"
    # Unauthorized messages are deleted by default; true moves them to errors/
    quarantine_unauthorized: bool = False
    # Filesystem events wake the poll loop early; polling still runs
    watch_filesystem: bool = True

    @field_validator("poll_interval_ms")
    @classmethod
    def clamp_poll_interval(cls, v: int) -> int:
        return max(50, v)

    @field_validator("main_group_folder")
    @classmethod
    def validate_main_folder(cls, v: str) -> str:
        if not is_valid_group_folder(v):
            raise ValueError(f"Invalid main_group_folder: {v!r}")
        return v


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    telegram_bot_token: SecretStr | None = None
    telegram_pool_tokens: list[SecretStr] = []  # agent-team sender bots
    # Obtained and refreshed outside juniper
    gmail_access_token: SecretStr | None = None


class TelegramConfig(_StrictModel):
    api_base: str = "https://api.telegram.org"
    max_message_length: int = 4096
    typing_refresh_s: float = 4.0
    request_timeout_s: float = 30.0
    receive: bool = True  # long-poll getUpdates for inbound messages
    poll_timeout_s: int = 25
    poll_retry_s: float = 5.0
    pool_rename_delay_s: float = 2.0  # Telegram needs a moment after setMyName


class EmailConfig(_StrictModel):
    enabled: bool = False
    api_base: str = "https://gmail.googleapis.com/gmail/v1"
    trigger_mode: Literal["label", "address", "subject"] = "label"
    trigger_value: str = "Juniper"
    context_mode: Literal["thread", "sender", "single"] = "single"
    poll_interval_ms: int = 60000
    max_results: int = 10
    request_timeout_s: float = 30.0

    @field_validator("poll_interval_ms")
    @classmethod
    def clamp_poll_interval(cls, v: int) -> int:
        return max(1000, v)


class GroupConfig(_StrictModel):
    """A registered group under [groups."<jid>"]."""

    name: str
    folder: str
    trigger: str | None = None  # None = "@<agent.name>"
    requires_trigger: bool = True
    added_at: str = ""

    @field_validator("folder")
    @classmethod
    def validate_folder(cls, v: str) -> str:
        if not is_valid_group_folder(v):
            raise ValueError(f"Invalid group folder: {v!r}")
        return v


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    ipc: IpcConfig = IpcConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()
    telegram: TelegramConfig = TelegramConfig()
    email: EmailConfig = EmailConfig()
    groups: dict[str, GroupConfig] = {}  # [groups."<jid>"]

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
    def poll_interval(self) -> float:
        return self.ipc.poll_interval_ms / 1000

    @cached_property
    def idle_timeout(self) -> float:
        return self.agent.idle_timeout_ms / 1000

    @cached_property
    def default_trigger(self) -> str:
        return f"@{self.agent.name}"

    @cached_property
    def trigger_pattern(self) -> re.Pattern[str]:
        names = [re.escape(self.agent.name)] + [
            re.escape(a.strip()) for a in self.agent.trigger_aliases
        ]
        return re.compile(rf"^@({'|'.join(names)})\b", re.IGNORECASE)

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"


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

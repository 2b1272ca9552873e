"""Tests for Settings loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from juniper.config import (
    EmailConfig,
    GroupConfig,
    IpcConfig,
    Settings,
    get_settings,
    is_valid_group_folder,
    reset_settings,
)


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """Run Settings() from an empty directory with no config-affecting env."""
    monkeypatch.chdir(tmp_path)
    for var in (
        "IPC__POLL_INTERVAL_MS",
        "SECRETS__TELEGRAM_BOT_TOKEN",
        "SECRETS__GMAIL_ACCESS_TOKEN",
        "SECRETS__TELEGRAM_POOL_TOKENS",
        "AGENT__NAME",
    ):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


class TestGroupFolderValidation:
    @pytest.mark.parametrize("folder", ["main", "team-a", "Group_1", "x"])
    def test_valid(self, folder):
        assert is_valid_group_folder(folder)

    @pytest.mark.parametrize("folder", ["", "errors", "../up", "a/b", "-x", "has space", ".hidden"])
    def test_invalid(self, folder):
        assert not is_valid_group_folder(folder)


class TestIpcConfig:
    def test_poll_interval_clamped(self):
        assert IpcConfig(poll_interval_ms=1).poll_interval_ms == 50

    def test_bad_main_folder_rejected(self):
        with pytest.raises(ValidationError):
            IpcConfig(main_group_folder="errors")

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            IpcConfig(poll_intervall_ms=10)


class TestEmailConfig:
    def test_defaults(self):
        cfg = EmailConfig()

        assert cfg.enabled is False
        assert (cfg.trigger_mode, cfg.context_mode) == ("label", "single")

    def test_poll_interval_clamped(self):
        assert EmailConfig(poll_interval_ms=10).poll_interval_ms == 1000

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValidationError):
            EmailConfig(context_mode="per-day")


class TestGroupConfig:
    def test_bad_folder_rejected(self):
        with pytest.raises(ValidationError):
            GroupConfig(name="x", folder="../etc")


class TestSettingsSources:
    def test_defaults(self, workdir):
        s = Settings()

        assert s.agent.name == "Juniper"
        assert s.ipc.main_group_folder == "main"
        assert s.poll_interval == 1.0
        assert s.default_trigger == "@Juniper"
        assert s.secrets.telegram_bot_token is None
        assert s.data_dir == (workdir / "data").resolve()
        assert s.ipc_dir == s.data_dir / "ipc"

    def test_toml_file(self, workdir):
        (workdir / "config.toml").write_text(
            "[agent]\n"
            'name = "Ivy"\n'
            "[ipc]\n"
            "poll_interval_ms = 250\n"
            '[groups."tg:-100"]\n'
            'name = "Family"\n'
            'folder = "family"\n'
        )

        s = Settings()

        assert s.agent.name == "Ivy"
        assert s.poll_interval == 0.25
        assert s.groups["tg:-100"].folder == "family"
        assert s.groups["tg:-100"].trigger is None

    def test_env_overrides_toml(self, workdir, monkeypatch):
        (workdir / "config.toml").write_text("[ipc]\npoll_interval_ms = 250\n")
        monkeypatch.setenv("IPC__POLL_INTERVAL_MS", "500")

        assert Settings().ipc.poll_interval_ms == 500

    def test_token_from_dotenv(self, workdir):
        (workdir / ".env").write_text("SECRETS__TELEGRAM_BOT_TOKEN=123:abc\n")

        s = Settings()

        assert s.secrets.telegram_bot_token.get_secret_value() == "123:abc"
        assert "123:abc" not in repr(s.secrets)

    def test_trigger_pattern_includes_aliases(self, workdir):
        (workdir / "config.toml").write_text('[agent]\ntrigger_aliases = ["jun"]\n')

        s = Settings()

        assert s.trigger_pattern.match("@juniper hi")
        assert s.trigger_pattern.match("@JUN hi")
        assert not s.trigger_pattern.match("hi @juniper")

    def test_email_section_and_pool_tokens(self, workdir):
        (workdir / "config.toml").write_text(
            '[email]\nenabled = true\ntrigger_mode = "subject"\ntrigger_value = "[AI]"\n'
        )
        (workdir / ".env").write_text(
            "SECRETS__GMAIL_ACCESS_TOKEN=ya29.x\n"
            'SECRETS__TELEGRAM_POOL_TOKENS=["900:a", "901:b"]\n'
        )

        s = Settings()

        assert s.email.enabled is True
        assert s.email.trigger_value == "[AI]"
        assert s.secrets.gmail_access_token.get_secret_value() == "ya29.x"
        pool = s.secrets.telegram_pool_tokens
        assert [t.get_secret_value() for t in pool] == ["900:a", "901:b"]


class TestSingleton:
    def test_get_settings_caches_until_reset(self, workdir, monkeypatch):
        monkeypatch.setattr("juniper.config._settings", None)

        first = get_settings()
        assert get_settings() is first

        reset_settings()
        assert get_settings() is not first

"""Shared test fixtures for Juniper."""

from __future__ import annotations

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions/classes, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "poll_interval",
        "idle_timeout",
        "default_trigger",
        "trigger_pattern",
        "project_root",
        "data_dir",
        "ipc_dir",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, ipc, groups, etc.) and cached property
    overrides (project_root, data_dir, ipc_dir, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(ipc=IpcConfig(main_group_folder="admin"))
    """
    from juniper.config import (
        AgentConfig,
        EmailConfig,
        IpcConfig,
        LoggingConfig,
        SecretsConfig,
        Settings,
        TelegramConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "ipc": IpcConfig(watch_filesystem=False),
        "logging": LoggingConfig(),
        "secrets": SecretsConfig(),
        "telegram": TelegramConfig(),
        "email": EmailConfig(),
        "groups": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


class FakeChannel:
    """In-memory channel that records every call in order."""

    def __init__(self, name: str = "fake", prefix: str = "tg:") -> None:
        self.name = name
        self.prefix = prefix
        self.connected = False
        self.calls: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.fail_with: Exception | None = None

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(self.prefix)

    async def send_message(self, jid: str, text: str) -> None:
        self.calls.append("send_message")
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((jid, text))

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        self.calls.append("set_typing")
        self.typing.append((jid, is_typing))


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Built from pure defaults (no config.toml, no .env) with data_dir
    pointed at the test's tmp_path so nothing touches the real data/.
    """
    safe = make_settings(data_dir=tmp_path / "data")
    monkeypatch.setattr("juniper.config._settings", safe)
    return safe

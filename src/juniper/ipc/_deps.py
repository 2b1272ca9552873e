"""Dependency interface the IPC queue is constructed with."""

from __future__ import annotations

from typing import Any, Protocol

from juniper.types import RegisteredGroup


class IpcDeps(Protocol):
    """Dependencies for IPC processing."""

    async def send_message(self, jid: str, text: str) -> None:
        """Deliver *text* to *jid*. Must raise on failure."""
        ...

    async def send_pool_message(
        self, jid: str, text: str, sender: str, group_folder: str
    ) -> None:
        """Deliver *text* as agent-team member *sender*. Must raise on failure."""
        ...

    def registered_groups(self) -> dict[str, RegisteredGroup]: ...

    def register_group(self, jid: str, group: RegisteredGroup) -> None: ...

    async def sync_group_metadata(self, force: bool) -> None: ...

    async def get_available_groups(self) -> list[Any]: ...

    def write_groups_snapshot(
        self,
        group_folder: str,
        is_main: bool,
        available_groups: list[Any],
        registered_jids: set[str],
    ) -> None: ...

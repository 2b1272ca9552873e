"""IPC task handlers and their registry.

Task files are admin operations; only the main group may issue them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from juniper.config import get_settings, is_valid_group_folder
from juniper.ipc._deps import IpcDeps
from juniper.logger import logger
from juniper.types import RegisteredGroup

# type -> async handler(data, source_group, is_main, deps)
HANDLERS: dict[str, Callable[[dict[str, Any], str, bool, IpcDeps], Awaitable[None]]] = {}


def register(
    type_name: str,
    handler: Callable[[dict[str, Any], str, bool, IpcDeps], Awaitable[None]],
) -> None:
    HANDLERS[type_name] = handler


async def dispatch(
    data: dict[str, Any],
    source_group: str,
    is_main: bool,
    deps: IpcDeps,
) -> None:
    """Dispatch an IPC task to its registered handler."""
    task_type = data.get("type") or ""
    handler = HANDLERS.get(task_type)
    if handler is None:
        logger.warning("Unknown IPC task type", type=task_type, source_group=source_group)
        return
    await handler(data, source_group, is_main, deps)


async def _handle_register_group(
    data: dict[str, Any],
    source_group: str,
    is_main: bool,
    deps: IpcDeps,
) -> None:
    if not is_main:
        logger.warning(
            "Unauthorized register_group attempt blocked",
            source_group=source_group,
        )
        return

    jid = data.get("jid")
    name = data.get("name")
    folder = data.get("folder")
    trigger = data.get("trigger") or get_settings().default_trigger

    if not (jid and name and folder):
        logger.warning(
            "Invalid register_group request - missing required fields",
            data=str(data),
        )
        return
    if not is_valid_group_folder(folder):
        logger.warning("Invalid register_group request - bad folder name", folder=folder)
        return

    deps.register_group(
        jid,
        RegisteredGroup(
            name=name,
            folder=folder,
            trigger=trigger,
            added_at=datetime.now(UTC).isoformat(),
            requires_trigger=data.get("requiresTrigger", True) is not False,
        ),
    )
    logger.info("Group registered via IPC", jid=jid, folder=folder)


async def _handle_refresh_groups(
    data: dict[str, Any],
    source_group: str,
    is_main: bool,
    deps: IpcDeps,
) -> None:
    if not is_main:
        logger.warning(
            "Unauthorized refresh_groups attempt blocked",
            source_group=source_group,
        )
        return

    logger.info("Group metadata refresh requested via IPC", source_group=source_group)
    await deps.sync_group_metadata(True)
    available_groups = await deps.get_available_groups()
    deps.write_groups_snapshot(
        source_group,
        True,
        available_groups,
        set(deps.registered_groups().keys()),
    )


register("register_group", _handle_register_group)
register("refresh_groups", _handle_refresh_groups)

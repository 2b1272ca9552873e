"""Main orchestrator: wires channels, the group registry and the IPC queue."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from juniper.channels import TelegramBotPool, build_bot_pool, build_channels
from juniper.channels.telegram import JID_PREFIX as TELEGRAM_PREFIX
from juniper.config import Settings, get_settings
from juniper.ipc import IpcQueue, IpcQueueHandle
from juniper.logger import logger
from juniper.messaging import StreamingDeps, StreamingHandler, create_streaming_handler
from juniper.router import NoChannelError, find_channel, route_outbound
from juniper.types import Channel, NewMessage, RegisteredGroup
from juniper.utils import IdleTimer, write_json_atomic


class JuniperApp:
    """Owns runtime state: registered groups, channels, the IPC queue handle."""

    def __init__(
        self,
        settings: Settings | None = None,
        channels: list[Channel] | None = None,
        bot_pool: TelegramBotPool | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._groups: dict[str, RegisteredGroup] = {
            jid: RegisteredGroup(
                name=g.name,
                folder=g.folder,
                trigger=g.trigger or self.settings.default_trigger,
                added_at=g.added_at,
                requires_trigger=g.requires_trigger,
            )
            for jid, g in self.settings.groups.items()
        }
        # Every chat a channel has reported, registered or not
        self._chats: dict[str, dict[str, str]] = {}
        self.inbound: asyncio.Queue[NewMessage] = asyncio.Queue()
        self.channels: list[Channel] = (
            channels
            if channels is not None
            else build_channels(
                self.settings,
                on_message=self.on_message,
                on_chat_metadata=self.on_chat_metadata,
                registered_groups=self.registered_groups,
            )
        )
        self.bot_pool = bot_pool if bot_pool is not None else build_bot_pool(self.settings)
        self.ipc_queue = IpcQueue.from_settings(self, self.settings)
        self._ipc_handle: IpcQueueHandle | None = None
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Inbound (channel callbacks)
    # ------------------------------------------------------------------

    def on_message(self, chat_jid: str, msg: NewMessage) -> None:
        self.inbound.put_nowait(msg)
        logger.debug("Inbound message queued", chat_jid=chat_jid, sender=msg.sender_name)

    def on_chat_metadata(self, chat_jid: str, timestamp: str, name: str | None = None) -> None:
        chat = self._chats.setdefault(chat_jid, {"name": chat_jid, "lastActivity": timestamp})
        chat["lastActivity"] = max(chat["lastActivity"], timestamp)
        if name:
            chat["name"] = name

    # ------------------------------------------------------------------
    # IpcDeps
    # ------------------------------------------------------------------

    async def send_message(self, jid: str, text: str) -> None:
        await route_outbound(self.channels, jid, text)

    async def send_pool_message(
        self, jid: str, text: str, sender: str, group_folder: str
    ) -> None:
        if self.bot_pool is not None and self.bot_pool.has_bots and jid.startswith(
            TELEGRAM_PREFIX
        ):
            await self.bot_pool.send_pool_message(jid, text, sender, group_folder)
            return
        # No pool for this chat: the main bot speaks for the team member
        await self.send_message(jid, text)

    def registered_groups(self) -> dict[str, RegisteredGroup]:
        return self._groups

    def register_group(self, jid: str, group: RegisteredGroup) -> None:
        self._groups[jid] = group
        (self.settings.ipc_dir / group.folder / "messages").mkdir(parents=True, exist_ok=True)
        logger.info("Group registered", jid=jid, name=group.name, folder=group.folder)

    async def sync_group_metadata(self, force: bool) -> None:
        # Channels push chat metadata as messages arrive; nothing to pull
        logger.debug(
            "Group metadata sync skipped",
            force=force,
            known_chats=len(self._chats),
            channels=len(self.channels),
        )

    async def get_available_groups(self) -> list[dict[str, Any]]:
        groups = {
            jid: {"jid": jid, "name": g.name, "folder": g.folder, "isRegistered": True}
            for jid, g in self._groups.items()
        }
        for jid, chat in self._chats.items():
            if jid not in groups:
                groups[jid] = {
                    "jid": jid,
                    "name": chat["name"],
                    "lastActivity": chat["lastActivity"],
                    "isRegistered": False,
                }
        return [groups[jid] for jid in sorted(groups)]

    def write_groups_snapshot(
        self,
        group_folder: str,
        is_main: bool,
        available_groups: list[Any],
        registered_jids: set[str],
    ) -> None:
        """Write available_groups.json to the group's IPC directory."""
        # Main sees all groups; others see nothing (they can't address them)
        visible = available_groups if is_main else []
        write_json_atomic(
            self.settings.ipc_dir / group_folder / "available_groups.json",
            {
                "groups": visible,
                "registeredJids": sorted(registered_jids) if is_main else [],
                "lastSync": datetime.now(UTC).isoformat(),
            },
            indent=2,
        )

    # ------------------------------------------------------------------
    # Streaming output
    # ------------------------------------------------------------------

    def streaming_handler_for(
        self,
        chat_jid: str,
        on_idle: Callable[[], None],
        *,
        idle_timer: IdleTimer | None = None,
    ) -> StreamingHandler:
        """Build the per-turn output handler for *chat_jid*.

        *on_idle* fires once: when the turn concludes, or when no output
        arrives for ``agent.idle_timeout_ms``, whichever comes first.
        """
        channel = find_channel(self.channels, chat_jid)
        if channel is None:
            raise NoChannelError(f"No channel owns JID {chat_jid}")
        group = self._groups.get(chat_jid)
        timer = idle_timer or IdleTimer(self.settings.idle_timeout, on_idle)

        def turn_concluded() -> None:
            timer.cancel()
            on_idle()

        return create_streaming_handler(
            StreamingDeps(
                channel=channel,
                chat_jid=chat_jid,
                group_name=group.name if group else chat_jid,
                reset_idle_timer=timer.reset,
                notify_idle=turn_concluded,
            )
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _connect_channels(self) -> None:
        for ch in self.channels:
            try:
                await ch.connect()
            except Exception as exc:
                logger.error("Channel failed to connect", channel=ch.name, err=str(exc))

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        if not self.channels:
            logger.warning("No channels configured; outbound messages will be quarantined")
        await self._connect_channels()
        if self.bot_pool is not None:
            await self.bot_pool.start()

        self._ipc_handle = self.ipc_queue.start()
        logger.info(
            "Juniper running",
            groups=len(self._groups),
            channels=[ch.name for ch in self.channels],
        )
        try:
            await self._stop_event.wait()
        finally:
            logger.info("Shutting down")
            await self._ipc_handle.stop()
            for ch in self.channels:
                await ch.disconnect()
            if self.bot_pool is not None:
                await self.bot_pool.close()

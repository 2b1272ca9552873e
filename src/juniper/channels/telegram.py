"""Telegram channel over the Bot HTTP API.

JIDs look like ``tg:<chat_id>`` (negative ids for groups). Outbound text is
sent as plain text; messages over the API limit are split into consecutive
chunks. Telegram measures that limit, and entity offsets, in UTF-16 code
units, so all length arithmetic here does too.

Inbound messages arrive by long-polling ``getUpdates``. Every chat seen is
reported through ``on_chat_metadata``; only registered chats get their
messages delivered through ``on_message``.

``TelegramBotPool`` holds extra bots used to give agent-team members their
own identity in a chat: each ``(group, sender)`` pair is pinned to one pool
bot, which is renamed to the sender on first use.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import aiohttp

from juniper.logger import logger
from juniper.types import NewMessage, OnChatMetadata, OnInboundMessage, RegisteredGroup
from juniper.utils import create_background_task

JID_PREFIX = "tg:"

# Non-text message kinds and the placeholder the agent sees instead
_PLACEHOLDERS = {
    "photo": "[Photo]",
    "video": "[Video]",
    "voice": "[Voice message]",
    "audio": "[Audio]",
    "location": "[Location]",
    "contact": "[Contact]",
}


class TelegramApiError(RuntimeError):
    """The Bot API answered ``ok: false`` (or not JSON at all)."""


def chat_id_from_jid(jid: str) -> str:
    return jid.removeprefix(JID_PREFIX)


def utf16_len(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def utf16_slice(text: str, offset: int, length: int) -> str:
    """Slice *text* by UTF-16 code units, as Telegram entity offsets are."""
    raw = text.encode("utf-16-le")
    return raw[offset * 2 : (offset + length) * 2].decode("utf-16-le", errors="ignore")


def split_text(text: str, limit: int) -> list[str]:
    """Split *text* into chunks of at most *limit* UTF-16 code units.

    Splits fall between code points, so a surrogate pair is never cut.
    """
    if utf16_len(text) <= limit:
        return [text]
    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for ch in text:
        width = 2 if ord(ch) > 0xFFFF else 1
        if current and size + width > limit:
            chunks.append("".join(current))
            current, size = [], 0
        current.append(ch)
        size += width
    if current:
        chunks.append("".join(current))
    return chunks


class _BotApi:
    """Minimal Bot API client bound to one token and one HTTP session."""

    def __init__(self, session: aiohttp.ClientSession, api_base: str, token: str) -> None:
        self._session = session
        self._base = f"{api_base.rstrip('/')}/bot{token}"

    async def call(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"json": payload or {}}
        if timeout is not None:
            kwargs["timeout"] = timeout
        async with self._session.post(f"{self._base}/{method}", **kwargs) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError as exc:
                raise TelegramApiError(f"{method}: non-JSON response ({resp.status})") from exc
        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            raise TelegramApiError(f"{method} failed: {description or resp.status}")
        return body.get("result")

    async def send_text(self, chat_id: str, text: str, limit: int) -> None:
        for chunk in split_text(text, limit):
            await self.call("sendMessage", {"chat_id": chat_id, "text": chunk})


class TelegramChannel:
    name = "telegram"

    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.telegram.org",
        max_message_length: int = 4096,
        typing_refresh_s: float = 4.0,
        request_timeout_s: float = 30.0,
        on_message: OnInboundMessage | None = None,
        on_chat_metadata: OnChatMetadata | None = None,
        registered_groups: Callable[[], dict[str, RegisteredGroup]] | None = None,
        assistant_name: str = "Juniper",
        trigger_pattern: re.Pattern[str] | None = None,
        poll_timeout_s: int = 25,
        poll_retry_s: float = 5.0,
    ) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._max_message_length = max_message_length
        self._typing_refresh_s = typing_refresh_s
        self._request_timeout_s = request_timeout_s
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self._registered_groups = registered_groups or dict
        self._assistant_name = assistant_name
        self._trigger_pattern = trigger_pattern or re.compile(
            rf"^@{re.escape(assistant_name)}\b", re.IGNORECASE
        )
        self._poll_timeout_s = poll_timeout_s
        self._poll_retry_s = poll_retry_s
        self._session: aiohttp.ClientSession | None = None
        self._api: _BotApi | None = None
        self._typing_tasks: dict[str, asyncio.Task[None]] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._offset = 0
        self.username: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        self._api = _BotApi(self._session, self._api_base, self._token)
        try:
            me = await self._api.call("getMe")
        except Exception:
            await self._session.close()
            self._session = None
            self._api = None
            raise
        self.username = me.get("username")
        logger.info("Telegram bot connected", username=self.username, id=me.get("id"))
        if self._on_message is not None:
            self._poll_task = create_background_task(self._poll_loop(), name="telegram-poll")

    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(JID_PREFIX)

    async def disconnect(self) -> None:
        tasks = list(self._typing_tasks.values())
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._typing_tasks.clear()

        if self._session is not None:
            await self._session.close()
            self._session = None
            self._api = None
            logger.info("Telegram bot stopped")

    async def _call(self, method: str, payload: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        if self._api is None:
            raise TelegramApiError("Telegram channel is not connected")
        return await self._api.call(method, payload, **kwargs)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, jid: str, text: str) -> None:
        if self._api is None:
            raise TelegramApiError("Telegram channel is not connected")
        try:
            await self._api.send_text(chat_id_from_jid(jid), text, self._max_message_length)
        except (aiohttp.ClientError, TimeoutError, TelegramApiError) as exc:
            logger.error("Failed to send Telegram message", jid=jid, err=str(exc))
            raise
        logger.info("Telegram message sent", jid=jid, length=len(text))

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        if not is_typing:
            task = self._typing_tasks.pop(jid, None)
            if task is not None:
                task.cancel()
            return
        if jid in self._typing_tasks or not self.is_connected():
            return
        # Telegram clears a chat action after ~5s, so keep re-sending it
        self._typing_tasks[jid] = create_background_task(
            self._typing_loop(jid), name=f"telegram-typing-{jid}"
        )

    async def _typing_loop(self, jid: str) -> None:
        chat_id = chat_id_from_jid(jid)
        while True:
            try:
                await self._call("sendChatAction", {"chat_id": chat_id, "action": "typing"})
            except (aiohttp.ClientError, TimeoutError, TelegramApiError) as exc:
                logger.debug("Failed to send Telegram typing indicator", jid=jid, err=str(exc))
            await asyncio.sleep(self._typing_refresh_s)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self._poll_timeout_s + self._request_timeout_s)
        while True:
            try:
                updates = await self._call(
                    "getUpdates",
                    {
                        "offset": self._offset,
                        "timeout": self._poll_timeout_s,
                        "allowed_updates": ["message"],
                    },
                    timeout=timeout,
                )
            except (aiohttp.ClientError, TimeoutError, TelegramApiError) as exc:
                logger.error("Telegram polling failed", err=str(exc))
                await asyncio.sleep(self._poll_retry_s)
                continue
            for update in updates if isinstance(updates, list) else []:
                self._offset = max(self._offset, update.get("update_id", 0) + 1)
                try:
                    await self.handle_update(update)
                except Exception as exc:
                    logger.error(
                        "Telegram bot error",
                        update_id=update.get("update_id"),
                        err=str(exc),
                    )

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Route one ``getUpdates`` entry to the text, command or media path."""
        message = update.get("message")
        if not message or "chat" not in message:
            return
        text = message.get("text")
        if text is not None:
            if text.startswith("/"):
                await self._handle_command(message, text)
            else:
                self._handle_text(message, text)
            return
        placeholder = self._placeholder_for(message)
        if placeholder is not None:
            self._handle_non_text(message, placeholder)

    @staticmethod
    def _sender_name(sender: dict[str, Any] | None) -> str:
        if not sender:
            return "Unknown"
        return (
            sender.get("first_name") or sender.get("username") or str(sender.get("id", "Unknown"))
        )

    @staticmethod
    def _timestamp(message: dict[str, Any]) -> str:
        return datetime.fromtimestamp(message.get("date", 0), tz=UTC).isoformat()

    async def _handle_command(self, message: dict[str, Any], text: str) -> None:
        chat = message["chat"]
        command = text.split()[0][1:].split("@")[0].lower()
        if command == "chatid":
            if chat.get("type") == "private":
                chat_name = (message.get("from") or {}).get("first_name") or "Private"
            else:
                chat_name = chat.get("title") or "Unknown"
            reply = f"Chat ID: tg:{chat['id']}\nName: {chat_name}\nType: {chat.get('type')}"
        elif command == "ping":
            reply = f"{self._assistant_name} is online."
        else:
            return
        await self._call("sendMessage", {"chat_id": chat["id"], "text": reply})

    def _is_bot_mentioned(self, message: dict[str, Any], text: str) -> bool:
        if not self.username:
            return False
        handle = f"@{self.username.lower()}"
        for entity in message.get("entities") or []:
            if entity.get("type") != "mention":
                continue
            mention = utf16_slice(text, entity.get("offset", 0), entity.get("length", 0))
            if mention.lower() == handle:
                return True
        return False

    def _handle_text(self, message: dict[str, Any], text: str) -> None:
        chat = message["chat"]
        chat_jid = f"{JID_PREFIX}{chat['id']}"
        sender = message.get("from") or {}
        sender_name = self._sender_name(sender)
        timestamp = self._timestamp(message)
        chat_name = sender_name if chat.get("type") == "private" else chat.get("title") or chat_jid

        # Telegram @bot_username mentions don't match the @<assistant> trigger
        content = text
        if self._is_bot_mentioned(message, text) and not self._trigger_pattern.match(content):
            content = f"@{self._assistant_name} {content}"

        if self._on_chat_metadata is not None:
            self._on_chat_metadata(chat_jid, timestamp, chat_name)

        if chat_jid not in self._registered_groups():
            logger.debug(
                "Message from unregistered Telegram chat",
                chat_jid=chat_jid,
                chat_name=chat_name,
            )
            return

        self._deliver(
            NewMessage(
                id=str(message.get("message_id", "")),
                chat_jid=chat_jid,
                sender=str(sender.get("id", "")),
                sender_name=sender_name,
                content=content,
                timestamp=timestamp,
            )
        )
        logger.info(
            "Telegram message stored",
            chat_jid=chat_jid,
            chat_name=chat_name,
            sender=sender_name,
        )

    @staticmethod
    def _placeholder_for(message: dict[str, Any]) -> str | None:
        if "document" in message:
            return f"[Document: {message['document'].get('file_name') or 'file'}]"
        if "sticker" in message:
            return f"[Sticker {message['sticker'].get('emoji') or ''}]"
        for key, placeholder in _PLACEHOLDERS.items():
            if key in message:
                return placeholder
        return None

    def _handle_non_text(self, message: dict[str, Any], placeholder: str) -> None:
        chat_jid = f"{JID_PREFIX}{message['chat']['id']}"
        if chat_jid not in self._registered_groups():
            return
        sender = message.get("from") or {}
        timestamp = self._timestamp(message)
        caption = f" {message['caption']}" if message.get("caption") else ""

        if self._on_chat_metadata is not None:
            self._on_chat_metadata(chat_jid, timestamp)
        self._deliver(
            NewMessage(
                id=str(message.get("message_id", "")),
                chat_jid=chat_jid,
                sender=str(sender.get("id", "")),
                sender_name=self._sender_name(sender),
                content=f"{placeholder}{caption}",
                timestamp=timestamp,
            )
        )

    def _deliver(self, msg: NewMessage) -> None:
        if self._on_message is not None:
            self._on_message(msg.chat_jid, msg)


class TelegramBotPool:
    """Extra bots that speak as individual agent-team members."""

    def __init__(
        self,
        tokens: list[str],
        *,
        api_base: str = "https://api.telegram.org",
        max_message_length: int = 4096,
        request_timeout_s: float = 30.0,
        rename_delay_s: float = 2.0,
    ) -> None:
        self._tokens = tokens
        self._api_base = api_base
        self._max_message_length = max_message_length
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._rename_delay_s = rename_delay_s
        self._session: aiohttp.ClientSession | None = None
        self._apis: list[_BotApi] = []
        self._assignments: dict[str, int] = {}
        self._next_index = 0

    @property
    def has_bots(self) -> bool:
        return bool(self._apis)

    @property
    def size(self) -> int:
        return len(self._apis)

    async def start(self) -> None:
        """Verify each token with ``getMe``; bad tokens are logged and skipped."""
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        for token in self._tokens:
            api = _BotApi(self._session, self._api_base, token)
            try:
                me = await api.call("getMe")
            except (aiohttp.ClientError, TimeoutError, TelegramApiError) as exc:
                logger.error("Failed to initialize pool bot", err=str(exc))
                continue
            self._apis.append(api)
            logger.info(
                "Pool bot initialized",
                username=me.get("username"),
                id=me.get("id"),
                pool_size=len(self._apis),
            )
        if self._apis:
            logger.info("Telegram bot pool ready", count=len(self._apis))

    async def close(self) -> None:
        self._apis.clear()
        self._assignments.clear()
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _assign(self, sender: str, group_folder: str) -> int:
        key = f"{group_folder}:{sender}"
        idx = self._assignments.get(key)
        if idx is not None:
            return idx
        idx = self._next_index % len(self._apis)
        self._next_index += 1
        self._assignments[key] = idx
        try:
            await self._apis[idx].call("setMyName", {"name": sender})
            await asyncio.sleep(self._rename_delay_s)
            logger.info(
                "Assigned and renamed pool bot",
                sender=sender,
                group_folder=group_folder,
                pool_index=idx,
            )
        except (aiohttp.ClientError, TimeoutError, TelegramApiError) as exc:
            logger.warning(
                "Failed to rename pool bot (sending anyway)", sender=sender, err=str(exc)
            )
        return idx

    async def send_pool_message(
        self, chat_jid: str, text: str, sender: str, group_folder: str
    ) -> None:
        """Send *text* through the pool bot pinned to ``(group_folder, sender)``."""
        if not self._apis:
            raise TelegramApiError("Telegram bot pool is empty")
        idx = await self._assign(sender, group_folder)
        try:
            await self._apis[idx].send_text(
                chat_id_from_jid(chat_jid), text, self._max_message_length
            )
        except (aiohttp.ClientError, TimeoutError, TelegramApiError) as exc:
            logger.error(
                "Failed to send pool message",
                chat_jid=chat_jid,
                sender=sender,
                err=str(exc),
            )
            raise
        logger.info(
            "Pool message sent",
            chat_jid=chat_jid,
            sender=sender,
            pool_index=idx,
            length=len(text),
        )

"""Data models for Juniper."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable


@dataclass
class RegisteredGroup:
    name: str
    folder: str  # IPC namespace under data/ipc/
    trigger: str  # @mention to activate (e.g., "@Juniper")
    added_at: str = ""
    requires_trigger: bool = True  # False for 1-on-1 chats


@dataclass
class QueuedMessage:
    """One outbound message as written to ``<group>/messages/*.json``."""

    chat_jid: str
    text: str
    type: Literal["message"] = "message"
    sender: str | None = None  # agent-team member; routed through the bot pool

    def to_dict(self) -> dict[str, str]:
        data = {"type": self.type, "chatJid": self.chat_jid, "text": self.text}
        if self.sender:
            data["sender"] = self.sender
        return data


@dataclass
class NewMessage:
    """An inbound chat message delivered by a channel."""

    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool = False


# Channel -> app callbacks for inbound traffic
OnInboundMessage = Callable[[str, NewMessage], None]
OnChatMetadata = Callable[..., None]  # (chat_jid, timestamp, name=None)


@dataclass
class AgentOutput:
    """A single streamed output event from the agent process."""

    status: str  # "success" | "error" | anything else the agent reports
    result: str | dict[str, Any] | list[Any] | None = None
    error: str | None = None


@dataclass
class OutputState:
    """Per-turn delivery bookkeeping. Flags only ever go False -> True."""

    output_sent_to_user: bool = False
    had_error: bool = False


# --- Channel abstraction ---


@runtime_checkable
class Channel(Protocol):
    name: str

    async def connect(self) -> None: ...

    async def send_message(self, jid: str, text: str) -> None:
        """Deliver *text* to *jid*. Raises on failure."""
        ...

    def is_connected(self) -> bool: ...

    def owns_jid(self, jid: str) -> bool: ...

    async def disconnect(self) -> None: ...

    # Optional: typing indicator. Channels that support it implement
    #   async set_typing(jid, is_typing) -> None
    # set_typing is NOT part of the protocol; check with hasattr at call sites.

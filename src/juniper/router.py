"""Outbound routing: internal-tag stripping and channel selection."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from juniper.logger import logger

if TYPE_CHECKING:
    from juniper.types import Channel

_INTERNAL_TAG_RE = re.compile(r"<internal>[\s\S]*?</internal>")


class NoChannelError(RuntimeError):
    """No connected channel owns the target JID."""


def strip_internal_tags(text: str) -> str:
    """Remove <internal>...</internal> blocks and trim whitespace."""
    return _INTERNAL_TAG_RE.sub("", text).strip()


def find_channel(channels: list[Channel], jid: str) -> Channel | None:
    """Find the channel that owns a given JID."""
    for c in channels:
        if c.owns_jid(jid):
            return c
    return None


async def route_outbound(channels: list[Channel], jid: str, text: str) -> None:
    """Send *text* through the first connected channel that owns *jid*."""
    channel = next((c for c in channels if c.owns_jid(jid) and c.is_connected()), None)
    if channel is None:
        raise NoChannelError(f"No channel owns JID {jid}")
    await channel.send_message(jid, text)


async def set_typing_on_channels(channels: list[Channel], jid: str, is_typing: bool) -> None:
    """Toggle the typing indicator wherever it is supported."""
    for ch in channels:
        if not (ch.is_connected() and ch.owns_jid(jid) and hasattr(ch, "set_typing")):
            continue
        try:
            await ch.set_typing(jid, is_typing)
        except Exception as exc:
            logger.debug("Typing indicator failed", channel=ch.name, err=str(exc))

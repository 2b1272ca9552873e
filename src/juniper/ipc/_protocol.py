"""IPC file format: parsing and schema checks.

Message files (``<group>/messages/*.json``)::

    {"type": "message", "chatJid": "tg:-100123", "text": "hello"}

An optional ``sender`` names the agent-team member speaking; Telegram
delivers those through the bot pool.

Task files (``<group>/tasks/*.json``) carry ``{"type": <task type>, ...}``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from juniper.types import QueuedMessage

MESSAGE_TYPE = "message"


class MalformedIpcFile(ValueError):
    """The file parsed as JSON but is not a JSON object."""


def parse_ipc_file(file_path: Path) -> dict[str, Any]:
    """Read and parse a JSON IPC file.

    Raises json.JSONDecodeError, OSError or MalformedIpcFile on failure.
    """
    data = json.loads(file_path.read_text())
    if not isinstance(data, dict):
        raise MalformedIpcFile(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_message(data: dict[str, Any]) -> QueuedMessage | None:
    """Return the message, or None if the schema is incomplete.

    Incomplete means a missing/empty ``chatJid`` or ``text``, or a ``type``
    other than ``message`` (including none). Callers drop such files without
    a send attempt.
    """
    msg_type = data.get("type")
    chat_jid = data.get("chatJid")
    text = data.get("text")
    if msg_type != MESSAGE_TYPE:
        return None
    if not (isinstance(chat_jid, str) and chat_jid):
        return None
    if not (isinstance(text, str) and text):
        return None
    sender = data.get("sender")
    return QueuedMessage(
        chat_jid=chat_jid,
        text=text,
        sender=sender if isinstance(sender, str) and sender else None,
    )

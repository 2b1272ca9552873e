"""IPC file writing: the producer side of a group's outbound inbox.

All writes use atomic rename (tmp → final) so the queue never reads a
partially-written file.
"""

from __future__ import annotations

import random
import time
from pathlib import Path

from juniper.types import QueuedMessage
from juniper.utils import write_json_atomic


def _message_filename() -> str:
    return f"{int(time.time() * 1000)}-{random.randbytes(3).hex()}.json"


def write_ipc_message(
    ipc_dir: Path,
    group_folder: str,
    chat_jid: str,
    text: str,
    *,
    sender: str | None = None,
) -> Path:
    """Drop an outbound message into ``<ipc>/<group_folder>/messages/``."""
    path = ipc_dir / group_folder / "messages" / _message_filename()
    message = QueuedMessage(chat_jid=chat_jid, text=text, sender=sender)
    write_json_atomic(path, message.to_dict())
    return path


def write_ipc_task(ipc_dir: Path, group_folder: str, data: dict) -> Path:
    """Drop a task command into ``<ipc>/<group_folder>/tasks/``."""
    path = ipc_dir / group_folder / "tasks" / _message_filename()
    write_json_atomic(path, data)
    return path

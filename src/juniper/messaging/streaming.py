"""Streaming output dispatch for one conversation turn.

The agent emits a sequence of output events per turn. Each event may carry
result text (possibly wrapped in ``<internal>`` reasoning), and a status.
The handler turns them into ordered side effects:

1. visible text → ``channel.send_message`` **then** ``channel.set_typing(False)``
2. any result, visible or not → ``reset_idle_timer()``
3. ``status == "error"`` → ``had_error``; ``status == "success"`` → ``notify_idle()``

An all-internal event is invisible: no send and no typing change, so the
indicator keeps running while the agent thinks.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from juniper.logger import logger
from juniper.router import strip_internal_tags
from juniper.types import AgentOutput, OutputState


@dataclass
class StreamingDeps:
    channel: Any  # send_message(jid, text); set_typing(jid, bool) if supported
    chat_jid: str
    group_name: str
    reset_idle_timer: Callable[[], None]
    notify_idle: Callable[[], None]


def _unpack(output: AgentOutput | Mapping[str, Any]) -> tuple[Any, str | None, str | None]:
    if isinstance(output, AgentOutput):
        return output.result, output.status, output.error
    return output.get("result"), output.get("status"), output.get("error")


def stringify_result(result: Any) -> str:
    """Strings pass through; anything else becomes compact JSON in its own key order."""
    if isinstance(result, str):
        return result
    return json.dumps(result, separators=(",", ":"), ensure_ascii=False)


class StreamingHandler:
    """Callable per-turn output handler. ``await handler(output)``."""

    def __init__(self, deps: StreamingDeps) -> None:
        self._deps = deps
        self._state = OutputState()

    def state(self) -> OutputState:
        return replace(self._state)

    async def __call__(self, output: AgentOutput | Mapping[str, Any]) -> None:
        deps = self._deps
        result, status, error = _unpack(output)

        if result is not None and result != "":
            raw = stringify_result(result)
            text = strip_internal_tags(raw)
            logger.debug(
                "Agent output",
                group=deps.group_name,
                chars=len(raw),
                visible_chars=len(text),
            )
            if text:
                await deps.channel.send_message(deps.chat_jid, text)
                set_typing = getattr(deps.channel, "set_typing", None)
                if set_typing is not None:
                    await set_typing(deps.chat_jid, False)
                self._state.output_sent_to_user = True
            deps.reset_idle_timer()

        if status == "error":
            self._state.had_error = True
            logger.warning("Agent reported error", group=deps.group_name, err=error)
        elif status == "success":
            deps.notify_idle()


def create_streaming_handler(deps: StreamingDeps) -> StreamingHandler:
    return StreamingHandler(deps)

"""Channel implementations, one module per external platform."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from juniper.channels.gmail import GmailChannel
from juniper.channels.telegram import TelegramBotPool, TelegramChannel
from juniper.logger import logger

if TYPE_CHECKING:
    from juniper.config import Settings
    from juniper.types import Channel, OnChatMetadata, OnInboundMessage, RegisteredGroup


def build_channels(
    settings: Settings,
    *,
    on_message: OnInboundMessage | None = None,
    on_chat_metadata: OnChatMetadata | None = None,
    registered_groups: Callable[[], dict[str, RegisteredGroup]] | None = None,
) -> list[Channel]:
    """Instantiate every channel whose credentials are configured.

    Inbound callbacks are only wired into channels that receive; without
    *on_message* every channel is send-only.
    """
    channels: list[Channel] = []
    secrets = settings.secrets

    if secrets.telegram_bot_token is not None:
        tg = settings.telegram
        channels.append(
            TelegramChannel(
                secrets.telegram_bot_token.get_secret_value(),
                api_base=tg.api_base,
                max_message_length=tg.max_message_length,
                typing_refresh_s=tg.typing_refresh_s,
                request_timeout_s=tg.request_timeout_s,
                on_message=on_message if tg.receive else None,
                on_chat_metadata=on_chat_metadata,
                registered_groups=registered_groups,
                assistant_name=settings.agent.name,
                trigger_pattern=settings.trigger_pattern,
                poll_timeout_s=tg.poll_timeout_s,
                poll_retry_s=tg.poll_retry_s,
            )
        )

    em = settings.email
    if em.enabled:
        if secrets.gmail_access_token is None:
            logger.warning("Email channel enabled but no Gmail access token configured")
        else:
            channels.append(
                GmailChannel(
                    secrets.gmail_access_token.get_secret_value(),
                    api_base=em.api_base,
                    trigger_mode=em.trigger_mode,
                    trigger_value=em.trigger_value,
                    context_mode=em.context_mode,
                    poll_interval_s=em.poll_interval_ms / 1000,
                    max_results=em.max_results,
                    request_timeout_s=em.request_timeout_s,
                    on_message=on_message,
                    on_chat_metadata=on_chat_metadata,
                    registered_groups=registered_groups,
                )
            )
    return channels


def build_bot_pool(settings: Settings) -> TelegramBotPool | None:
    """Telegram sender pool, or None when no pool tokens are configured."""
    tokens = settings.secrets.telegram_pool_tokens
    if not tokens:
        return None
    tg = settings.telegram
    return TelegramBotPool(
        [t.get_secret_value() for t in tokens],
        api_base=tg.api_base,
        max_message_length=tg.max_message_length,
        request_timeout_s=tg.request_timeout_s,
        rename_delay_s=tg.pool_rename_delay_s,
    )


__all__ = [
    "GmailChannel",
    "TelegramBotPool",
    "TelegramChannel",
    "build_bot_pool",
    "build_channels",
]

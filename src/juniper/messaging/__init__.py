"""Agent output delivery."""

from juniper.messaging.streaming import (
    StreamingDeps,
    StreamingHandler,
    create_streaming_handler,
)

__all__ = ["StreamingDeps", "StreamingHandler", "create_streaming_handler"]

"""File-based IPC between group contexts and the gateway."""

from juniper.ipc._deps import IpcDeps
from juniper.ipc._handlers import dispatch
from juniper.ipc._quarantine import (
    QuarantineError,
    list_quarantined,
    move_to_error_dir,
    requeue,
)
from juniper.ipc._queue import IpcQueue, IpcQueueAlreadyRunning, IpcQueueHandle, TickStats
from juniper.ipc._write import write_ipc_message, write_ipc_task

__all__ = [
    "IpcDeps",
    "IpcQueue",
    "IpcQueueAlreadyRunning",
    "IpcQueueHandle",
    "QuarantineError",
    "TickStats",
    "dispatch",
    "list_quarantined",
    "move_to_error_dir",
    "requeue",
    "write_ipc_message",
    "write_ipc_task",
]

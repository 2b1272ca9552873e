"""File-backed IPC queue.

Each group drops JSON files into ``<ipc>/<group>/messages/`` (outbound chat
messages) or ``<ipc>/<group>/tasks/`` (admin commands). A tick sweeps every
group directory, authorizes each file against the sender's folder, delivers
it, and then deletes or quarantines it. The directory tree is the only
index: a file still present in an inbox is an undelivered attempt.

Polling drives the loop. With ``watch=True`` a watchdog observer (inotify /
FSEvents) wakes it early when a new file lands; a missed event only costs
one poll interval.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from watchdog.events import FileCreatedEvent, FileMovedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from juniper.config import ERRORS_DIR_NAME, Settings, get_settings
from juniper.ipc._deps import IpcDeps
from juniper.ipc._handlers import dispatch
from juniper.ipc._protocol import parse_ipc_file, parse_message
from juniper.ipc._quarantine import move_to_error_dir
from juniper.logger import logger
from juniper.utils import create_background_task

LANES = ("messages", "tasks")


class IpcQueueAlreadyRunning(RuntimeError):
    """start() was called on a queue whose poll loop is still alive."""


@dataclass
class TickStats:
    sent: int = 0
    blocked: int = 0
    dropped: int = 0
    quarantined: int = 0
    tasks: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.blocked + self.dropped + self.quarantined + self.tasks


class _IpcEventHandler(FileSystemEventHandler):
    """Watchdog handler that wakes the poll loop when an inbox file appears."""

    def __init__(self, ipc_dir: Path, loop: asyncio.AbstractEventLoop, wake: asyncio.Event) -> None:
        super().__init__()
        self._ipc_dir = ipc_dir
        self._loop = loop
        self._wake = wake

    def _wake_if_ipc(self, path_str: str) -> None:
        if not path_str.endswith(".json"):
            return
        try:
            parts = Path(path_str).relative_to(self._ipc_dir).parts
        except ValueError:
            return  # outside the IPC root
        # Expected: <group>/<messages|tasks>/<file>.json
        if len(parts) == 3 and parts[0] != ERRORS_DIR_NAME and parts[1] in LANES:
            self._loop.call_soon_threadsafe(self._wake.set)

    def on_created(self, event: Any) -> None:
        if isinstance(event, FileCreatedEvent):
            self._wake_if_ipc(event.src_path)

    def on_moved(self, event: Any) -> None:
        # Atomic writes (tmp → .json rename) generate moved events, not created
        if isinstance(event, FileMovedEvent):
            self._wake_if_ipc(event.dest_path)


class IpcQueueHandle:
    """Owner's handle on a running queue. Hold it; call ``stop()`` to shut down."""

    def __init__(self, queue: IpcQueue, task: asyncio.Task[None], observer: Any | None) -> None:
        self._queue = queue
        self._task = task
        self._observer = observer

    @property
    def running(self) -> bool:
        return not self._task.done()

    async def wait(self) -> None:
        await self._task

    async def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 2)
            self._observer = None
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        logger.info("IPC queue stopped", path=str(self._queue.ipc_dir))


class IpcQueue:
    def __init__(
        self,
        deps: IpcDeps,
        ipc_dir: Path,
        *,
        poll_interval: float,
        main_group_folder: str,
        quarantine_unauthorized: bool = False,
        watch: bool = False,
    ) -> None:
        self.ipc_dir = ipc_dir
        self._deps = deps
        self._poll_interval = poll_interval
        self._main_group_folder = main_group_folder
        self._quarantine_unauthorized = quarantine_unauthorized
        self._watch = watch
        self._tick_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._handle: IpcQueueHandle | None = None

    @classmethod
    def from_settings(cls, deps: IpcDeps, settings: Settings | None = None) -> IpcQueue:
        s = settings or get_settings()
        return cls(
            deps,
            s.ipc_dir,
            poll_interval=s.poll_interval,
            main_group_folder=s.ipc.main_group_folder,
            quarantine_unauthorized=s.ipc.quarantine_unauthorized,
            watch=s.ipc.watch_filesystem,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> IpcQueueHandle:
        """Start the poll loop. Must be called from a running event loop."""
        if self._handle is not None and self._handle.running:
            raise IpcQueueAlreadyRunning(f"IPC queue for {self.ipc_dir} is already running")

        self.ipc_dir.mkdir(parents=True, exist_ok=True)
        observer = self._start_observer() if self._watch else None
        task = create_background_task(self._run(), name="ipc-queue")
        self._handle = IpcQueueHandle(self, task, observer)
        logger.info(
            "IPC queue started",
            path=str(self.ipc_dir),
            poll_interval=self._poll_interval,
            watch=self._watch,
        )
        return self._handle

    def _start_observer(self) -> Any:
        handler = _IpcEventHandler(self.ipc_dir, asyncio.get_running_loop(), self._wake)
        observer = Observer()
        observer.schedule(handler, str(self.ipc_dir), recursive=True)
        observer.daemon = True
        observer.start()
        return observer

    async def _run(self) -> None:
        while True:
            self._wake.clear()
            await self._scheduled_tick()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)

    async def _scheduled_tick(self) -> None:
        if self._tick_lock.locked():
            logger.debug("IPC tick still in progress, skipping scheduled tick")
            return
        await self.tick()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def tick(self) -> TickStats:
        """Process every pending file once. Never raises for per-file failures."""
        async with self._tick_lock:
            stats = TickStats()
            if not self.ipc_dir.is_dir():
                return stats
            try:
                group_folders = sorted(
                    f.name
                    for f in self.ipc_dir.iterdir()
                    if f.is_dir() and f.name != ERRORS_DIR_NAME
                )
            except OSError as exc:
                logger.error("Error reading IPC base directory", err=str(exc))
                return stats

            for source_group in group_folders:
                await self._drain(source_group, "messages", self._process_message_file, stats)
                await self._drain(source_group, "tasks", self._process_task_file, stats)

            if stats.total:
                logger.info("IPC tick complete", **asdict(stats))
            return stats

    async def _drain(
        self,
        source_group: str,
        lane: str,
        process: Callable[[Path, str, TickStats], Awaitable[None]],
        stats: TickStats,
    ) -> None:
        lane_dir = self.ipc_dir / source_group / lane
        try:
            if not lane_dir.is_dir():
                return
            files = sorted(f for f in lane_dir.iterdir() if f.suffix == ".json" and f.is_file())
        except OSError as exc:
            logger.error(
                f"Error reading IPC {lane} directory",
                err=str(exc),
                source_group=source_group,
            )
            return
        for file_path in files:
            await process(file_path, source_group, stats)

    def is_authorized(self, source_group: str, chat_jid: str) -> bool:
        """Main may address any JID; other groups only their own registered JID."""
        if source_group == self._main_group_folder:
            return True
        target = self._deps.registered_groups().get(chat_jid)
        return target is not None and target.folder == source_group

    async def _process_message_file(
        self, file_path: Path, source_group: str, stats: TickStats
    ) -> None:
        try:
            message = parse_message(parse_ipc_file(file_path))
            if message is None:
                file_path.unlink()
                stats.dropped += 1
                return

            if not self.is_authorized(source_group, message.chat_jid):
                logger.warning(
                    "Unauthorized IPC message attempt blocked",
                    chat_jid=message.chat_jid,
                    source_group=source_group,
                )
                stats.blocked += 1
                if self._quarantine_unauthorized:
                    self._quarantine(source_group, file_path, stats, count=False)
                else:
                    file_path.unlink()
                return

            if message.sender:
                await self._deps.send_pool_message(
                    message.chat_jid, message.text, message.sender, source_group
                )
            else:
                await self._deps.send_message(message.chat_jid, message.text)
            file_path.unlink()
            stats.sent += 1
            logger.info(
                "IPC message sent",
                chat_jid=message.chat_jid,
                source_group=source_group,
            )
        except Exception as exc:
            logger.error(
                "Error processing IPC message",
                file=file_path.name,
                source_group=source_group,
                err=str(exc),
            )
            self._quarantine(source_group, file_path, stats)

    async def _process_task_file(
        self, file_path: Path, source_group: str, stats: TickStats
    ) -> None:
        try:
            data = parse_ipc_file(file_path)
            await dispatch(data, source_group, source_group == self._main_group_folder, self._deps)
            file_path.unlink()
            stats.tasks += 1
        except Exception as exc:
            logger.error(
                "Error processing IPC task",
                file=file_path.name,
                source_group=source_group,
                err=str(exc),
            )
            self._quarantine(source_group, file_path, stats)

    def _quarantine(
        self, source_group: str, file_path: Path, stats: TickStats, *, count: bool = True
    ) -> None:
        """Move *file_path* to errors/. ``count=False`` when already tallied as blocked."""
        if not file_path.exists():
            return  # already consumed; nothing left to quarantine
        try:
            move_to_error_dir(self.ipc_dir, source_group, file_path)
            if count:
                stats.quarantined += 1
        except OSError as exc:
            logger.error(
                "Failed to quarantine IPC file",
                file=file_path.name,
                source_group=source_group,
                err=str(exc),
            )

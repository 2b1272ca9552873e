"""Quarantine lane: terminal storage for IPC files that failed.

Files land in ``<ipc>/errors/<group>-<original name>``. Nothing under
errors/ is ever re-processed automatically; ``requeue`` is the operator
path back into a group inbox.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from juniper.config import ERRORS_DIR_NAME
from juniper.logger import logger


class QuarantineError(Exception):
    """A quarantine operation could not be completed."""


def _unique_target(error_dir: Path, name: str) -> Path:
    target = error_dir / name
    if not target.exists():
        return target
    stem, suffix = target.stem, target.suffix
    n = 1
    while (error_dir / f"{stem}-{n}{suffix}").exists():
        n += 1
    return error_dir / f"{stem}-{n}{suffix}"


def move_to_error_dir(ipc_dir: Path, source_group: str, file_path: Path) -> Path:
    """Move a failed IPC file to errors/ and return its new path.

    A name already taken in errors/ gets a ``-1``, ``-2``, ... suffix before
    the extension, so earlier failures are never overwritten.
    """
    error_dir = ipc_dir / ERRORS_DIR_NAME
    error_dir.mkdir(parents=True, exist_ok=True)
    target = _unique_target(error_dir, f"{source_group}-{file_path.name}")
    file_path.rename(target)
    return target


def list_quarantined(ipc_dir: Path) -> list[Path]:
    error_dir = ipc_dir / ERRORS_DIR_NAME
    if not error_dir.is_dir():
        return []
    return sorted(p for p in error_dir.iterdir() if p.is_file())


def requeue(
    ipc_dir: Path,
    name: str,
    folders: Iterable[str],
    *,
    lane: str = "messages",
) -> Path:
    """Move ``errors/<name>`` back into its group's *lane* directory.

    The owning group is the longest folder in *folders* that prefixes
    *name* followed by ``-``. Returns the restored path.
    """
    source = ipc_dir / ERRORS_DIR_NAME / name
    if not source.is_file():
        raise QuarantineError(f"No quarantined file named {name!r}")

    candidates = [f for f in folders if name.startswith(f"{f}-") and len(name) > len(f) + 1]
    if not candidates:
        raise QuarantineError(f"Cannot determine source group for {name!r}")
    folder = max(candidates, key=len)

    target = ipc_dir / folder / lane / name[len(folder) + 1 :]
    if target.exists():
        raise QuarantineError(f"{target} already exists")
    target.parent.mkdir(parents=True, exist_ok=True)
    source.rename(target)
    logger.info("Requeued quarantined IPC file", file=name, source_group=folder, lane=lane)
    return target

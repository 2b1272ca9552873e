"""Entry point for `python -m juniper` / `juniper`.

Subcommands:
    juniper [run]                     Run the gateway (default)
    juniper errors                    List quarantined IPC files
    juniper requeue NAME [--lane L]   Move a quarantined file back to its inbox
    juniper send GROUP JID TEXT       Enqueue an outbound message from GROUP
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys


def _apply_logging_settings() -> None:
    # Must run before juniper.logger is first imported; env vars still win
    from juniper.config import get_settings

    cfg = get_settings().logging
    os.environ.setdefault("LOG_LEVEL", cfg.level)
    os.environ.setdefault("LOG_FORMAT", cfg.format)


def _run() -> None:
    from juniper.app import JuniperApp

    app = JuniperApp()
    asyncio.run(app.run())


def _errors() -> None:
    from juniper.config import get_settings
    from juniper.ipc import list_quarantined

    for path in list_quarantined(get_settings().ipc_dir):
        print(path.name)


def _known_folders() -> set[str]:
    from juniper.config import ERRORS_DIR_NAME, get_settings

    s = get_settings()
    folders = {g.folder for g in s.groups.values()} | {s.ipc.main_group_folder}
    if s.ipc_dir.is_dir():
        folders |= {p.name for p in s.ipc_dir.iterdir() if p.is_dir()}
    folders.discard(ERRORS_DIR_NAME)
    return folders


def _requeue(name: str, lane: str) -> None:
    from juniper.config import get_settings
    from juniper.ipc import QuarantineError, requeue

    try:
        target = requeue(get_settings().ipc_dir, name, _known_folders(), lane=lane)
    except QuarantineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(target)


def _send(group: str, jid: str, text: str, sender: str | None = None) -> None:
    from juniper.config import get_settings, is_valid_group_folder
    from juniper.ipc import write_ipc_message

    if not is_valid_group_folder(group):
        print(f"Error: invalid group folder {group!r}", file=sys.stderr)
        sys.exit(1)
    print(write_ipc_message(get_settings().ipc_dir, group, jid, text, sender=sender))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="juniper",
        description="Multi-channel assistant gateway",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the gateway (default)")
    sub.add_parser("errors", help="List quarantined IPC files")
    rq = sub.add_parser("requeue", help="Move a quarantined file back into its group inbox")
    rq.add_argument("name", help="File name under data/ipc/errors/")
    rq.add_argument("--lane", choices=("messages", "tasks"), default="messages")
    sd = sub.add_parser("send", help="Enqueue an outbound message as GROUP")
    sd.add_argument("group", help="Source group folder")
    sd.add_argument("jid", help="Target chat JID")
    sd.add_argument("text", help="Message text")
    sd.add_argument("--sender", help="Agent-team member to speak as (Telegram bot pool)")

    args = parser.parse_args(argv)
    _apply_logging_settings()

    match args.command:
        case "errors":
            _errors()
        case "requeue":
            _requeue(args.name, args.lane)
        case "send":
            _send(args.group, args.jid, args.text, args.sender)
        case _:
            _run()


if __name__ == "__main__":
    main()

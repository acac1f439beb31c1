from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from dotenv import load_dotenv

from tabpilot.actions import click, dialog, download, drag_drop, fill, keypress, spawn, upload
from tabpilot.config import DEFAULT_TIMEOUT_MS, STATE_DB_PATH, configure_logging
from tabpilot.errors import ActionError, ErrorKind
from tabpilot.session import SessionStore

log = logging.getLogger("tabpilot.cli")


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("target_id", help="CDP target id of the page to act on.")
    parser.add_argument("--session", dest="session_id", help="Session id registered with `session add`.")
    parser.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    parser.add_argument("--no-persist", dest="persist_state", action="store_false", help="Do not record the target snapshot.")


def _add_query_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--text", help="Match elements by visible text.")
    parser.add_argument("--selector", help="Match elements by CSS selector.")
    parser.add_argument("--contains", help="Narrow selector matches to those containing this text.")
    parser.add_argument("--visible-only", action="store_true")
    parser.add_argument("--index", help="Zero-based match index across frames.")
    parser.add_argument("--frame-scope", choices=["main", "all"], default=None)


def _add_wait_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wait-for-text")
    parser.add_argument("--wait-for-selector")
    parser.add_argument("--wait-network-idle", action="store_true")
    parser.add_argument("--wait-timeout-ms", type=int)


def _add_assert_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--proof", action="store_true", help="Attach a proof envelope to the report.")
    parser.add_argument("--assert-url-prefix")
    parser.add_argument("--assert-selector")
    parser.add_argument("--assert-text")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tabpilot", description="Run one action against a browser target over CDP.")
    parser.add_argument("--log-level", help="Logging level (default from TABPILOT_LOG_LEVEL).")
    parser.add_argument("--log-file", help="Also write logs to this file.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("click", help="Click an element by query or handle.")
    _add_target_args(p)
    _add_query_args(p)
    _add_wait_args(p)
    _add_assert_args(p)
    p.add_argument("--handle", help="Element handle from a previous report.")
    p.add_argument("--snapshot", action="store_true")
    p.add_argument("--delta", action="store_true")
    p.add_argument("--explain", action="store_true", help="Explain the selection without clicking.")

    p = sub.add_parser("fill", help="Set the value of an input-like element.")
    _add_target_args(p)
    _add_query_args(p)
    _add_wait_args(p)
    _add_assert_args(p)
    p.add_argument("--value", required=True)
    p.add_argument("--event", dest="events", action="append", help="DOM event to dispatch after filling (repeatable).")

    p = sub.add_parser("keypress", help="Press a key, optionally focusing a match first.")
    _add_target_args(p)
    _add_query_args(p)
    _add_wait_args(p)
    _add_assert_args(p)
    p.add_argument("--key", required=True)

    p = sub.add_parser("upload", help="Attach files to a file input or chooser.")
    _add_target_args(p)
    _add_wait_args(p)
    _add_assert_args(p)
    p.add_argument("--selector", required=True)
    p.add_argument("--file", dest="files", action="append", help="File to upload (repeatable).")
    p.add_argument("--submit-selector")
    p.add_argument("--expect-uploaded-filename")
    p.add_argument("--result-selector")
    p.add_argument("--result-text-contains")
    p.add_argument("--result-filename-regex")

    p = sub.add_parser("download", help="Click a match and capture the file it downloads.")
    _add_target_args(p)
    _add_query_args(p)
    _add_assert_args(p)
    p.add_argument("--out-dir")
    p.add_argument("--no-fetch-fallback", dest="fetch_fallback", action="store_false")
    p.add_argument("--allow-missing-download-event", action="store_true")

    p = sub.add_parser("dialog", help="Accept or dismiss the next JavaScript dialog.")
    _add_target_args(p)
    _add_query_args(p)
    _add_wait_args(p)
    _add_assert_args(p)
    p.add_argument("--action", choices=["accept", "dismiss"], default="accept")
    p.add_argument("--prompt-text")

    p = sub.add_parser("drag-drop", help="Drag one element onto another.")
    _add_target_args(p)
    _add_wait_args(p)
    _add_assert_args(p)
    p.add_argument("--from", dest="source", required=True)
    p.add_argument("--to", dest="destination", required=True)

    p = sub.add_parser("spawn", help="Click a match that opens a new tab or window.")
    _add_target_args(p)
    _add_query_args(p)
    p.add_argument("--proof", action="store_true")
    p.add_argument("--assert-title")

    p = sub.add_parser("session", help="Manage registered CDP endpoints.")
    session_sub = p.add_subparsers(dest="session_command", required=True)
    add = session_sub.add_parser("add", help="Register a CDP endpoint.")
    add.add_argument("cdp_origin")
    add.add_argument("--id", dest="session_id")
    session_sub.add_parser("list", help="List registered sessions.")
    return parser


_VERBS = {
    "click": click,
    "fill": fill,
    "keypress": keypress,
    "upload": upload,
    "download": download,
    "dialog": dialog,
    "drag-drop": drag_drop,
    "spawn": spawn,
}
_GLOBAL_ARGS = {"command", "log_level", "log_file"}


async def _run_session_command(args: argparse.Namespace) -> dict[str, Any]:
    store = SessionStore(STATE_DB_PATH)
    if args.session_command == "add":
        record = await store.register_session(args.cdp_origin, args.session_id)
        return {"ok": True, "session": record.to_dict()}
    sessions = await store.list_sessions()
    return {"ok": True, "sessions": [record.to_dict() for record in sessions]}


async def dispatch(args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "session":
        return await _run_session_command(args)
    verb = _VERBS[args.command]
    kwargs = {key: value for key, value in vars(args).items() if key not in _GLOBAL_ARGS}
    report = await verb(**kwargs)
    return report.to_dict()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    try:
        payload = asyncio.run(dispatch(args))
        code = 0
    except ActionError as exc:
        log.info("%s failed: %s %s", args.command, exc.code, exc)
        payload = exc.to_dict()
        code = 1
    except Exception as exc:
        log.exception("Unexpected failure in %s", args.command)
        payload = ActionError(ErrorKind.INTERNAL, f"unexpected error: {exc}").to_dict()
        code = 1
    print(json.dumps(payload, ensure_ascii=False))
    return code


if __name__ == "__main__":
    sys.exit(main())

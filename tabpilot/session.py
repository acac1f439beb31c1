from __future__ import annotations

# mypy: ignore-errors
import asyncio
import logging
import sqlite3
import time
from pathlib import Path
from urllib.parse import urlparse

import aiohttp

from tabpilot.config import CDP_PROBE_ENABLED, CDP_PROBE_TIMEOUT_S, DEFAULT_CDP_URL
from tabpilot.errors import ActionError, ErrorKind, SessionContext, query_invalid
from tabpilot.models import SessionHandle, SessionRecord, SessionSource, TargetSnapshot

log = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


def normalize_cdp_origin(raw: str) -> str:
    value = (raw or "").strip().rstrip("/")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https", "ws", "wss") or not parsed.netloc:
        raise query_invalid(
            f"CDP endpoint must be an http(s) or ws(s) URL: {raw}",
            hints=["Start Chrome with --remote-debugging-port and pass http://127.0.0.1:<port>"],
            reason="cdp_origin_invalid",
        )
    return value


async def probe_cdp_endpoint(cdp_origin: str, *, timeout_s: float = CDP_PROBE_TIMEOUT_S) -> dict:
    """Read ``/json/version`` from an http(s) CDP endpoint.

    WebSocket endpoints have no discovery document and are not probed.
    """
    if urlparse(cdp_origin).scheme not in ("http", "https"):
        return {}
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as http:
            async with http.get(f"{cdp_origin}/json/version") as resp:
                if resp.status != 200:
                    raise ActionError(
                        ErrorKind.SESSION_UNREACHABLE,
                        f"CDP endpoint answered HTTP {resp.status}: {cdp_origin}",
                        hints=["Check that the browser exposes --remote-debugging-port on this address"],
                        context=SessionContext(cdp_origin=cdp_origin),
                    )
                payload = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        raise ActionError(
            ErrorKind.SESSION_UNREACHABLE,
            f"CDP endpoint is not reachable: {cdp_origin}",
            hints=[
                "Check that the browser is running with remote debugging enabled",
                "Register the current endpoint with `session add`",
            ],
            context=SessionContext(cdp_origin=cdp_origin),
        ) from exc
    return payload if isinstance(payload, dict) else {}


class SessionStore:
    """sqlite-backed session and target records shared across invocations."""

    def __init__(
        self,
        path: Path,
        *,
        default_cdp_url: str | None = DEFAULT_CDP_URL,
        probe: bool = CDP_PROBE_ENABLED,
    ) -> None:
        self._path = path
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self.default_cdp_url = default_cdp_url
        self.probe = probe

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.to_thread(self._init_db)
            self._initialized = True

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def _init_db(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    cdp_origin TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    last_seen_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS targets (
                    target_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    title TEXT NOT NULL,
                    last_action_id TEXT,
                    last_action_kind TEXT,
                    last_action_at INTEGER,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_targets_session ON targets(session_id)"
            )
            conn.commit()

    async def register_session(self, cdp_origin: str, session_id: str | None = None) -> SessionRecord:
        await self.initialize()
        origin = normalize_cdp_origin(cdp_origin)
        return await asyncio.to_thread(self._register_session, origin, session_id)

    def _register_session(self, cdp_origin: str, session_id: str | None) -> SessionRecord:
        now = _now()
        with self._connect() as conn:
            if session_id is None:
                count = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
                n = count + 1
                while conn.execute(
                    "SELECT 1 FROM sessions WHERE session_id = ?", (f"s-{n}",)
                ).fetchone():
                    n += 1
                session_id = f"s-{n}"
            conn.execute(
                """
                INSERT INTO sessions (session_id, cdp_origin, created_at, last_seen_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    cdp_origin=excluded.cdp_origin,
                    last_seen_at=excluded.last_seen_at
                """,
                (session_id, cdp_origin, now, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        await self.initialize()
        return await asyncio.to_thread(self._get_session, session_id)

    def _get_session(self, session_id: str) -> SessionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    async def list_sessions(self) -> list[SessionRecord]:
        await self.initialize()
        return await asyncio.to_thread(self._list_sessions)

    def _list_sessions(self) -> list[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions ORDER BY created_at ASC, session_id ASC"
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    async def find_session_by_origin(self, cdp_origin: str) -> SessionRecord | None:
        await self.initialize()
        origin = normalize_cdp_origin(cdp_origin)
        return await asyncio.to_thread(self._find_session_by_origin, origin)

    def _find_session_by_origin(self, cdp_origin: str) -> SessionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions WHERE cdp_origin = ?
                ORDER BY last_seen_at DESC, created_at DESC, session_id DESC
                LIMIT 1
                """,
                (cdp_origin,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    async def touch_session(self, session_id: str) -> None:
        await asyncio.to_thread(self._touch_session, session_id)

    def _touch_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET last_seen_at = ? WHERE session_id = ?",
                (_now(), session_id),
            )
            conn.commit()

    async def get_target(self, target_id: str) -> TargetSnapshot | None:
        await self.initialize()
        return await asyncio.to_thread(self._get_target, target_id)

    def _get_target(self, target_id: str) -> TargetSnapshot | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM targets WHERE target_id = ?", (target_id,)
            ).fetchone()
        return self._row_to_target(row) if row else None

    async def save_target_snapshot(self, snapshot: TargetSnapshot) -> None:
        await self.initialize()
        if not snapshot.updated_at:
            snapshot.updated_at = _now()
        await asyncio.to_thread(self._save_target_snapshot, snapshot)

    def _save_target_snapshot(self, snapshot: TargetSnapshot) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO targets (
                    target_id, session_id, url, title, last_action_id,
                    last_action_kind, last_action_at, updated_at
                ) VALUES (
                    :target_id, :session_id, :url, :title, :last_action_id,
                    :last_action_kind, :last_action_at, :updated_at
                )
                ON CONFLICT(target_id) DO UPDATE SET
                    session_id=excluded.session_id,
                    url=excluded.url,
                    title=excluded.title,
                    last_action_id=excluded.last_action_id,
                    last_action_kind=excluded.last_action_kind,
                    last_action_at=excluded.last_action_at,
                    updated_at=excluded.updated_at
                """,
                {
                    "target_id": snapshot.target_id,
                    "session_id": snapshot.session_id,
                    "url": snapshot.url,
                    "title": snapshot.title,
                    "last_action_id": snapshot.last_action_id,
                    "last_action_kind": snapshot.last_action_kind,
                    "last_action_at": snapshot.last_action_at,
                    "updated_at": snapshot.updated_at,
                },
            )
            conn.commit()

    async def resolve_session_for_action(
        self,
        session_hint: str | None,
        target_hint: str | None,
    ) -> tuple[SessionHandle, SessionSource]:
        await self.initialize()
        known_target = await self.get_target(target_hint) if target_hint else None

        if session_hint:
            record = await self.get_session(session_hint)
            if record is None:
                sessions = await self.list_sessions()
                raise ActionError(
                    ErrorKind.SESSION_NOT_FOUND,
                    f"Session {session_hint} not found",
                    hints=[
                        "List known sessions with `session list`",
                        "Register the browser endpoint with `session add <cdp-url>`",
                    ],
                    context=SessionContext(
                        requested_session_id=session_hint,
                        target_hint=target_hint,
                        known_sessions=len(sessions),
                    ),
                )
            if known_target is not None and known_target.session_id != record.session_id:
                raise query_invalid(
                    f"Target {target_hint} belongs to session {known_target.session_id}, not {record.session_id}",
                    hints=["Omit --session to use the session the target was last seen in"],
                    reason="session_target_mismatch",
                )
            source: SessionSource = "explicit"
        elif known_target is not None:
            record = await self.get_session(known_target.session_id)
            if record is None:
                raise ActionError(
                    ErrorKind.SESSION_NOT_FOUND,
                    f"Session {known_target.session_id} for target {target_hint} no longer exists",
                    hints=["Pass --session explicitly", "Register the browser endpoint with `session add <cdp-url>`"],
                    context=SessionContext(
                        requested_session_id=known_target.session_id,
                        target_hint=target_hint,
                    ),
                )
            source = "target-inferred"
        elif self.default_cdp_url:
            record = await self.find_session_by_origin(self.default_cdp_url)
            if record is None:
                record = await self.register_session(self.default_cdp_url)
            source = "implicit-new"
        else:
            raise query_invalid(
                "session is required when the target session cannot be inferred",
                hints=[
                    "Pass --session <id>",
                    "Set TABPILOT_CDP_URL to let tabpilot register the endpoint",
                ],
                reason="session_required",
            )

        if self.probe:
            await probe_cdp_endpoint(record.cdp_origin)
        await self.touch_session(record.session_id)
        log.debug("Resolved session %s (%s) for target %s", record.session_id, source, target_hint)
        return SessionHandle(session_id=record.session_id, cdp_origin=record.cdp_origin), source

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            session_id=row["session_id"],
            cdp_origin=row["cdp_origin"],
            created_at=row["created_at"],
            last_seen_at=row["last_seen_at"],
        )

    @staticmethod
    def _row_to_target(row: sqlite3.Row) -> TargetSnapshot:
        return TargetSnapshot(
            target_id=row["target_id"],
            session_id=row["session_id"],
            url=row["url"],
            title=row["title"],
            last_action_id=row["last_action_id"],
            last_action_kind=row["last_action_kind"],
            last_action_at=row["last_action_at"],
            updated_at=row["updated_at"],
        )

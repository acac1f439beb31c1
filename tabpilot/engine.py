from __future__ import annotations

# mypy: ignore-errors
import contextlib
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from tabpilot.cdp import CdpSession, read_page_target_id
from tabpilot.config import DEFAULT_TIMEOUT_MS, STATE_DB_PATH
from tabpilot.errors import ActionError, ErrorKind, TargetContext, query_invalid
from tabpilot.models import ActionKind, SessionHandle, SessionSource, TargetSnapshot
from tabpilot.pages import safe_page_title, settle_page
from tabpilot.session import SessionStore

log = logging.getLogger(__name__)

_TARGET_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")
_BASE36 = string.digits + string.ascii_lowercase

BrowserConnector = Callable[[str, int], Awaitable[tuple[Browser, Callable[[], Awaitable[None]]]]]


def sanitize_target_id(raw: str | None) -> str:
    value = (raw or "").strip()
    if not value or not _TARGET_ID_RE.match(value):
        raise query_invalid(
            "targetId must match [A-Za-z0-9._:-]+",
            hints=["Copy the target id from a previous report"],
            reason="target_id_invalid",
        )
    return value


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_action_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"a-{_base36(int(time.time() * 1000))}-{suffix}"


async def connect_over_cdp(cdp_origin: str, timeout_ms: int) -> tuple[Browser, Callable[[], Awaitable[None]]]:
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.connect_over_cdp(cdp_origin, timeout=timeout_ms)
    except Exception:
        with contextlib.suppress(Exception):
            await playwright.stop()
        raise

    async def disconnect() -> None:
        try:
            await browser.close()
        except Exception as exc:
            log.debug("Browser disconnect failed: %s", exc)
        try:
            await playwright.stop()
        except Exception as exc:
            log.debug("Playwright stop failed: %s", exc)

    return browser, disconnect


def _elapsed_ms(start: float | None, end: float | None) -> int:
    if start is None or end is None:
        return 0
    return max(0, int((end - start) * 1000))


@dataclass(slots=True)
class ActionTiming:
    total: int
    resolve_session: int
    connect_cdp: int
    action: int
    persist_state: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "resolveSession": self.resolve_session,
            "connectCdp": self.connect_cdp,
            "action": self.action,
            "persistState": self.persist_state,
        }


@dataclass(slots=True)
class ActionClock:
    started_at: float = field(default_factory=time.perf_counter)
    session_resolved_at: float | None = None
    connected_at: float | None = None
    action_done_at: float | None = None
    persisted_at: float | None = None

    def timing(self) -> ActionTiming:
        now = time.perf_counter()
        action_end = self.action_done_at or now
        return ActionTiming(
            total=_elapsed_ms(self.started_at, now),
            resolve_session=_elapsed_ms(self.started_at, self.session_resolved_at),
            connect_cdp=_elapsed_ms(self.session_resolved_at, self.connected_at),
            action=_elapsed_ms(self.connected_at, action_end),
            persist_state=_elapsed_ms(self.action_done_at, self.persisted_at),
        )


async def list_pages(browser: Browser) -> list[Page]:
    pages: list[Page] = []
    for context in browser.contexts:
        pages.extend(context.pages)
    return pages


async def resolve_target_page(
    browser: Browser,
    target_id: str,
    *,
    known_url: str | None = None,
) -> Page:
    seen: list[tuple[str, Page]] = []
    for page in await list_pages(browser):
        try:
            page_target_id = await read_page_target_id(page)
        except Exception as exc:
            log.debug("Skipping page while resolving target: %s", exc)
            continue
        if not page_target_id:
            continue
        if page_target_id == target_id:
            return page
        seen.append((page_target_id, page))

    replacement = None
    if known_url:
        same_url = [pid for pid, page in seen if page.url == known_url]
        if len(same_url) == 1:
            replacement = same_url[0]
    hints = []
    if replacement:
        hints.append(f"A page with the last known URL is open as target {replacement}")
    hints.append("List the open targets and retry with a current target id")
    raise ActionError(
        ErrorKind.TARGET_NOT_FOUND,
        f"Target {target_id} was not found in the session",
        hints=hints,
        context=TargetContext(
            requested_target_id=target_id,
            known_url=known_url,
            active_targets=len(seen),
            sample_target_ids=tuple(pid for pid, _ in seen[:6]),
            replacement_target_id=replacement,
        ),
    )


class ActionRun:
    """One engine invocation against one target.

    Resolves the session, connects over CDP, finds the target page and owns
    the raw CDP session. Everything is released on exit, whatever the outcome.
    """

    def __init__(
        self,
        *,
        kind: ActionKind,
        target_id: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        session_id: str | None = None,
        store: SessionStore | None = None,
        connector: BrowserConnector | None = None,
        persist_state: bool = True,
    ) -> None:
        self.kind = kind
        self.target_id = sanitize_target_id(target_id)
        self.timeout_ms = timeout_ms
        self.session_hint = (session_id or "").strip() or None
        self.store = store or SessionStore(Path(STATE_DB_PATH))
        self.persist_state = persist_state
        self.clock = ActionClock()
        self.action_id = new_action_id()
        self._connector = connector or connect_over_cdp
        self._disconnect: Callable[[], Awaitable[None]] | None = None
        self._cdp: CdpSession | None = None
        self.session: SessionHandle | None = None
        self.session_source: SessionSource | None = None
        self.browser: Browser | None = None
        self.page: Page | None = None

    @property
    def context(self) -> BrowserContext:
        return self.page.context

    async def __aenter__(self) -> ActionRun:
        try:
            self.session, self.session_source = await self.store.resolve_session_for_action(
                self.session_hint, self.target_id
            )
            self.clock.session_resolved_at = time.perf_counter()
            self.browser, self._disconnect = await self._connector(self.session.cdp_origin, self.timeout_ms)
            self.clock.connected_at = time.perf_counter()
            known = await self.store.get_target(self.target_id)
            self.page = await resolve_target_page(
                self.browser, self.target_id, known_url=known.url if known else None
            )
        except BaseException:
            await self.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    async def release(self) -> None:
        if self._cdp is not None:
            await self._cdp.detach()
            self._cdp = None
        if self._disconnect is not None:
            disconnect, self._disconnect = self._disconnect, None
            await disconnect()

    async def cdp(self) -> CdpSession:
        if self._cdp is None:
            self._cdp = await CdpSession.open(self.page)
        return self._cdp

    async def settle(self, page: Page | None = None) -> None:
        await settle_page(page or self.page, self.timeout_ms)

    async def title(self, page: Page | None = None) -> str:
        return await safe_page_title(page or self.page, self.timeout_ms)

    def action_done(self) -> None:
        if self.clock.action_done_at is None:
            self.clock.action_done_at = time.perf_counter()

    async def persist(self, *, url: str, title: str, target_id: str | None = None) -> ActionTiming:
        """Record the target snapshot and return the final phase timing."""
        self.action_done()
        if self.persist_state:
            now = int(time.time())
            await self.store.save_target_snapshot(
                TargetSnapshot(
                    target_id=target_id or self.target_id,
                    session_id=self.session.session_id,
                    url=url,
                    title=title,
                    last_action_id=self.action_id,
                    last_action_kind=self.kind,
                    last_action_at=now,
                    updated_at=now,
                )
            )
        self.clock.persisted_at = time.perf_counter()
        return self.clock.timing()

    def timing(self) -> ActionTiming:
        self.action_done()
        return self.clock.timing()

from __future__ import annotations

# mypy: ignore-errors
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from tabpilot.cdp import CdpSession
from tabpilot.config import POLL_INTERVAL_MS
from tabpilot.errors import ActionError, ErrorKind, WaitContext, query_invalid
from tabpilot.query import TargetQuery
from tabpilot.scripts import QUERY_OP_SCRIPT

WaitMode = Literal["text", "selector", "network-idle"]

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WaitSpec:
    mode: WaitMode
    value: str | None
    timeout_ms: int


@dataclass(slots=True)
class WaitResult:
    mode: WaitMode
    value: str | None
    timeout_ms: int
    elapsed_ms: int
    satisfied: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "value": self.value,
            "timeoutMs": self.timeout_ms,
            "elapsedMs": self.elapsed_ms,
            "satisfied": self.satisfied,
        }


class PollTimeout(Exception):
    def __init__(self, elapsed_ms: int) -> None:
        super().__init__(f"condition not met after {elapsed_ms}ms")
        self.elapsed_ms = elapsed_ms


def resolve_wait_timeout_ms(wait_timeout_ms: int | None, timeout_ms: int) -> int:
    if wait_timeout_ms is None:
        return timeout_ms
    if isinstance(wait_timeout_ms, bool) or not isinstance(wait_timeout_ms, int) or wait_timeout_ms <= 0:
        raise query_invalid("wait-timeout-ms must be a positive integer", reason="wait_timeout_invalid")
    return wait_timeout_ms


def parse_wait_after(
    *,
    text: str | None = None,
    selector: str | None = None,
    network_idle: bool = False,
    timeout_ms: int,
) -> WaitSpec | None:
    text = (text or "").strip() or None
    selector = (selector or "").strip() or None
    requested = [flag for flag in (text is not None, selector is not None, bool(network_idle)) if flag]
    if len(requested) > 1:
        raise query_invalid(
            "Provide at most one post-click wait: --wait-for-text, --wait-for-selector, or --wait-network-idle",
            reason="wait_conflict",
        )
    if text is not None:
        return WaitSpec(mode="text", value=text, timeout_ms=timeout_ms)
    if selector is not None:
        return WaitSpec(mode="selector", value=selector, timeout_ms=timeout_ms)
    if network_idle:
        return WaitSpec(mode="network-idle", value=None, timeout_ms=timeout_ms)
    return None


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    timeout_ms: int,
    interval_ms: int = POLL_INTERVAL_MS,
) -> int:
    """Await ``check`` until it returns true; return the elapsed milliseconds.

    Each check finishes before the next sleep starts, so iterations never
    overlap. Raises ``PollTimeout`` once the deadline passes.
    """
    started = time.monotonic()
    deadline = started + timeout_ms / 1000
    while True:
        if await check():
            return int((time.monotonic() - started) * 1000)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PollTimeout(int((time.monotonic() - started) * 1000))
        await asyncio.sleep(min(interval_ms / 1000, remaining))


def wait_timeout_error(
    spec: WaitSpec,
    *,
    elapsed_ms: int | None = None,
    frame_scope: str | None = None,
    query: TargetQuery | None = None,
) -> ActionError:
    hints = [f"Increase --wait-timeout-ms above {spec.timeout_ms}"]
    if spec.mode in ("text", "selector") and frame_scope == "main":
        hints.append("Wait conditions are checked in the main frame only; verify the content is not inside an iframe")
    hints.append("Inspect the page with a read-only probe before waiting")
    label = spec.value if spec.value is not None else spec.mode
    return ActionError(
        ErrorKind.WAIT_TIMEOUT,
        f"wait for {spec.mode} timed out: {label}",
        hints=hints,
        context=WaitContext(
            mode=spec.mode,
            value=spec.value,
            timeout_ms=spec.timeout_ms,
            elapsed_ms=elapsed_ms,
            frame_scope=frame_scope,
            query_mode=query.mode if query else None,
            query=query.query if query else None,
        ),
    )


async def wait_after_action(
    spec: WaitSpec | None,
    *,
    page: Page,
    cdp: CdpSession,
    frame_scope: str | None = None,
    query: TargetQuery | None = None,
) -> WaitResult | None:
    if spec is None:
        return None
    started = time.monotonic()

    if spec.mode == "network-idle":
        try:
            await page.wait_for_load_state("networkidle", timeout=spec.timeout_ms)
        except PlaywrightTimeoutError as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            raise wait_timeout_error(spec, elapsed_ms=elapsed, frame_scope=frame_scope, query=query) from exc
        return WaitResult(spec.mode, spec.value, spec.timeout_ms, int((time.monotonic() - started) * 1000))

    if spec.mode == "selector":
        await cdp.ensure_valid_selector(spec.value)
        payload = {"op": "wait-selector-visible", "waitSelector": spec.value}
    else:
        payload = {"op": "wait-text-visible", "waitText": spec.value}

    async def _check() -> bool:
        return bool(await cdp.evaluate(cdp.main_frame_id, QUERY_OP_SCRIPT, payload))

    try:
        elapsed = await poll_until(_check, timeout_ms=spec.timeout_ms)
    except PollTimeout as exc:
        raise wait_timeout_error(spec, elapsed_ms=exc.elapsed_ms, frame_scope=frame_scope, query=query) from exc
    log.debug("Wait for %s satisfied after %sms", spec.mode, elapsed)
    return WaitResult(spec.mode, spec.value, spec.timeout_ms, elapsed)

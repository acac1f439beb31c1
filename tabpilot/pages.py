from __future__ import annotations

# mypy: ignore-errors
import contextlib
import logging

from playwright.async_api import Page

from tabpilot.config import SETTLE_MAX_MS, SETTLE_MIN_MS, TITLE_RETRY_MAX_MS, TITLE_RETRY_MIN_MS

log = logging.getLogger(__name__)

_NAVIGATION_ERROR_MARKERS = (
    "Execution context was destroyed",
    "most likely because of a navigation",
    "Frame was detached",
    "Target closed",
    "has been closed",
)


def is_navigation_error(exc: BaseException) -> bool:
    message = str(exc)
    return any(marker in message for marker in _NAVIGATION_ERROR_MARKERS)


def clamp_ms(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


async def settle_page(page: Page, timeout_ms: int) -> None:
    """Best-effort wait for DOMContentLoaded after an action."""
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=clamp_ms(timeout_ms, SETTLE_MIN_MS, SETTLE_MAX_MS))
    except Exception as exc:
        log.debug("Settle after action skipped: %s", exc)


async def safe_page_title(page: Page, timeout_ms: int) -> str:
    try:
        return await page.title()
    except Exception as exc:
        if not is_navigation_error(exc):
            log.debug("Reading page title failed: %s", exc)
            return ""
    with contextlib.suppress(Exception):
        await page.wait_for_load_state(
            "domcontentloaded",
            timeout=clamp_ms(timeout_ms, TITLE_RETRY_MIN_MS, TITLE_RETRY_MAX_MS),
        )
    try:
        return await page.title()
    except Exception as exc:
        log.debug("Reading page title after navigation failed: %s", exc)
        return ""

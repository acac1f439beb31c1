from __future__ import annotations

# mypy: ignore-errors
import logging
from typing import Any

from playwright.async_api import Error as PlaywrightError, Page

from tabpilot.cdp import read_page_target_id
from tabpilot.engine import ActionRun
from tabpilot.errors import query_invalid
from tabpilot.pages import safe_page_title
from tabpilot.query import MatchPreview, QueryResolver, TargetQuery

log = logging.getLogger(__name__)


def clicked_dict(preview: MatchPreview | None, *, handle: str | None = None) -> dict[str, Any]:
    if preview is None:
        return {"index": None, "text": "", "visible": False, "selectorHint": None, "handle": handle}
    payload = preview.to_dict()
    payload["handle"] = handle
    return payload


def query_fields(query: TargetQuery) -> dict[str, Any]:
    return {
        "mode": query.mode,
        "selector": query.selector,
        "contains": query.contains,
        "visible_only": query.visible_only,
        "query": query.query,
    }


async def resolve_match(resolver: QueryResolver, requested_index: int | None, *, action: str) -> int:
    if resolver.query.mode == "selector":
        await resolver.cdp.ensure_valid_selector(resolver.query.selector)
    await resolver.summarize()
    return await resolver.select(requested_index, action=action)


async def click_match(page: Page, resolver: QueryResolver, picked: int) -> tuple[MatchPreview, str]:
    """Click a resolved match with a trusted mouse click, or in-page when no point is usable."""
    point = await resolver.click_point_at(picked)
    if point is not None:
        x, y, preview = point
        try:
            await page.mouse.click(x, y)
            return preview, "coordinate"
        except PlaywrightError as exc:
            log.info("Coordinate click at (%.1f, %.1f) failed, using DOM click: %s", x, y, exc)
    else:
        log.info("No click point for match %s, using DOM click", picked)
    preview = await resolver.dom_click_at(picked)
    if preview is None:
        raise resolver.mismatch_error(
            "Unable to click the matched element",
            "click_resolution_failed",
            requested_index=picked,
        )
    return preview, "dom"


def require_text(value: str | None, message: str, *, reason: str, allow_empty: bool = False) -> str:
    if value is None or (not allow_empty and not value.strip()):
        raise query_invalid(message, reason=reason)
    return value


async def describe_opened_page(pages_before: list[Page], pages_after: list[Page], timeout_ms: int) -> dict[str, Any]:
    opened = [page for page in pages_after if page not in pages_before]
    if not opened:
        return {"sameTarget": True, "openedTargetId": None, "openedUrl": None, "openedTitle": None}
    page = opened[-1]
    try:
        target_id = await read_page_target_id(page)
    except Exception as exc:
        log.debug("Opened page target id unavailable: %s", exc)
        target_id = None
    return {
        "sameTarget": False,
        "openedTargetId": target_id,
        "openedUrl": page.url,
        "openedTitle": await safe_page_title(page, timeout_ms),
    }


def run_fields(run: ActionRun) -> dict[str, Any]:
    return {
        "session_id": run.session.session_id,
        "session_source": run.session_source,
        "target_id": run.target_id,
    }

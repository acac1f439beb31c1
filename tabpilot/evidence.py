from __future__ import annotations

# mypy: ignore-errors
import logging
from dataclasses import dataclass, field
from typing import Any

from playwright.async_api import Error as PlaywrightError, Page

from tabpilot.cdp import CdpSession
from tabpilot.config import DELTA_FOCUS_TEXT_MAX, SNAPSHOT_TEXT_MAX
from tabpilot.errors import ActionError
from tabpilot.pages import safe_page_title
from tabpilot.query import QueryResolver
from tabpilot.scripts import BODY_TEXT_SCRIPT, DELTA_PROBE_SCRIPT
from tabpilot.wait import WaitResult, WaitSpec

log = logging.getLogger(__name__)

ARIA_ATTRIBUTES: tuple[str, ...] = (
    "aria-expanded",
    "aria-controls",
    "aria-hidden",
    "aria-modal",
    "aria-pressed",
    "aria-selected",
    "aria-checked",
    "aria-disabled",
)

ROLE_COUNT_KEYS: tuple[str, ...] = ("dialog", "alert", "status", "menu", "listbox")


@dataclass(slots=True)
class DeltaState:
    url: str
    title: str
    focus: dict[str, Any] = field(default_factory=dict)
    role_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "focus": {
                "selectorHint": self.focus.get("selectorHint"),
                "text": self.focus.get("text"),
                "textTruncated": bool(self.focus.get("textTruncated")),
            },
            "roleCounts": {key: int(self.role_counts.get(key) or 0) for key in ROLE_COUNT_KEYS},
        }


async def capture_delta_state(page: Page, cdp: CdpSession, timeout_ms: int) -> DeltaState:
    probe = await cdp.evaluate(cdp.main_frame_id, DELTA_PROBE_SCRIPT, {"focusTextMax": DELTA_FOCUS_TEXT_MAX})
    probe = probe if isinstance(probe, dict) else {}
    return DeltaState(
        url=page.url,
        title=await safe_page_title(page, timeout_ms),
        focus=probe.get("focus") or {},
        role_counts=probe.get("roleCounts") or {},
    )


def build_delta(
    before: DeltaState,
    after: DeltaState,
    aria_before: dict[str, Any] | None,
    aria_after: dict[str, Any] | None,
) -> dict[str, Any]:
    if aria_before is None and aria_after is None:
        return {"before": before.to_dict(), "after": after.to_dict(), "clickedAria": None}
    values_before = (aria_before or {}).get("values") or {}
    values_after = (aria_after or {}).get("values") or {}
    return {
        "before": before.to_dict(),
        "after": after.to_dict(),
        "clickedAria": {
            "detachedAfter": bool((aria_after or {}).get("detached", True)),
            "attributes": [
                {"name": name, "before": values_before.get(name), "after": values_after.get(name)}
                for name in ARIA_ATTRIBUTES
            ],
        },
    }


def wait_evidence(spec: WaitSpec | None, result: WaitResult | None) -> dict[str, Any]:
    if spec is None:
        return {
            "requested": False,
            "mode": None,
            "value": None,
            "timeoutMs": None,
            "elapsedMs": None,
            "satisfied": True,
        }
    return {
        "requested": True,
        "mode": spec.mode,
        "value": spec.value,
        "timeoutMs": spec.timeout_ms,
        "elapsedMs": result.elapsed_ms if result else None,
        "satisfied": bool(result.satisfied) if result else False,
    }


def build_proof_envelope(
    *,
    action: str,
    url_before: str,
    url_after: str,
    target_before: str,
    target_after: str,
    match_count: int | None,
    picked_index: int | None,
    wait: dict[str, Any],
    assertions: dict[str, Any] | None,
    count_after: int | None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "version": 1,
        "action": action,
        "urlBefore": url_before,
        "urlAfter": url_after,
        "urlChanged": url_before != url_after,
        "targetBefore": target_before,
        "targetAfter": target_after,
        "targetChanged": target_before != target_after,
        "matchCount": match_count,
        "pickedIndex": picked_index,
        "wait": wait,
        "assertions": assertions,
        "countAfter": count_after,
        "details": details or {},
    }


async def read_post_snapshot(cdp: CdpSession) -> dict[str, Any]:
    text = await cdp.evaluate(cdp.main_frame_id, BODY_TEXT_SCRIPT, SNAPSHOT_TEXT_MAX)
    return {"textPreview": str(text or "")}


async def read_count_after(resolver: QueryResolver) -> int | None:
    """Recount selector matches against the live frame tree; ``None`` on transient failure."""
    if resolver.query.mode != "selector":
        return None
    try:
        frame_ids = await resolver.cdp.live_frame_ids(resolver.frame_scope)
        return await resolver.count_in_frames(frame_ids)
    except (ActionError, PlaywrightError) as exc:
        log.debug("Count after action unavailable: %s", exc)
        return None

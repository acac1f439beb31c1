from __future__ import annotations

# mypy: ignore-errors
from dataclasses import dataclass, field
from typing import Any

from tabpilot.config import EXPLAIN_MAX_REJECTED
from tabpilot.query import MatchPreview, QueryResolver


@dataclass(slots=True)
class ExplainSelection:
    picked_index: int | None
    picked: MatchPreview | None
    reason: str
    rejected: list[dict[str, Any]] = field(default_factory=list)
    rejected_truncated: bool = False


def _rejection(global_index: int, entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": global_index,
        "reason": "not_visible",
        "visible": False,
        "text": str(entry.get("text") or ""),
        "selectorHint": entry.get("selectorHint"),
    }


async def explain_selection(
    resolver: QueryResolver,
    requested_index: int | None,
    *,
    max_rejected: int = EXPLAIN_MAX_REJECTED,
) -> ExplainSelection:
    """Dry-run the selection policy and report what it would pick and why."""
    frame_index = resolver.frame_index or await resolver.summarize()
    visible_only = resolver.query.visible_only

    if frame_index.match_count < 1:
        return ExplainSelection(None, None, "no_visible_match" if visible_only else "no_match")

    if requested_index is not None:
        if requested_index >= frame_index.match_count:
            return ExplainSelection(None, None, "index_out_of_range")
        preview = await resolver.preview_at(requested_index)
        if visible_only and (preview is None or not preview.visible):
            rejected = [
                {
                    "index": requested_index,
                    "reason": "not_visible",
                    "visible": False,
                    "text": preview.text if preview else "",
                    "selectorHint": preview.selector_hint if preview else None,
                }
            ]
            return ExplainSelection(None, None, "not_visible_at_index", rejected)
        return ExplainSelection(requested_index, preview, "requested_index")

    if not visible_only:
        return ExplainSelection(0, await resolver.preview_at(0), "first_match")

    picked_index = frame_index.first_visible()
    rejected: list[dict[str, Any]] = []
    truncated = False
    for summary, offset in frame_index.frames():
        if summary.raw_count < 1:
            continue
        holds_pick = picked_index is not None and offset <= picked_index < offset + summary.raw_count
        stop = picked_index - offset if holds_pick else summary.raw_count
        if stop > 0:
            scan = await resolver.invisible_in_frame(
                summary.frame_cdp_id,
                stop_exclusive=stop,
                max_rejected=max(0, max_rejected - len(rejected)),
            )
            for entry in scan.get("rejected") or []:
                rejected.append(_rejection(offset + int(entry.get("index", 0)), entry))
            truncated = truncated or bool(scan.get("rejectedTruncated"))
        if holds_pick:
            break

    if picked_index is None:
        return ExplainSelection(None, None, "no_visible_match", rejected, truncated)
    return ExplainSelection(
        picked_index,
        await resolver.preview_at(picked_index),
        "first_visible",
        rejected,
        truncated,
    )

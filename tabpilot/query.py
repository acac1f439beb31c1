from __future__ import annotations

# mypy: ignore-errors
import asyncio
import re
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any, Literal, Sequence

from tabpilot.cdp import CdpSession, FrameScope
from tabpilot.config import HANDLE_PREFIX
from tabpilot.errors import ActionError, internal_error, query_invalid
from tabpilot.scripts import QUERY_OP_SCRIPT

QueryMode = Literal["text", "selector"]

_HANDLE_ID_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True, slots=True)
class TargetQuery:
    mode: QueryMode
    query: str
    selector: str | None
    contains: str | None
    visible_only: bool = False

    def op_args(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "query": self.query,
            "selector": self.selector,
            "contains": self.contains,
        }


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_target_query(
    *,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
) -> TargetQuery:
    text = _clean(text)
    selector = _clean(selector)
    contains = _clean(contains)

    if text and contains:
        raise query_invalid("Use either --text or --contains, not both", reason="query_conflict")
    if text and selector:
        raise query_invalid(
            "Use --contains with --selector; --text cannot be combined with --selector",
            reason="query_conflict",
        )
    if selector:
        return TargetQuery(
            mode="selector",
            query=contains or selector,
            selector=selector,
            contains=contains,
            visible_only=visible_only,
        )
    needle = text or contains
    if not needle:
        raise query_invalid("Provide a query via --text, --contains, or --selector", reason="query_missing")
    return TargetQuery(mode="text", query=needle, selector=None, contains=None, visible_only=visible_only)


def parse_optional_target_query(
    *,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
) -> TargetQuery | None:
    if not (_clean(text) or _clean(selector) or _clean(contains)):
        return None
    return parse_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)


def parse_frame_scope(value: str | None) -> FrameScope:
    if value is None or not value.strip():
        return "main"
    scope = value.strip().lower()
    if scope not in ("main", "all"):
        raise query_invalid("frame-scope must be one of: main, all", reason="frame_scope_invalid")
    return scope


def parse_match_index(value: int | str | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise query_invalid("index must be a non-negative integer", reason="index_invalid")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if not value.isdigit():
            raise query_invalid("index must be a non-negative integer", reason="index_invalid")
        return int(value)
    if not isinstance(value, int) or value < 0:
        raise query_invalid("index must be a non-negative integer", reason="index_invalid")
    return value


def encode_handle(backend_node_id: int) -> str:
    return f"{HANDLE_PREFIX}{int(backend_node_id)}"


def parse_handle(handle: str) -> int:
    raw = (handle or "").strip()
    if not raw.startswith(HANDLE_PREFIX):
        raise query_invalid("Invalid element handle (unexpected prefix)", reason="handle_invalid")
    digits = raw[len(HANDLE_PREFIX):]
    if not _HANDLE_ID_RE.match(digits) or int(digits) <= 0:
        raise query_invalid("Invalid element handle (invalid backend node id)", reason="handle_invalid")
    return int(digits)


@dataclass(frozen=True, slots=True)
class FrameMatchSummary:
    frame_cdp_id: str
    raw_count: int
    first_visible_index: int | None


@dataclass(frozen=True, slots=True)
class FrameSlot:
    frame_cdp_id: str
    local_index: int
    frame_offset: int


class FrameIndex:
    """Global match numbering over the frames of one scope.

    Offsets are computed once; ``resolve`` and ``to_global`` are inverses over
    ``[0, match_count)``.
    """

    def __init__(self, summaries: Sequence[FrameMatchSummary]) -> None:
        self.summaries = tuple(summaries)
        self._offsets: list[int] = []
        total = 0
        for summary in self.summaries:
            self._offsets.append(total)
            total += max(0, summary.raw_count)
        self.match_count = total
        self._by_frame = {summary.frame_cdp_id: pos for pos, summary in enumerate(self.summaries)}

    @property
    def frame_count(self) -> int:
        return len(self.summaries)

    def resolve(self, global_index: int) -> FrameSlot:
        if global_index < 0 or global_index >= self.match_count:
            raise internal_error(
                f"global index {global_index} outside match set of {self.match_count}",
                op="frame-index",
            )
        # empty frames share their successor's offset; bisect_right lands past them
        pos = bisect_right(self._offsets, global_index) - 1
        summary = self.summaries[pos]
        offset = self._offsets[pos]
        return FrameSlot(summary.frame_cdp_id, global_index - offset, offset)

    def to_global(self, frame_cdp_id: str, local_index: int) -> int:
        pos = self._by_frame.get(frame_cdp_id)
        if pos is None or local_index < 0 or local_index >= self.summaries[pos].raw_count:
            raise internal_error(
                f"local index {local_index} not valid for frame",
                op="frame-index",
                frame_cdp_id=frame_cdp_id,
            )
        return self._offsets[pos] + local_index

    def first_visible(self) -> int | None:
        for summary, offset in zip(self.summaries, self._offsets):
            if summary.first_visible_index is not None:
                return offset + summary.first_visible_index
        return None

    def frames(self) -> list[tuple[FrameMatchSummary, int]]:
        return list(zip(self.summaries, self._offsets))


@dataclass(frozen=True, slots=True)
class MatchPreview:
    index: int
    visible: bool
    text: str
    selector_hint: str | None
    href: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "text": self.text,
            "visible": self.visible,
            "selectorHint": self.selector_hint,
        }


_MISMATCH_HINTS = {
    "no_match": "Check the query against the live page with a read-only probe",
    "no_visible_match": "Drop visible-only to allow hidden matches",
    "not_visible_at_index": "Pick another index or drop visible-only",
}
_EXPLAIN_HINT = "Run click with --explain to see why candidates were rejected"
_FRAME_SCOPE_HINT = "Retry with --frame-scope all to include embedded frames"


class QueryResolver:
    """Runs query operations against the frames of one CDP session."""

    def __init__(self, cdp: CdpSession, query: TargetQuery, frame_scope: FrameScope = "main") -> None:
        self.cdp = cdp
        self.query = query
        self.frame_scope = frame_scope
        self.frame_index: FrameIndex | None = None

    def _args(self, op: str, **extra: Any) -> dict[str, Any]:
        payload = {"op": op, **self.query.op_args()}
        payload.update(extra)
        return payload

    async def _summary_for(self, frame_id: str) -> FrameMatchSummary:
        raw = await self.cdp.evaluate(frame_id, QUERY_OP_SCRIPT, self._args("summary"))
        raw = raw if isinstance(raw, dict) else {}
        count = raw.get("rawCount")
        first_visible = raw.get("firstVisibleIndex")
        return FrameMatchSummary(
            frame_cdp_id=frame_id,
            raw_count=count if isinstance(count, int) and count > 0 else 0,
            first_visible_index=first_visible if isinstance(first_visible, int) else None,
        )

    async def summarize(self) -> FrameIndex:
        frame_ids = self.cdp.frame_ids_for_scope(self.frame_scope)
        summaries = await asyncio.gather(*(self._summary_for(frame_id) for frame_id in frame_ids))
        self.frame_index = FrameIndex(summaries)
        return self.frame_index

    async def count_in_frames(self, frame_ids: Sequence[str]) -> int:
        summaries = await asyncio.gather(*(self._summary_for(frame_id) for frame_id in frame_ids))
        return sum(summary.raw_count for summary in summaries)

    def _require_index(self) -> FrameIndex:
        if self.frame_index is None:
            raise internal_error("query resolved before summaries were read", op="frame-index")
        return self.frame_index

    async def _op_at(self, op: str, global_index: int, **extra: Any) -> Any:
        slot = self._require_index().resolve(global_index)
        return await self.cdp.evaluate(
            slot.frame_cdp_id,
            QUERY_OP_SCRIPT,
            self._args(op, index=slot.local_index, **extra),
        )

    @staticmethod
    def _preview(global_index: int, raw: Any) -> MatchPreview | None:
        if not isinstance(raw, dict) or raw.get("ok") is not True:
            return None
        return MatchPreview(
            index=global_index,
            visible=bool(raw.get("visible")),
            text=str(raw.get("text") or ""),
            selector_hint=raw.get("selectorHint"),
            href=raw.get("href"),
        )

    async def preview_at(self, global_index: int) -> MatchPreview | None:
        return self._preview(global_index, await self._op_at("preview", global_index))

    async def dom_click_at(self, global_index: int) -> MatchPreview | None:
        return self._preview(global_index, await self._op_at("click", global_index))

    async def focus_at(self, global_index: int) -> MatchPreview | None:
        return self._preview(global_index, await self._op_at("focus", global_index))

    async def click_point_at(self, global_index: int) -> tuple[float, float, MatchPreview] | None:
        raw = await self._op_at("click-point", global_index)
        preview = self._preview(global_index, raw)
        if preview is None:
            return None
        try:
            return float(raw["x"]), float(raw["y"]), preview
        except (KeyError, TypeError, ValueError):
            return None

    async def aria_at(self, global_index: int, names: Sequence[str]) -> dict[str, Any]:
        raw = await self._op_at("aria", global_index, attrNames=list(names))
        if not isinstance(raw, dict):
            return {"detached": True, "values": {name: None for name in names}}
        return raw

    async def fill_at(self, global_index: int, value: str, events: Sequence[str]) -> dict[str, Any]:
        raw = await self._op_at("fill", global_index, fillValue=value, fillEvents=list(events))
        return raw if isinstance(raw, dict) else {"filled": False, "valueLength": len(value), "eventsDispatched": []}

    async def invisible_in_frame(self, frame_cdp_id: str, *, stop_exclusive: int, max_rejected: int) -> dict[str, Any]:
        raw = await self.cdp.evaluate(
            frame_cdp_id,
            QUERY_OP_SCRIPT,
            self._args("invisible", stopExclusive=stop_exclusive, maxRejected=max_rejected),
        )
        if not isinstance(raw, dict):
            return {"rejected": [], "rejectedTruncated": False}
        return raw

    def mismatch_error(self, message: str, reason: str, *, requested_index: int | None = None) -> ActionError:
        frame_index = self._require_index()
        hints: list[str] = []
        if reason == "index_out_of_range" and frame_index.match_count > 0:
            hints.append(f"Use an index between 0 and {frame_index.match_count - 1}")
        elif reason in _MISMATCH_HINTS:
            hints.append(_MISMATCH_HINTS[reason])
        if self.frame_scope == "main" and reason in ("no_match", "no_visible_match"):
            hints.append(_FRAME_SCOPE_HINT)
        hints.append(_EXPLAIN_HINT)
        return query_invalid(
            message,
            hints=hints,
            reason=reason,
            query_mode=self.query.mode,
            query=self.query.query,
            visible_only=self.query.visible_only,
            frame_scope=self.frame_scope,
            frame_count=frame_index.frame_count,
            match_count=frame_index.match_count,
            requested_index=requested_index,
        )

    async def select(self, requested_index: int | None = None, *, action: str = "click") -> int:
        frame_index = self._require_index()
        visible_only = self.query.visible_only
        if frame_index.match_count < 1:
            if visible_only:
                raise self.mismatch_error(f"No visible element matched {action} query", "no_visible_match", requested_index=requested_index)
            raise self.mismatch_error(f"No element matched {action} query", "no_match", requested_index=requested_index)

        if requested_index is not None:
            if requested_index >= frame_index.match_count:
                raise self.mismatch_error(
                    f"index out of range: requested {requested_index}, matchCount {frame_index.match_count}",
                    "index_out_of_range",
                    requested_index=requested_index,
                )
            if visible_only:
                preview = await self.preview_at(requested_index)
                if preview is None or not preview.visible:
                    raise self.mismatch_error(
                        f"matched element at index {requested_index} is not visible",
                        "not_visible_at_index",
                        requested_index=requested_index,
                    )
            return requested_index

        if not visible_only:
            return 0
        picked = frame_index.first_visible()
        if picked is None:
            raise self.mismatch_error(f"No visible element matched {action} query", "no_visible_match")
        return picked

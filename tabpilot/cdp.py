from __future__ import annotations

# mypy: ignore-errors
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from playwright.async_api import Error as PlaywrightError, Page

from tabpilot.config import WORLD_NAME
from tabpilot.errors import internal_error, query_invalid
from tabpilot.scripts import SELECTOR_CHECK_SCRIPT

FrameScope = Literal["main", "all"]

log = logging.getLogger(__name__)

_CONTEXT_GONE_MARKERS = (
    "cannot find context with specified id",
    "execution context was destroyed",
    "inspected target navigated or closed",
)

_NO_ARG = object()


class _StaleWorld(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(slots=True)
class FrameNode:
    frame_id: str
    url: str = ""
    name: str = ""
    parent_id: str | None = None
    children: list[FrameNode] = field(default_factory=list)

    @classmethod
    def from_cdp(cls, payload: dict[str, Any], parent_id: str | None = None) -> FrameNode:
        frame = payload.get("frame") or {}
        node = cls(
            frame_id=str(frame.get("id") or ""),
            url=str(frame.get("url") or ""),
            name=str(frame.get("name") or ""),
            parent_id=parent_id,
        )
        for child in payload.get("childFrames") or []:
            node.children.append(cls.from_cdp(child, node.frame_id))
        return node

    def walk(self) -> list[FrameNode]:
        ordered: list[FrameNode] = [self]
        for child in sorted(self.children, key=lambda item: (item.url, item.name)):
            ordered.extend(child.walk())
        return ordered


def frame_ids_for_scope(tree: FrameNode, scope: FrameScope) -> list[str]:
    if scope == "main":
        return [tree.frame_id]
    return [node.frame_id for node in tree.walk()]


@dataclass(slots=True)
class WorldCache:
    """Isolated-world execution contexts keyed by frame id."""

    contexts: dict[str, int] = field(default_factory=dict)

    def get(self, frame_id: str) -> int | None:
        return self.contexts.get(frame_id)

    def put(self, frame_id: str, context_id: int) -> None:
        self.contexts[frame_id] = context_id

    def forget(self, frame_id: str) -> None:
        self.contexts.pop(frame_id, None)

    def __len__(self) -> int:
        return len(self.contexts)


@dataclass(slots=True)
class NodeDescription:
    selector_hint: str | None
    text: str
    attributes: dict[str, str]


def _is_context_gone(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _CONTEXT_GONE_MARKERS)


def _quad_center(quad: Any) -> tuple[float, float] | None:
    if not isinstance(quad, list) or len(quad) < 8:
        return None
    try:
        xs = [float(quad[i]) for i in (0, 2, 4, 6)]
        ys = [float(quad[i]) for i in (1, 3, 5, 7)]
    except (TypeError, ValueError):
        return None
    return sum(xs) / 4, sum(ys) / 4


def _selector_hint(node_name: str, attributes: dict[str, str]) -> str | None:
    tag = node_name.lower()
    if not tag or tag.startswith("#"):
        return None
    hint = tag
    if attributes.get("id"):
        hint += f"#{attributes['id']}"
    for name in attributes.get("class", "").split()[:2]:
        hint += f".{name}"
    return hint


class CdpSession:
    """A raw CDP session bound to one page for one invocation.

    The frame tree is read once when the session opens; isolated worlds are
    created lazily per frame and cached on this object only.
    """

    def __init__(self, session: Any, frame_tree: FrameNode) -> None:
        self._session = session
        self.frame_tree = frame_tree
        self.worlds = WorldCache()

    @classmethod
    async def open(cls, page: Page) -> CdpSession:
        session = await page.context.new_cdp_session(page)
        await session.send("Page.enable")
        await session.send("Runtime.enable")
        tree = await cls._read_frame_tree(session)
        return cls(session, tree)

    @staticmethod
    async def _read_frame_tree(session: Any) -> FrameNode:
        payload = await session.send("Page.getFrameTree")
        frame_tree = (payload or {}).get("frameTree")
        if not frame_tree or not (frame_tree.get("frame") or {}).get("id"):
            raise internal_error("CDP did not return a frame tree", op="Page.getFrameTree")
        return FrameNode.from_cdp(frame_tree)

    @property
    def main_frame_id(self) -> str:
        return self.frame_tree.frame_id

    def frame_ids_for_scope(self, scope: FrameScope) -> list[str]:
        return frame_ids_for_scope(self.frame_tree, scope)

    async def live_frame_ids(self, scope: FrameScope) -> list[str]:
        """Re-read the frame tree without replacing the snapshot taken at open."""
        tree = await self._read_frame_tree(self._session)
        return frame_ids_for_scope(tree, scope)

    async def send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        return await self._session.send(method, params or {})

    async def world_for(self, frame_id: str) -> int:
        cached = self.worlds.get(frame_id)
        if cached is not None:
            return cached
        try:
            payload = await self.send(
                "Page.createIsolatedWorld",
                {"frameId": frame_id, "worldName": WORLD_NAME, "grantUniveralAccess": False},
            )
        except PlaywrightError as exc:
            log.debug("Isolated world creation failed for frame %s: %s", frame_id, exc)
            raise internal_error(
                "Unable to create isolated world for frame",
                op="Page.createIsolatedWorld",
                frame_cdp_id=frame_id,
                detail=str(exc)[:240],
            ) from exc
        context_id = (payload or {}).get("executionContextId")
        if not isinstance(context_id, int) or context_id <= 0:
            raise internal_error(
                "CDP did not return an executionContextId",
                op="Page.createIsolatedWorld",
                frame_cdp_id=frame_id,
            )
        self.worlds.put(frame_id, context_id)
        return context_id

    async def evaluate(self, frame_id: str, script: str, arg: Any = _NO_ARG) -> Any:
        if arg is _NO_ARG:
            expression = f"({script})()"
        else:
            try:
                encoded = json.dumps(arg)
            except (TypeError, ValueError) as exc:
                raise query_invalid("evaluation arg must be JSON-serializable") from exc
            expression = f"({script})({encoded})"

        had_world = self.worlds.get(frame_id) is not None
        try:
            return await self._evaluate_in_world(frame_id, expression)
        except _StaleWorld as exc:
            if not had_world:
                raise internal_error(exc.message, op="Runtime.evaluate", frame_cdp_id=frame_id) from exc
            # the frame navigated since its world was cached; one fresh world is allowed
            log.debug("Isolated world for frame %s went stale, recreating", frame_id)
        try:
            return await self._evaluate_in_world(frame_id, expression)
        except _StaleWorld as exc:
            raise internal_error(exc.message, op="Runtime.evaluate", frame_cdp_id=frame_id) from exc

    async def _evaluate_in_world(self, frame_id: str, expression: str) -> Any:
        context_id = await self.world_for(frame_id)
        try:
            result = await self.send(
                "Runtime.evaluate",
                {
                    "expression": expression,
                    "contextId": context_id,
                    "returnByValue": True,
                    "awaitPromise": True,
                },
            )
        except PlaywrightError as exc:
            if _is_context_gone(str(exc)):
                self.worlds.forget(frame_id)
                raise _StaleWorld(str(exc)[:240]) from exc
            raise internal_error(
                "CDP evaluation failed",
                op="Runtime.evaluate",
                frame_cdp_id=frame_id,
                detail=str(exc)[:240],
            ) from exc

        details = (result or {}).get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            message = str(exception.get("description") or details.get("text") or "evaluation failed")[:240]
            if _is_context_gone(message):
                self.worlds.forget(frame_id)
                raise _StaleWorld(message)
            raise internal_error(message, op="Runtime.evaluate", frame_cdp_id=frame_id)
        return ((result or {}).get("result") or {}).get("value")

    async def ensure_valid_selector(self, selector: str, *, frame_id: str | None = None) -> None:
        outcome = await self.evaluate(frame_id or self.main_frame_id, SELECTOR_CHECK_SCRIPT, selector)
        if isinstance(outcome, dict) and outcome.get("ok") is True:
            return
        raise query_invalid(
            f"Invalid selector query: {selector}",
            hints=["Check the CSS selector syntax", "Use a text query instead of a selector"],
            reason="selector_invalid",
            query_mode="selector",
            query=selector,
        )

    async def click_backend_node(self, backend_node_id: int) -> tuple[float, float]:
        with contextlib.suppress(PlaywrightError):
            await self.send("DOM.enable")
        with contextlib.suppress(PlaywrightError):
            await self.send("DOM.scrollIntoViewIfNeeded", {"backendNodeId": backend_node_id})

        try:
            box = await self.send("DOM.getBoxModel", {"backendNodeId": backend_node_id})
        except PlaywrightError as exc:
            log.debug("DOM.getBoxModel failed for backend node %s: %s", backend_node_id, exc)
            box = None
        model = (box or {}).get("model") or {}
        point = _quad_center(model.get("content")) or _quad_center(model.get("border"))
        if point is None:
            raise query_invalid(
                "Unable to click handle: element has no box model",
                hints=["Re-read the page to obtain a fresh element handle"],
                reason="handle_not_rendered",
                query_mode="handle",
            )

        x, y = point
        await self.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y, "button": "none"})
        for event_type in ("mousePressed", "mouseReleased"):
            await self.send(
                "Input.dispatchMouseEvent",
                {"type": event_type, "x": x, "y": y, "button": "left", "clickCount": 1},
            )
        return x, y

    async def describe_backend_node(self, backend_node_id: int) -> NodeDescription:
        try:
            payload = await self.send(
                "DOM.describeNode",
                {"backendNodeId": backend_node_id, "depth": 0, "pierce": True},
            )
        except PlaywrightError as exc:
            log.debug("DOM.describeNode failed for backend node %s: %s", backend_node_id, exc)
            return NodeDescription(selector_hint=None, text="", attributes={})
        node = (payload or {}).get("node") or {}
        raw = node.get("attributes") or []
        attributes = {str(raw[i]): str(raw[i + 1]) for i in range(0, len(raw) - 1, 2)}
        text = attributes.get("aria-label") or attributes.get("value") or attributes.get("name") or ""
        return NodeDescription(
            selector_hint=_selector_hint(str(node.get("nodeName") or ""), attributes),
            text=" ".join(text.split())[:180],
            attributes=attributes,
        )

    async def detach(self) -> None:
        try:
            await self._session.detach()
        except Exception as exc:
            log.debug("CDP session detach failed: %s", exc)


async def read_page_target_id(page: Page) -> str | None:
    session = await page.context.new_cdp_session(page)
    try:
        info = await session.send("Target.getTargetInfo")
    finally:
        with contextlib.suppress(Exception):
            await session.detach()
    target_id = ((info or {}).get("targetInfo") or {}).get("targetId")
    return str(target_id) if target_id else None

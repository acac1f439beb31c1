"""In-memory browser, page and CDP doubles shared by the action tests.

``Runtime.evaluate`` expressions are recognised by the script they wrap and
answered from a tiny element list per frame, so the resolver, waits and
evidence code run unchanged against it.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from tabpilot import scripts
from tabpilot.session import SessionStore

INVALID_SELECTOR_MARKERS = ("[[", ">>>", "!!")


def _fold(value: str | None) -> str:
    return " ".join(str(value or "").split()).lower()


def selector_is_valid(selector: str | None) -> bool:
    text = str(selector or "")
    return bool(text.strip()) and not any(marker in text for marker in INVALID_SELECTOR_MARKERS)


class ScriptError(Exception):
    pass


@dataclass
class FakeElement:
    tag: str
    text: str = ""
    selectors: tuple[str, ...] = ()
    visible: bool = True
    href: str | None = None
    attrs: dict[str, str] = field(default_factory=dict)
    value: str = ""
    on_click: Callable[[Any], None] | None = None
    x: float | None = None
    y: float | None = None
    has_box: bool = True
    backend_node_id: int = 0
    clicks: int = 0

    def matches(self, selector: str) -> bool:
        return selector == self.tag or selector in self.selectors

    @property
    def hint(self) -> str:
        hint = self.tag
        if self.attrs.get("id"):
            hint += f"#{self.attrs['id']}"
        return hint

    def describe(self) -> dict[str, Any]:
        return {
            "visible": self.visible,
            "text": " ".join(self.text.split())[:180],
            "selectorHint": self.hint,
            "href": self.href,
        }


@dataclass
class FakeFrame:
    frame_id: str
    url: str = "https://example.test/"
    name: str = ""
    elements: list[FakeElement] = field(default_factory=list)
    children: list[FakeFrame] = field(default_factory=list)
    role_counts: dict[str, int] = field(default_factory=dict)
    body: str | None = None

    def walk(self) -> list[FakeFrame]:
        ordered = [self]
        for child in sorted(self.children, key=lambda item: (item.url, item.name)):
            ordered.extend(child.walk())
        return ordered

    def tree(self) -> dict[str, Any]:
        return {
            "frame": {"id": self.frame_id, "url": self.url, "name": self.name},
            "childFrames": [child.tree() for child in self.children],
        }

    def body_text(self) -> str:
        if self.body is not None:
            return self.body
        return " ".join(el.text for el in self.elements if el.visible)

    def collect(self, args: dict[str, Any]) -> list[FakeElement]:
        if (args.get("mode") or "selector") == "selector":
            selector = str(args.get("selector") or "")
            if not selector_is_valid(selector):
                raise ScriptError(f"SyntaxError: '{selector}' is not a valid selector")
            nodes = [el for el in self.elements if el.matches(selector)]
            contains = _fold(args.get("contains")) if args.get("contains") else None
            return [el for el in nodes if contains in _fold(el.text)] if contains else nodes
        needle = _fold(args.get("query"))
        exact = [el for el in self.elements if _fold(el.text) == needle]
        return [el for el in (exact or self.elements) if needle in _fold(el.text)]


def run_query_op(page: FakePage, frame: FakeFrame, args: dict[str, Any]) -> Any:
    op = args.get("op")
    if op == "wait-selector-visible":
        selector = str(args.get("waitSelector") or "")
        return any(el.visible and el.matches(selector) for el in frame.elements)
    if op == "wait-text-visible":
        needle = _fold(args.get("waitText"))
        return bool(needle) and needle in _fold(frame.body_text())

    matches = frame.collect(args)
    index = args.get("index")
    node = matches[index] if isinstance(index, int) and 0 <= index < len(matches) else None
    names = list(args.get("attrNames") or [])
    fill_value = args.get("fillValue") if isinstance(args.get("fillValue"), str) else ""

    if op == "summary":
        first = next((i for i, el in enumerate(matches) if el.visible), None)
        return {"rawCount": len(matches), "firstVisibleIndex": first}
    if op == "invisible":
        stop = max(0, min(args.get("stopExclusive", len(matches)), len(matches)))
        cap = max(0, args.get("maxRejected") or 0)
        rejected: list[dict[str, Any]] = []
        truncated = False
        for i in range(stop):
            if matches[i].visible:
                continue
            if len(rejected) >= cap:
                truncated = True
                break
            info = matches[i].describe()
            rejected.append({"index": i, "visible": False, "text": info["text"], "selectorHint": info["selectorHint"]})
        return {"rejected": rejected, "rejectedTruncated": truncated}
    if op == "aria":
        if node is None:
            return {"detached": True, "values": {name: None for name in names}}
        return {"detached": False, "values": {name: node.attrs.get(name) for name in names}}
    if op == "fill":
        if node is None or node.tag not in ("input", "textarea", "select"):
            return {"filled": False, "valueLength": len(fill_value), "eventsDispatched": []}
        node.value = fill_value
        page.focused = node
        return {"filled": True, "valueLength": len(fill_value), "eventsDispatched": list(args.get("fillEvents") or [])}
    if node is None:
        return {"ok": False}
    if op == "preview":
        return {"ok": True, **node.describe()}
    if op == "click":
        info = node.describe()
        page.click_element(node)
        return {"ok": True, **info}
    if op == "focus":
        page.focused = node
        return {"ok": True, **node.describe()}
    if op == "click-point":
        if not node.has_box:
            return {"ok": False}
        return {"ok": True, "x": node.x, "y": node.y, **node.describe()}
    return {"ok": False}


def _delta_probe(page: FakePage, frame: FakeFrame, args: dict[str, Any]) -> dict[str, Any]:
    focus = {"selectorHint": None, "text": None, "textTruncated": False}
    if page.focused is not None:
        limit = args.get("focusTextMax") or 120
        raw = " ".join((page.focused.text or page.focused.value).split())
        focus = {"selectorHint": page.focused.hint, "text": raw[:limit] or None, "textTruncated": len(raw) > limit}
    counts = {key: frame.role_counts.get(key, 0) for key in ("dialog", "alert", "status", "menu", "listbox")}
    return {"focus": focus, "roleCounts": counts}


def _body_text(page: FakePage, frame: FakeFrame, max_chars: int) -> str:
    text = " ".join(frame.body_text().split())
    return text[:max_chars] if max_chars > 0 else text


def _active_text(page: FakePage, frame: FakeFrame, max_chars: int) -> str:
    if page.focused is None:
        return ""
    raw = page.focused.value if page.focused.tag in ("input", "textarea") else page.focused.text
    return " ".join(raw.split())[:max_chars]


_SCRIPT_HANDLERS = (
    (scripts.QUERY_OP_SCRIPT, run_query_op),
    (scripts.SELECTOR_CHECK_SCRIPT, lambda page, frame, arg: {"ok": selector_is_valid(arg), "errorName": None if selector_is_valid(arg) else "SyntaxError"}),
    (scripts.DELTA_PROBE_SCRIPT, _delta_probe),
    (scripts.BODY_TEXT_SCRIPT, _body_text),
    (scripts.ACTIVE_TEXT_SCRIPT, _active_text),
)


def evaluate_expression(page: FakePage, frame: FakeFrame, expression: str) -> Any:
    for script, handler in _SCRIPT_HANDLERS:
        prefix = f"({script})("
        if expression.startswith(prefix):
            raw = expression[len(prefix):-1]
            arg = json.loads(raw) if raw else None
            return handler(page, frame, arg)
    raise AssertionError(f"unexpected expression: {expression[:80]}")


class FakeCdpTransport:
    """Stands in for the Playwright ``CDPSession`` of one page."""

    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.detached = False

    async def send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        params = params or {}
        page = self.page
        page.cdp_calls.append(method)
        if method in ("Page.enable", "Runtime.enable", "DOM.enable", "DOM.scrollIntoViewIfNeeded"):
            return {}
        if method == "Target.getTargetInfo":
            return {"targetInfo": {"targetId": page.target_id, "url": page.url}}
        if method == "Page.getFrameTree":
            return {"frameTree": page.main_frame.tree()}
        if method == "Page.createIsolatedWorld":
            page.next_context_id += 1
            page.contexts[page.next_context_id] = params["frameId"]
            page.worlds_created.append(params["frameId"])
            return {"executionContextId": page.next_context_id}
        if method == "Runtime.evaluate":
            context_id = params["contextId"]
            if context_id in page.stale_contexts:
                raise PlaywrightError("Protocol error (Runtime.evaluate): Cannot find context with specified id")
            frame = page.frame_by_id(page.contexts[context_id])
            try:
                value = evaluate_expression(page, frame, params["expression"])
            except ScriptError as exc:
                return {"exceptionDetails": {"text": "Uncaught", "exception": {"description": str(exc)}}}
            return {"result": {"type": "object", "value": value}}
        if method == "DOM.getBoxModel":
            element = page.node(params["backendNodeId"])
            if element is None or not element.has_box:
                raise PlaywrightError("Protocol error (DOM.getBoxModel): Could not compute box model.")
            x, y = element.x, element.y
            quad = [x - 5, y - 5, x + 5, y - 5, x + 5, y + 5, x - 5, y + 5]
            return {"model": {"content": quad, "border": quad}}
        if method == "DOM.describeNode":
            element = page.node(params["backendNodeId"])
            if element is None:
                raise PlaywrightError("Protocol error (DOM.describeNode): No node with given id found")
            attributes: list[str] = []
            for name, value in {**element.attrs, "aria-label": element.text}.items():
                attributes.extend([name, value])
            return {"node": {"nodeName": element.tag.upper(), "attributes": attributes}}
        if method == "Input.dispatchMouseEvent":
            page.mouse_events.append((params["type"], params["x"], params["y"]))
            if params["type"] == "mouseReleased":
                page.hit(params["x"], params["y"])
            return {}
        raise AssertionError(f"unexpected CDP method {method}")

    async def detach(self) -> None:
        self.detached = True


class EventSource:
    def __init__(self) -> None:
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._listeners: dict[str, list[Callable[[Any], Any]]] = {}

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable[[Any], Any]) -> None:
        self._listeners.get(event, []).remove(callback)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback(payload)
        for waiter in self._waiters.pop(event, []):
            if not waiter.done():
                waiter.set_result(payload)

    async def wait_for_event(self, event: str, timeout: float | None = None) -> Any:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(event, []).append(waiter)
        try:
            return await asyncio.wait_for(waiter, (timeout or 30_000) / 1000)
        except asyncio.TimeoutError as exc:
            raise PlaywrightTimeoutError(f'Timeout {timeout}ms exceeded while waiting for event "{event}"') from exc


class FakeMouse:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.clicks: list[tuple[float, float]] = []

    async def click(self, x: float, y: float) -> None:
        self.clicks.append((x, y))
        self.page.hit(x, y)


class FakeKeyboard:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.pressed: list[str] = []

    async def press(self, key: str) -> None:
        self.pressed.append(key)
        focused = self.page.focused
        if focused is not None and len(key) == 1 and focused.tag in ("input", "textarea"):
            focused.value += key


class FakeLocator:
    def __init__(self, page: FakePage, selector: str, elements: list[FakeElement]) -> None:
        self.page = page
        self.selector = selector
        self.elements = elements

    async def count(self) -> int:
        return len(self.elements)

    @property
    def first(self) -> FakeLocator:
        return FakeLocator(self.page, self.selector, self.elements[:1])

    async def click(self, timeout: float | None = None) -> None:
        self.page.click_element(self.elements[0])

    async def evaluate(self, script: str) -> Any:
        assert script == scripts.IS_FILE_INPUT_SCRIPT
        element = self.elements[0]
        return element.tag == "input" and element.attrs.get("type") == "file"

    async def set_input_files(self, files: list[str], timeout: float | None = None) -> None:
        self.page.uploaded.append(list(files))

    async def inner_text(self, timeout: float | None = None) -> str:
        if not self.elements:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.selector}")
        return self.elements[0].text


class FakeDownload:
    def __init__(self, url: str, suggested_filename: str, payload: bytes) -> None:
        self.url = url
        self.suggested_filename = suggested_filename
        self.payload = payload

    async def save_as(self, path) -> None:
        with open(path, "wb") as handle:
            handle.write(self.payload)


class FakeResponse:
    def __init__(self, url: str, *, status: int = 200, headers: dict[str, str] | None = None, body: bytes = b"") -> None:
        self.url = url
        self.status = status
        self.headers = headers or {}
        self._body = body
        self.disposed = False

    async def body(self) -> bytes:
        return self._body

    async def dispose(self) -> None:
        self.disposed = True


class FakeRequestContext:
    def __init__(self) -> None:
        self.routes: dict[str, FakeResponse] = {}
        self.requested: list[str] = []

    async def get(self, url: str, timeout: float | None = None, fail_on_status_code: bool | None = None) -> FakeResponse:
        self.requested.append(url)
        if url not in self.routes:
            raise PlaywrightError(f"getaddrinfo ENOTFOUND for {url}")
        return self.routes[url]


class FakeFileChooser:
    def __init__(self, page: FakePage) -> None:
        self.page = page

    async def set_files(self, files: list[str], timeout: float | None = None) -> None:
        self.page.uploaded.append(list(files))


class FakeDialog:
    def __init__(self, type_: str, message: str, default_value: str = "") -> None:
        self.type = type_
        self.message = message
        self.default_value = default_value
        self.outcome: tuple[str, str | None] | None = None

    async def accept(self, prompt_text: str | None = None) -> None:
        self.outcome = ("accept", prompt_text)

    async def dismiss(self) -> None:
        self.outcome = ("dismiss", None)


class FakePage(EventSource):
    def __init__(
        self,
        target_id: str,
        *,
        url: str = "https://example.test/",
        title: str = "Example",
        frame: FakeFrame | None = None,
    ) -> None:
        super().__init__()
        self.target_id = target_id
        self.url = url
        self._title = title
        self.main_frame = frame or FakeFrame("F-main", url)
        self.context: FakeContext | None = None
        self.mouse = FakeMouse(self)
        self.keyboard = FakeKeyboard(self)
        self.request = FakeRequestContext()
        self.focused: FakeElement | None = None
        self.contexts: dict[int, str] = {}
        self.next_context_id = 0
        self.stale_contexts: set[int] = set()
        self.worlds_created: list[str] = []
        self.cdp_calls: list[str] = []
        self.mouse_events: list[tuple[str, float, float]] = []
        self.uploaded: list[list[str]] = []
        self.dragged: list[tuple[str, str]] = []
        self.load_states: list[str] = []
        self.network_idle = True
        self._layout()

    def _layout(self) -> None:
        n = 0
        for frame in self.main_frame.walk():
            for element in frame.elements:
                n += 1
                element.backend_node_id = element.backend_node_id or 100 + n
                if element.x is None:
                    element.x, element.y = 20.0 + 40.0 * n, 15.0

    def elements(self) -> list[FakeElement]:
        return [el for frame in self.main_frame.walk() for el in frame.elements]

    def frame_by_id(self, frame_id: str) -> FakeFrame:
        for frame in self.main_frame.walk():
            if frame.frame_id == frame_id:
                return frame
        raise AssertionError(f"unknown frame {frame_id}")

    def node(self, backend_node_id: int) -> FakeElement | None:
        return next((el for el in self.elements() if el.backend_node_id == backend_node_id), None)

    def click_element(self, element: FakeElement) -> None:
        element.clicks += 1
        if element.on_click is not None:
            element.on_click(self)

    def hit(self, x: float, y: float) -> None:
        for element in self.elements():
            if element.visible and element.has_box and abs(element.x - x) < 5 and abs(element.y - y) < 5:
                self.click_element(element)
                return

    async def title(self) -> str:
        return self._title

    async def wait_for_load_state(self, state: str = "load", timeout: float | None = None) -> None:
        self.load_states.append(state)
        if state == "networkidle" and not self.network_idle:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector, [el for el in self.main_frame.elements if el.matches(selector)])

    async def focus(self, selector: str, timeout: float | None = None) -> None:
        self.focused = None

    async def drag_and_drop(self, source: str, target: str, timeout: float | None = None) -> None:
        self.dragged.append((source, target))


class FakeContext(EventSource):
    def __init__(self, pages: list[FakePage] | None = None) -> None:
        super().__init__()
        self.pages: list[FakePage] = []
        self.transports: list[FakeCdpTransport] = []
        for page in pages or []:
            self.add_page(page)

    def add_page(self, page: FakePage) -> FakePage:
        page.context = self
        self.pages.append(page)
        return page

    async def new_cdp_session(self, page: FakePage) -> FakeCdpTransport:
        transport = FakeCdpTransport(page)
        self.transports.append(transport)
        return transport


class FakeBrowser:
    def __init__(self, context: FakeContext) -> None:
        self.contexts = [context]


def make_connector(browser: FakeBrowser, calls: list[tuple[str, int]] | None = None):
    async def connector(cdp_origin: str, timeout_ms: int):
        if calls is not None:
            calls.append((cdp_origin, timeout_ms))

        async def disconnect() -> None:
            return None

        return browser, disconnect

    return connector


def single_page_browser(page: FakePage) -> tuple[FakeBrowser, FakeContext]:
    context = FakeContext([page])
    return FakeBrowser(context), context


def failing_connector(calls: list[tuple[str, int]]):
    async def connector(cdp_origin: str, timeout_ms: int):
        calls.append((cdp_origin, timeout_ms))
        raise AssertionError("connector must not be called")

    return connector


def action_env(tmp_path, *pages: FakePage, calls: list[tuple[str, int]] | None = None):
    """Store, connector and context for running a verb against ``pages``."""
    context = FakeContext(list(pages))
    store = SessionStore(tmp_path / "state.sqlite3", default_cdp_url="http://127.0.0.1:9222", probe=False)
    return store, make_connector(FakeBrowser(context), calls), context

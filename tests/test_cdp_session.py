import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fake_browser import FakeContext, FakeElement, FakeFrame, FakePage  # noqa: E402
from tabpilot.cdp import CdpSession, FrameNode, read_page_target_id  # noqa: E402
from tabpilot.errors import ActionError, ErrorKind  # noqa: E402
from tabpilot.scripts import BODY_TEXT_SCRIPT  # noqa: E402


def _page() -> FakePage:
    main = FakeFrame(
        "F-main",
        elements=[FakeElement("button", "Save", attrs={"id": "save"})],
        children=[
            FakeFrame("F-z", url="https://z.test/", elements=[FakeElement("button", "Z")]),
            FakeFrame("F-a", url="https://a.test/", elements=[FakeElement("button", "A")]),
        ],
    )
    page = FakePage("T1", frame=main)
    FakeContext([page])
    return page


def test_frame_tree_order_is_url_sorted() -> None:
    page = _page()
    tree = FrameNode.from_cdp(page.main_frame.tree())
    assert [node.frame_id for node in tree.walk()] == ["F-main", "F-a", "F-z"]
    assert tree.children[0].parent_id == "F-main"


def test_scope_selects_frames() -> None:
    page = _page()
    cdp = asyncio.run(CdpSession.open(page))
    assert cdp.frame_ids_for_scope("main") == ["F-main"]
    assert cdp.frame_ids_for_scope("all") == ["F-main", "F-a", "F-z"]
    assert page.cdp_calls[:3] == ["Page.enable", "Runtime.enable", "Page.getFrameTree"]


def test_world_is_created_once_per_frame() -> None:
    page = _page()

    async def scenario():
        cdp = await CdpSession.open(page)
        first = await cdp.evaluate("F-main", BODY_TEXT_SCRIPT, 0)
        second = await cdp.evaluate("F-main", BODY_TEXT_SCRIPT, 4)
        return cdp, first, second

    cdp, first, second = asyncio.run(scenario())
    assert first == "Save"
    assert second == "Save"
    assert page.worlds_created == ["F-main"]
    assert len(cdp.worlds) == 1


def test_stale_world_is_recreated_once() -> None:
    page = _page()

    async def scenario():
        cdp = await CdpSession.open(page)
        await cdp.evaluate("F-main", BODY_TEXT_SCRIPT, 0)
        page.stale_contexts.add(cdp.worlds.get("F-main"))
        return await cdp.evaluate("F-main", BODY_TEXT_SCRIPT, 0)

    assert asyncio.run(scenario()) == "Save"
    assert page.worlds_created == ["F-main", "F-main"]


def test_non_json_argument_is_query_invalid() -> None:
    page = _page()

    async def scenario():
        cdp = await CdpSession.open(page)
        await cdp.evaluate("F-main", BODY_TEXT_SCRIPT, {1, 2})

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.kind is ErrorKind.QUERY_INVALID


def test_invalid_selector_is_reported() -> None:
    page = _page()

    async def scenario():
        cdp = await CdpSession.open(page)
        await cdp.ensure_valid_selector("div[[x")

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.message == "Invalid selector query: div[[x"
    assert excinfo.value.context.reason == "selector_invalid"


def test_click_backend_node_dispatches_mouse_events() -> None:
    page = _page()
    button = page.main_frame.elements[0]

    async def scenario():
        cdp = await CdpSession.open(page)
        point = await cdp.click_backend_node(button.backend_node_id)
        description = await cdp.describe_backend_node(button.backend_node_id)
        return point, description

    point, description = asyncio.run(scenario())
    assert point == (button.x, button.y)
    assert [event[0] for event in page.mouse_events] == ["mouseMoved", "mousePressed", "mouseReleased"]
    assert button.clicks == 1
    assert description.selector_hint == "button#save"
    assert description.text == "Save"


def test_click_backend_node_without_box() -> None:
    page = _page()
    page.main_frame.elements[0].has_box = False

    async def scenario():
        cdp = await CdpSession.open(page)
        await cdp.click_backend_node(page.main_frame.elements[0].backend_node_id)

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.message == "Unable to click handle: element has no box model"


def test_read_page_target_id_detaches() -> None:
    page = _page()
    assert asyncio.run(read_page_target_id(page)) == "T1"
    assert page.context.transports[-1].detached is True

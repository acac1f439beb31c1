import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fake_browser import (  # noqa: E402
    FakeDialog,
    FakeElement,
    FakeFileChooser,
    FakeFrame,
    FakePage,
    action_env,
    failing_connector,
)
from tabpilot.actions import dialog, drag_drop, fill, keypress, spawn, upload  # noqa: E402
from tabpilot.errors import ActionError, ErrorKind  # noqa: E402
from tabpilot.query import QueryResolver  # noqa: E402


def _page(*elements: FakeElement, target_id: str = "T1") -> FakePage:
    return FakePage(target_id, frame=FakeFrame("F-main", elements=list(elements)))


def test_fill_sets_value_and_dispatches_events(tmp_path: Path) -> None:
    field = FakeElement("input", "Email", selectors=("#email",))
    page = _page(field)
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(fill(target_id="T1", selector="#email", value="ada@example.test", proof=True, store=store, connector=connector))
    payload = report.to_dict()

    assert field.value == "ada@example.test"
    assert payload["valueLength"] == len("ada@example.test")
    assert payload["eventsDispatched"] == ["input", "change"]
    assert payload["proof"]["countAfter"] == 1
    assert payload["proofEnvelope"]["action"] == "fill"


def test_fill_allows_empty_value_but_not_missing(tmp_path: Path) -> None:
    field = FakeElement("textarea", "Notes", selectors=("#notes",), value="old")
    page = _page(field)
    store, connector, _ = action_env(tmp_path, page)

    asyncio.run(fill(target_id="T1", selector="#notes", value="", events=[], store=store, connector=connector))
    assert field.value == ""

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(fill(target_id="T1", selector="#notes", value=None, store=store, connector=failing_connector([])))
    assert excinfo.value.message == "value is required"


def test_fill_rejects_non_form_element(tmp_path: Path) -> None:
    page = _page(FakeElement("div", "Status", selectors=(".status",)))
    store, connector, _ = action_env(tmp_path, page)
    with pytest.raises(ActionError) as excinfo:
        asyncio.run(fill(target_id="T1", selector=".status", value="x", store=store, connector=connector))
    assert excinfo.value.message == "matched element is not fillable"
    assert excinfo.value.context.reason == "not_fillable"


def test_keypress_focuses_match_and_reports_text(tmp_path: Path) -> None:
    search = FakeElement("input", "Search", selectors=("#q",), value="tab")
    page = _page(search)
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(keypress(target_id="T1", key="s", selector="#q", store=store, connector=connector))
    payload = report.to_dict()

    assert page.keyboard.pressed == ["s"]
    assert payload["focused"]["selectorHint"] == "input"
    assert payload["resultText"] == "tabs"
    assert payload["matchCount"] == 1


def test_keypress_without_query(tmp_path: Path) -> None:
    page = _page(FakeElement("button", "Go"))
    store, connector, _ = action_env(tmp_path, page)
    report = asyncio.run(keypress(target_id="T1", key="Escape", store=store, connector=connector))
    payload = report.to_dict()
    assert payload["mode"] is None
    assert payload["focused"] is None
    assert payload["resultText"] == ""


def test_keypress_requires_key(tmp_path: Path) -> None:
    store, _, _ = action_env(tmp_path)
    with pytest.raises(ActionError) as excinfo:
        asyncio.run(keypress(target_id="T1", key=" ", store=store, connector=failing_connector([])))
    assert excinfo.value.message == "key is required"


def test_dialog_accepts_prompt_from_trigger(tmp_path: Path) -> None:
    prompt = FakeDialog("prompt", "Your name?", "guest")

    def ask(page: FakePage) -> None:
        page.emit("dialog", prompt)

    page = _page(FakeElement("button", "Rename", on_click=ask))
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(dialog(target_id="T1", action="accept", prompt_text="Ada", text="Rename", store=store, connector=connector))
    payload = report.to_dict()

    assert prompt.outcome == ("accept", "Ada")
    assert payload["dialog"] == {"type": "prompt", "message": "Your name?", "defaultValue": "guest", "action": "accept"}
    assert payload["trigger"]["pickedIndex"] == 0
    assert payload["trigger"]["clickMethod"] == "coordinate"


def test_dialog_dismiss_and_timeout(tmp_path: Path) -> None:
    confirm = FakeDialog("confirm", "Delete?")
    page = _page(FakeElement("button", "Delete", on_click=lambda p: p.emit("dialog", confirm)))
    store, connector, _ = action_env(tmp_path, page)

    asyncio.run(dialog(target_id="T1", action="dismiss", text="Delete", store=store, connector=connector))
    assert confirm.outcome == ("dismiss", None)

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(dialog(target_id="T1", timeout_ms=30, store=store, connector=connector))
    assert excinfo.value.kind is ErrorKind.WAIT_TIMEOUT
    assert excinfo.value.message == "dialog did not appear before timeout"


def test_dialog_rejects_unknown_action(tmp_path: Path) -> None:
    store, _, _ = action_env(tmp_path)
    with pytest.raises(ActionError) as excinfo:
        asyncio.run(dialog(target_id="T1", action="ignore", store=store, connector=failing_connector([])))
    assert excinfo.value.message == "dialog action must be one of: accept, dismiss"


def _opener(emit: bool):
    def open_page(page: FakePage) -> None:
        child = page.context.add_page(FakePage("T2", url="https://docs.test/guide", title="User Guide"))
        if emit:
            page.context.emit("page", child)

    return open_page


def test_spawn_reports_new_target(tmp_path: Path) -> None:
    page = _page(FakeElement("a", "Guide", on_click=_opener(emit=True)))
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(spawn(target_id="T1", text="Guide", assert_title="guide", proof=True, store=store, connector=connector))
    payload = report.to_dict()

    assert payload["targetId"] == "T2"
    assert payload["parentTargetId"] == "T1"
    assert payload["spawnMethod"] == "event"
    assert payload["title"] == "User Guide"
    assert payload["proof"]["titleMatched"] is True
    snapshot = asyncio.run(store.get_target("T2"))
    assert snapshot.url == "https://docs.test/guide"
    assert snapshot.last_action_kind == "spawn"


def test_spawn_finds_page_after_missed_event(tmp_path: Path) -> None:
    page = _page(FakeElement("a", "Guide", on_click=_opener(emit=False)))
    store, connector, _ = action_env(tmp_path, page)
    report = asyncio.run(spawn(target_id="T1", text="Guide", timeout_ms=40, store=store, connector=connector))
    assert report.to_dict()["spawnMethod"] == "page-scan"


def test_spawn_title_assertion_and_timeout(tmp_path: Path) -> None:
    page = _page(FakeElement("a", "Guide", on_click=_opener(emit=True)), FakeElement("a", "Nothing"))
    store, connector, _ = action_env(tmp_path, page)

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(spawn(target_id="T1", text="Guide", assert_title="Pricing", store=store, connector=connector))
    assert excinfo.value.message == 'spawn assertion failed: title did not include "Pricing"'

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(spawn(target_id="T1", text="Nothing", timeout_ms=30, store=store, connector=connector))
    assert excinfo.value.message == "spawn did not produce a new target before timeout"


def test_drag_drop(tmp_path: Path) -> None:
    page = _page(FakeElement("li", "Card", selectors=("#card",)), FakeElement("ul", "Done", selectors=("#done",)))
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(drag_drop(target_id="T1", source="#card", destination="#done", store=store, connector=connector))
    payload = report.to_dict()
    assert page.dragged == [("#card", "#done")]
    assert payload["fromCount"] == 1
    assert payload["result"] == "dragged"

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(drag_drop(target_id="T1", source="#card", destination="#bin", store=store, connector=connector))
    assert excinfo.value.message == "No element matched destination selector: #bin"

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(drag_drop(target_id="T1", source="", destination="#done", store=store, connector=failing_connector([])))
    assert excinfo.value.message == "from selector is required"


def _invoice(tmp_path: Path) -> Path:
    path = tmp_path / "invoice.pdf"
    path.write_bytes(b"%PDF-1.4")
    return path


def test_upload_direct_input_with_result_check(tmp_path: Path) -> None:
    invoice = _invoice(tmp_path)
    page = _page(
        FakeElement("input", "Attach", selectors=("#file",), attrs={"type": "file"}),
        FakeElement("div", "Uploaded: invoice.pdf (8 bytes)", selectors=("#uploads",)),
    )
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(
        upload(target_id="T1", selector="#file", files=[str(invoice)], result_selector="#uploads", store=store, connector=connector)
    )
    payload = report.to_dict()

    assert page.uploaded == [[str(invoice.resolve())]]
    assert payload["mode"] == "direct-input"
    assert payload["files"] == [{"name": "invoice.pdf", "size": 8, "type": "application/pdf"}]
    assert payload["uploadVerified"] is True
    assert payload["uploadedFilename"] == "invoice.pdf"
    assert payload["resultVerification"]["source"] == "selector"


def test_upload_through_file_chooser(tmp_path: Path) -> None:
    invoice = _invoice(tmp_path)
    button = FakeElement("button", "Choose file", selectors=("#pick",), on_click=lambda p: p.emit("filechooser", FakeFileChooser(p)))
    page = _page(button)
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(upload(target_id="T1", selector="#pick", files=[str(invoice)], store=store, connector=connector))
    payload = report.to_dict()
    assert payload["mode"] == "filechooser"
    assert payload["uploadVerified"] is False
    assert page.uploaded == [[str(invoice.resolve())]]


def test_upload_expected_filename_mismatch(tmp_path: Path) -> None:
    invoice = _invoice(tmp_path)
    page = _page(
        FakeElement("input", "Attach", selectors=("#file",), attrs={"type": "file"}),
        FakeElement("div", "Upload failed", selectors=("#uploads",)),
    )
    store, connector, _ = action_env(tmp_path, page)

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(
            upload(
                target_id="T1",
                selector="#file",
                files=[str(invoice)],
                result_selector="#uploads",
                expect_uploaded_filename="invoice.pdf",
                timeout_ms=40,
                store=store,
                connector=connector,
            )
        )
    assert excinfo.value.kind is ErrorKind.ASSERT_FAILED
    assert excinfo.value.context.assertion_id == "uploaded-filename"


def test_upload_expected_filename_checked_with_explicit_regex(tmp_path: Path) -> None:
    invoice = _invoice(tmp_path)
    page = _page(
        FakeElement("input", "Attach", selectors=("#file",), attrs={"type": "file"}),
        FakeElement("div", "Uploaded: other.pdf", selectors=("#uploads",)),
    )
    store, connector, _ = action_env(tmp_path, page)

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(
            upload(
                target_id="T1",
                selector="#file",
                files=[str(invoice)],
                result_selector="#uploads",
                result_filename_regex=r"\w+\.pdf",
                expect_uploaded_filename="invoice.pdf",
                timeout_ms=40,
                store=store,
                connector=connector,
            )
        )
    err = excinfo.value
    assert err.kind is ErrorKind.ASSERT_FAILED
    assert err.message == "uploaded filename assertion failed: expected invoice.pdf"
    assert err.context.actual == "Uploaded: other.pdf"


def test_upload_expected_filename_passes_with_explicit_regex(tmp_path: Path) -> None:
    invoice = _invoice(tmp_path)
    page = _page(
        FakeElement("input", "Attach", selectors=("#file",), attrs={"type": "file"}),
        FakeElement("div", "Uploaded: invoice.pdf", selectors=("#uploads",)),
    )
    store, connector, _ = action_env(tmp_path, page)

    report = asyncio.run(
        upload(
            target_id="T1",
            selector="#file",
            files=[str(invoice)],
            result_selector="#uploads",
            result_filename_regex=r"\w+\.pdf",
            expect_uploaded_filename="invoice.pdf",
            store=store,
            connector=connector,
        )
    )
    payload = report.to_dict()
    assert payload["uploadVerified"] is True
    assert payload["uploadedFilename"] == "invoice.pdf"
    assert payload["resultVerification"]["matchedFilenameRegex"] == "invoice.pdf"


def test_keypress_fails_when_match_cannot_be_focused(tmp_path: Path, monkeypatch) -> None:
    async def lost_focus(self, global_index):
        return None

    monkeypatch.setattr(QueryResolver, "focus_at", lost_focus)
    page = _page(FakeElement("input", "Search", selectors=("#q",)))
    store, connector, _ = action_env(tmp_path, page)

    with pytest.raises(ActionError) as excinfo:
        asyncio.run(keypress(target_id="T1", key="a", selector="#q", store=store, connector=connector))
    assert excinfo.value.message == "Unable to focus the matched element"
    assert excinfo.value.context.reason == "focus_failed"
    assert page.keyboard.pressed == []

from __future__ import annotations

# mypy: ignore-errors
import logging
from typing import Any, Literal

from playwright.async_api import Page

from tabpilot.actions._common import clicked_dict, click_match, resolve_match, run_fields
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import ActionError, ErrorKind, WaitContext, query_invalid
from tabpilot.evidence import build_proof_envelope, wait_evidence
from tabpilot.query import QueryResolver, parse_frame_scope, parse_match_index, parse_optional_target_query
from tabpilot.races import race_event
from tabpilot.reports import DialogReport
from tabpilot.session import SessionStore
from tabpilot.wait import parse_wait_after, resolve_wait_timeout_ms, wait_after_action

DialogAction = Literal["accept", "dismiss"]

log = logging.getLogger(__name__)


def parse_dialog_action(value: str | None) -> DialogAction:
    action = (value or "").strip().lower() or "accept"
    if action not in ("accept", "dismiss"):
        raise query_invalid("dialog action must be one of: accept, dismiss", reason="dialog_action_invalid")
    return action


async def _handle_next_dialog(page: Page, action: DialogAction, prompt_text: str | None, timeout_ms: int) -> dict[str, Any]:
    dialog = await page.wait_for_event("dialog", timeout=timeout_ms)
    info = {"type": dialog.type, "message": dialog.message, "defaultValue": dialog.default_value, "action": action}
    if action == "accept":
        if prompt_text is not None and dialog.type == "prompt":
            await dialog.accept(prompt_text)
        else:
            await dialog.accept()
    else:
        await dialog.dismiss()
    return info


async def dialog(
    *,
    target_id: str,
    action: str | None = None,
    prompt_text: str | None = None,
    session_id: str | None = None,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
    index: int | str | None = None,
    frame_scope: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    wait_for_text: str | None = None,
    wait_for_selector: str | None = None,
    wait_network_idle: bool = False,
    wait_timeout_ms: int | None = None,
    proof: bool = False,
    assert_url_prefix: str | None = None,
    assert_selector: str | None = None,
    assert_text: str | None = None,
    persist_state: bool = True,
    store: SessionStore | None = None,
    connector: BrowserConnector | None = None,
) -> DialogReport:
    """Handle the next JavaScript dialog, optionally clicking a trigger first.

    The dialog is answered while the trigger click is still in flight, since
    a modal dialog blocks the page until it is closed.
    """
    dialog_action = parse_dialog_action(action)
    trigger_query = parse_optional_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)
    scope = parse_frame_scope(frame_scope)
    requested_index = parse_match_index(index)
    wait_spec = parse_wait_after(
        text=wait_for_text,
        selector=wait_for_selector,
        network_idle=wait_network_idle,
        timeout_ms=resolve_wait_timeout_ms(wait_timeout_ms, timeout_ms),
    )
    assertions = parse_action_assertions(
        assert_url_prefix=assert_url_prefix,
        assert_selector=assert_selector,
        assert_text=assert_text,
    )

    async with ActionRun(
        kind="dialog",
        target_id=target_id,
        timeout_ms=timeout_ms,
        session_id=session_id,
        store=store,
        connector=connector,
        persist_state=persist_state,
    ) as run:
        page = run.page
        cdp = await run.cdp()
        url_before = page.url

        trigger = None
        picked = None
        resolver = None
        if trigger_query is not None:
            resolver = QueryResolver(cdp, trigger_query, scope)
            picked = await resolve_match(resolver, requested_index, action="dialog trigger")

            async def trigger():
                return await click_match(page, resolver, picked)

        outcome = await race_event(_handle_next_dialog(page, dialog_action, prompt_text, timeout_ms), trigger)
        if outcome.branch != "event":
            raise ActionError(
                ErrorKind.WAIT_TIMEOUT,
                "dialog did not appear before timeout",
                hints=[
                    "Check that the trigger opens a native alert, confirm or prompt",
                    "Increase --timeout-ms if the dialog opens after a delay",
                ],
                context=WaitContext(
                    mode="dialog",
                    timeout_ms=timeout_ms,
                    frame_scope=scope,
                    query_mode=trigger_query.mode if trigger_query else None,
                    query=trigger_query.query if trigger_query else None,
                ),
            )
        dialog_info = outcome.value
        log.info("Dialog %s handled with %s", dialog_info["type"], dialog_action)

        trigger_payload = None
        if outcome.trigger_result is not None:
            preview, click_method = outcome.trigger_result
            trigger_payload = {
                **clicked_dict(preview),
                "clickMethod": click_method,
                "matchCount": resolver.frame_index.match_count,
                "pickedIndex": picked,
            }

        await run.settle()
        wait_result = await wait_after_action(wait_spec, page=page, cdp=cdp, frame_scope=scope, query=trigger_query)
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)
        url_after = page.url
        title = await run.title()

        envelope = None
        if proof:
            envelope = build_proof_envelope(
                action="dialog",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=run.target_id,
                match_count=resolver.frame_index.match_count if resolver else None,
                picked_index=picked,
                wait=wait_evidence(wait_spec, wait_result),
                assertions=assertions_report,
                count_after=None,
                details={"dialog": dialog_info},
            )

        timing = await run.persist(url=url_after, title=title)
        return DialogReport(
            **run_fields(run),
            action_id=run.action_id,
            trigger=trigger_payload,
            dialog=dialog_info,
            url=url_after,
            title=title,
            timing=timing,
            wait=wait_result,
            assertions=assertions_report,
            proof_envelope=envelope,
        )

from __future__ import annotations

# mypy: ignore-errors
import logging

from tabpilot.actions._common import (
    click_match,
    clicked_dict,
    describe_opened_page,
    query_fields,
    resolve_match,
    run_fields,
)
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import ActionError, query_invalid
from tabpilot.evidence import (
    ARIA_ATTRIBUTES,
    build_delta,
    build_proof_envelope,
    capture_delta_state,
    read_count_after,
    read_post_snapshot,
    wait_evidence,
)
from tabpilot.explain import explain_selection
from tabpilot.query import (
    QueryResolver,
    encode_handle,
    parse_frame_scope,
    parse_handle,
    parse_match_index,
    parse_target_query,
)
from tabpilot.reports import ClickReport, ExplainReport
from tabpilot.session import SessionStore
from tabpilot.wait import parse_wait_after, resolve_wait_timeout_ms, wait_after_action

log = logging.getLogger(__name__)


def _validate_handle_mode(handle, *, text, selector, contains, index, visible_only) -> None:
    if not handle:
        return
    if text or selector or contains:
        raise query_invalid("Use either --handle or a query via --text/--selector/--contains", reason="handle_conflict")
    if index is not None:
        raise query_invalid("--index cannot be combined with --handle", reason="handle_conflict")
    if visible_only:
        raise query_invalid("--visible-only cannot be combined with --handle", reason="handle_conflict")


def _validate_explain(explain, *, handle, waits_requested, snapshot, delta, proof) -> None:
    if not explain:
        return
    if handle:
        raise query_invalid("--explain cannot be combined with --handle", reason="explain_conflict")
    if waits_requested or snapshot or delta or proof:
        raise query_invalid(
            "--explain cannot be combined with post-click wait options, --snapshot, --delta, or --proof",
            reason="explain_conflict",
        )


def _aria_or_detached(exc: ActionError) -> dict:
    log.debug("Clicked element ARIA read failed after click: %s", exc)
    return {"detached": True, "values": {name: None for name in ARIA_ATTRIBUTES}}


async def click(
    *,
    target_id: str,
    session_id: str | None = None,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
    index: int | str | None = None,
    handle: str | None = None,
    frame_scope: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    wait_for_text: str | None = None,
    wait_for_selector: str | None = None,
    wait_network_idle: bool = False,
    wait_timeout_ms: int | None = None,
    snapshot: bool = False,
    delta: bool = False,
    proof: bool = False,
    explain: bool = False,
    assert_url_prefix: str | None = None,
    assert_selector: str | None = None,
    assert_text: str | None = None,
    persist_state: bool = True,
    store: SessionStore | None = None,
    connector: BrowserConnector | None = None,
) -> ClickReport | ExplainReport:
    """Click one element chosen by query or by element handle.

    With ``explain`` the selection policy runs as a dry run and nothing is
    clicked. ``proof`` implies ``delta`` and ``snapshot``.
    """
    handle = (handle or "").strip() or None
    _validate_handle_mode(handle, text=text, selector=selector, contains=contains, index=index, visible_only=visible_only)
    waits_requested = bool((wait_for_text or "").strip() or (wait_for_selector or "").strip() or wait_network_idle)
    _validate_explain(explain, handle=handle, waits_requested=waits_requested, snapshot=snapshot, delta=delta, proof=proof)

    if proof:
        delta = snapshot = True
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
    backend_node_id = parse_handle(handle) if handle else None
    query = None if handle else parse_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)
    scope = parse_frame_scope(frame_scope)
    requested_index = parse_match_index(index)

    run = ActionRun(
        kind="click",
        target_id=target_id,
        timeout_ms=timeout_ms,
        session_id=session_id,
        store=store,
        connector=connector,
        persist_state=persist_state and not explain,
    )
    async with run:
        page = run.page
        cdp = await run.cdp()
        resolver = QueryResolver(cdp, query, scope) if query else None

        if resolver is not None and explain:
            if query.mode == "selector":
                await cdp.ensure_valid_selector(query.selector)
            frame_index = await resolver.summarize()
            selection = await explain_selection(resolver, requested_index)
            return ExplainReport(
                **run_fields(run),
                **query_fields(query),
                match_count=frame_index.match_count,
                requested_index=requested_index,
                picked_index=selection.picked_index,
                picked=selection.picked.to_dict() if selection.picked else None,
                rejected=selection.rejected,
                rejected_truncated=selection.rejected_truncated,
                reason=selection.reason,
                url=page.url,
                title=await run.title(),
                timing=run.timing(),
            )

        pages_before = list(run.context.pages)
        if resolver is not None:
            picked = await resolve_match(resolver, requested_index, action="click")
            match_count = resolver.frame_index.match_count
        else:
            picked, match_count = 0, 1

        url_before = page.url
        delta_before = await capture_delta_state(page, cdp, timeout_ms) if delta else None
        aria_before = await resolver.aria_at(picked, ARIA_ATTRIBUTES) if delta and resolver else None

        if resolver is not None:
            preview, click_method = await click_match(page, resolver, picked)
            clicked = clicked_dict(preview)
        else:
            description = await cdp.describe_backend_node(backend_node_id)
            await cdp.click_backend_node(backend_node_id)
            click_method = "backend-node"
            clicked = {
                "index": 0,
                "text": description.text,
                "visible": True,
                "selectorHint": description.selector_hint,
                "handle": encode_handle(backend_node_id),
            }
        log.info("Clicked match %s of %s via %s", picked, match_count, click_method)

        await run.settle()
        wait_result = await wait_after_action(wait_spec, page=page, cdp=cdp, frame_scope=scope, query=query)
        snapshot_payload = await read_post_snapshot(cdp) if snapshot else None
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)

        delta_payload = None
        if delta:
            delta_after = await capture_delta_state(page, cdp, timeout_ms)
            aria_after = None
            if resolver is not None:
                try:
                    aria_after = await resolver.aria_at(picked, ARIA_ATTRIBUTES)
                except ActionError as exc:
                    aria_after = _aria_or_detached(exc)
            delta_payload = build_delta(delta_before, delta_after, aria_before, aria_after)

        handoff = await describe_opened_page(pages_before, list(run.context.pages), timeout_ms)
        count_after = await read_count_after(resolver) if proof and resolver else None
        url_after = page.url
        title = await run.title()

        proof_payload = envelope = None
        if proof:
            proof_payload = {
                "urlChanged": url_before != url_after,
                "targetChanged": not handoff["sameTarget"],
                "waitSatisfied": wait_result.satisfied if wait_result else None,
                "snapshotCaptured": snapshot_payload is not None,
                "deltaCaptured": delta_payload is not None,
                "clickedText": clicked["text"],
                "clickedSelectorHint": clicked["selectorHint"],
                "finalUrl": url_after,
                "openedTargetId": handoff["openedTargetId"],
                "countAfter": count_after,
            }
            envelope = build_proof_envelope(
                action="click",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=handoff["openedTargetId"] or run.target_id,
                match_count=match_count,
                picked_index=picked,
                wait=wait_evidence(wait_spec, wait_result),
                assertions=assertions_report,
                count_after=count_after,
                details={"clickMethod": click_method, "clicked": clicked},
            )

        timing = await run.persist(url=url_after, title=title)
        return ClickReport(
            **run_fields(run),
            action_id=run.action_id,
            mode=query.mode if query else "handle",
            selector=query.selector if query else None,
            contains=query.contains if query else None,
            visible_only=query.visible_only if query else False,
            query=query.query if query else None,
            match_count=match_count,
            picked_index=picked,
            clicked=clicked,
            click_method=click_method,
            url=url_after,
            title=title,
            timing=timing,
            wait=wait_result,
            snapshot=snapshot_payload,
            proof=proof_payload,
            proof_envelope=envelope,
            assertions=assertions_report,
            delta=delta_payload,
            handoff=handoff,
        )

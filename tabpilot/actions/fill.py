from __future__ import annotations

# mypy: ignore-errors
import logging
from typing import Sequence

from tabpilot.actions._common import query_fields, resolve_match, run_fields
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import query_invalid
from tabpilot.evidence import build_proof_envelope, read_count_after, wait_evidence
from tabpilot.query import QueryResolver, parse_frame_scope, parse_match_index, parse_target_query
from tabpilot.reports import FillReport
from tabpilot.session import SessionStore
from tabpilot.wait import parse_wait_after, resolve_wait_timeout_ms, wait_after_action

DEFAULT_FILL_EVENTS: tuple[str, ...] = ("input", "change")

log = logging.getLogger(__name__)


async def fill(
    *,
    target_id: str,
    value: str | None,
    session_id: str | None = None,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
    index: int | str | None = None,
    frame_scope: str | None = None,
    events: Sequence[str] | None = None,
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
) -> FillReport:
    if value is None:
        raise query_invalid("value is required", reason="value_missing")
    query = parse_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)
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
    fill_events = [name.strip() for name in (events if events is not None else DEFAULT_FILL_EVENTS) if name.strip()]

    async with ActionRun(
        kind="fill",
        target_id=target_id,
        timeout_ms=timeout_ms,
        session_id=session_id,
        store=store,
        connector=connector,
        persist_state=persist_state,
    ) as run:
        page = run.page
        cdp = await run.cdp()
        resolver = QueryResolver(cdp, query, scope)
        picked = await resolve_match(resolver, requested_index, action="fill")
        url_before = page.url

        outcome = await resolver.fill_at(picked, value, fill_events)
        if not outcome.get("filled"):
            raise resolver.mismatch_error("matched element is not fillable", "not_fillable", requested_index=picked)
        log.info("Filled match %s with %s chars", picked, len(value))

        await run.settle()
        wait_result = await wait_after_action(wait_spec, page=page, cdp=cdp, frame_scope=scope, query=query)
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)
        url_after = page.url
        title = await run.title()

        proof_payload = envelope = None
        if proof:
            count_after = await read_count_after(resolver)
            proof_payload = {
                "action": "fill",
                "urlChanged": url_before != url_after,
                "waitSatisfied": wait_result.satisfied if wait_result else None,
                "finalUrl": url_after,
                "finalTitle": title,
                "queryMode": query.mode,
                "query": query.query,
                "selector": query.selector,
                "countAfter": count_after,
            }
            envelope = build_proof_envelope(
                action="fill",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=run.target_id,
                match_count=resolver.frame_index.match_count,
                picked_index=picked,
                wait=wait_evidence(wait_spec, wait_result),
                assertions=assertions_report,
                count_after=count_after,
                details={"valueLength": int(outcome.get("valueLength") or 0)},
            )

        timing = await run.persist(url=url_after, title=title)
        return FillReport(
            **run_fields(run),
            **query_fields(query),
            action_id=run.action_id,
            match_count=resolver.frame_index.match_count,
            picked_index=picked,
            value_length=int(outcome.get("valueLength") or len(value)),
            events_dispatched=list(outcome.get("eventsDispatched") or []),
            url=url_after,
            title=title,
            timing=timing,
            wait=wait_result,
            assertions=assertions_report,
            proof=proof_payload,
            proof_envelope=envelope,
        )

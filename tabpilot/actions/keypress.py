from __future__ import annotations

# mypy: ignore-errors
import contextlib

from tabpilot.actions._common import require_text, resolve_match, run_fields
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS, RESULT_TEXT_MAX
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.evidence import build_proof_envelope, wait_evidence
from tabpilot.query import QueryResolver, parse_frame_scope, parse_match_index, parse_optional_target_query
from tabpilot.reports import KeypressReport
from tabpilot.scripts import ACTIVE_TEXT_SCRIPT
from tabpilot.session import SessionStore
from tabpilot.wait import parse_wait_after, resolve_wait_timeout_ms, wait_after_action


async def keypress(
    *,
    target_id: str,
    key: str | None,
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
) -> KeypressReport:
    key = require_text(key, "key is required", reason="key_missing").strip()
    query = parse_optional_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)
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
        kind="keypress",
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

        resolver = picked = focused = None
        if query is not None:
            resolver = QueryResolver(cdp, query, scope)
            picked = await resolve_match(resolver, requested_index, action="keypress")
            preview = await resolver.focus_at(picked)
            if preview is None:
                raise resolver.mismatch_error(
                    "Unable to focus the matched element",
                    "focus_failed",
                    requested_index=picked,
                )
            focused = preview.to_dict()
        else:
            with contextlib.suppress(Exception):
                await page.focus("body", timeout=timeout_ms)

        await page.keyboard.press(key)
        await run.settle()
        result_text = ""
        with contextlib.suppress(Exception):
            result_text = str(await cdp.evaluate(cdp.main_frame_id, ACTIVE_TEXT_SCRIPT, RESULT_TEXT_MAX) or "")

        wait_result = await wait_after_action(wait_spec, page=page, cdp=cdp, frame_scope=scope, query=query)
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)
        url_after = page.url
        title = await run.title()
        match_count = resolver.frame_index.match_count if resolver else None

        envelope = None
        if proof:
            envelope = build_proof_envelope(
                action="keypress",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=run.target_id,
                match_count=match_count,
                picked_index=picked,
                wait=wait_evidence(wait_spec, wait_result),
                assertions=assertions_report,
                count_after=None,
                details={"key": key, "resultText": result_text},
            )

        timing = await run.persist(url=url_after, title=title)
        return KeypressReport(
            **run_fields(run),
            action_id=run.action_id,
            key=key,
            mode=query.mode if query else None,
            selector=query.selector if query else None,
            query=query.query if query else None,
            match_count=match_count,
            picked_index=picked,
            focused=focused,
            result_text=result_text,
            url=url_after,
            title=title,
            timing=timing,
            wait=wait_result,
            assertions=assertions_report,
            proof_envelope=envelope,
        )

from __future__ import annotations

# mypy: ignore-errors
from tabpilot.actions._common import require_text, run_fields
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import query_invalid
from tabpilot.evidence import build_proof_envelope, wait_evidence
from tabpilot.reports import DragDropReport
from tabpilot.session import SessionStore
from tabpilot.wait import parse_wait_after, resolve_wait_timeout_ms, wait_after_action


async def drag_drop(
    *,
    target_id: str,
    source: str | None,
    destination: str | None,
    session_id: str | None = None,
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
) -> DragDropReport:
    source = require_text(source, "from selector is required", reason="selector_missing").strip()
    destination = require_text(destination, "to selector is required", reason="selector_missing").strip()
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
        kind="drag-drop",
        target_id=target_id,
        timeout_ms=timeout_ms,
        session_id=session_id,
        store=store,
        connector=connector,
        persist_state=persist_state,
    ) as run:
        page = run.page
        cdp = await run.cdp()
        await cdp.ensure_valid_selector(source)
        await cdp.ensure_valid_selector(destination)

        source_count = await page.locator(source).count()
        if source_count < 1:
            raise query_invalid(f"No element matched source selector: {source}", reason="no_match", query_mode="selector", query=source)
        destination_count = await page.locator(destination).count()
        if destination_count < 1:
            raise query_invalid(
                f"No element matched destination selector: {destination}",
                reason="no_match",
                query_mode="selector",
                query=destination,
            )

        url_before = page.url
        await page.drag_and_drop(source, destination, timeout=timeout_ms)
        await run.settle()
        wait_result = await wait_after_action(wait_spec, page=page, cdp=cdp)
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)
        url_after = page.url
        title = await run.title()

        proof_payload = envelope = None
        if proof:
            proof_payload = {
                "action": "drag-drop",
                "from": source,
                "to": destination,
                "urlChanged": url_before != url_after,
                "waitSatisfied": wait_result.satisfied if wait_result else None,
                "finalUrl": url_after,
            }
            envelope = build_proof_envelope(
                action="drag-drop",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=run.target_id,
                match_count=None,
                picked_index=None,
                wait=wait_evidence(wait_spec, wait_result),
                assertions=assertions_report,
                count_after=None,
                details={"fromCount": source_count, "toCount": destination_count},
            )

        timing = await run.persist(url=url_after, title=title)
        return DragDropReport(
            **run_fields(run),
            action_id=run.action_id,
            source=source,
            destination=destination,
            source_count=source_count,
            destination_count=destination_count,
            url=url_after,
            title=title,
            timing=timing,
            wait=wait_result,
            assertions=assertions_report,
            proof=proof_payload,
            proof_envelope=envelope,
        )

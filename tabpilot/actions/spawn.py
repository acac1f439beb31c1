from __future__ import annotations

# mypy: ignore-errors
import logging

from playwright.async_api import Page

from tabpilot.actions._common import clicked_dict, query_fields, resolve_match, run_fields
from tabpilot.cdp import read_page_target_id
from tabpilot.config import DEFAULT_TIMEOUT_MS
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import ActionError, ErrorKind, WaitContext, assert_failed
from tabpilot.evidence import build_proof_envelope, wait_evidence
from tabpilot.pages import settle_page
from tabpilot.query import QueryResolver, parse_frame_scope, parse_match_index, parse_target_query
from tabpilot.races import race_event
from tabpilot.reports import SpawnReport
from tabpilot.session import SessionStore

log = logging.getLogger(__name__)


async def spawn(
    *,
    target_id: str,
    session_id: str | None = None,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
    index: int | str | None = None,
    frame_scope: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    assert_title: str | None = None,
    proof: bool = False,
    persist_state: bool = True,
    store: SessionStore | None = None,
    connector: BrowserConnector | None = None,
) -> SpawnReport:
    """Click a match that opens a new tab or window and report the new target."""
    query = parse_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)
    scope = parse_frame_scope(frame_scope)
    requested_index = parse_match_index(index)
    expected_title = (assert_title or "").strip() or None

    async with ActionRun(
        kind="spawn",
        target_id=target_id,
        timeout_ms=timeout_ms,
        session_id=session_id,
        store=store,
        connector=connector,
        persist_state=persist_state,
    ) as run:
        page = run.page
        context = run.context
        cdp = await run.cdp()
        resolver = QueryResolver(cdp, query, scope)
        picked = await resolve_match(resolver, requested_index, action="spawn")
        pages_before = list(context.pages)
        url_before = page.url

        point = await resolver.click_point_at(picked)
        if point is None:
            raise resolver.mismatch_error(
                "Unable to compute a click point for the matched element",
                "click_resolution_failed",
                requested_index=picked,
            )
        x, y, preview = point

        async def _trigger() -> None:
            await page.mouse.click(x, y)

        async def _scan_new_pages() -> Page | None:
            opened = [candidate for candidate in context.pages if candidate not in pages_before]
            return opened[-1] if opened else None

        outcome = await race_event(
            context.wait_for_event("page", timeout=timeout_ms),
            _trigger,
            fallback=_scan_new_pages,
        )
        if outcome.value is None:
            raise ActionError(
                ErrorKind.WAIT_TIMEOUT,
                "spawn did not produce a new target before timeout",
                hints=[
                    "Check that the element opens a new tab or window",
                    "Use click instead when the link navigates in place",
                ],
                context=WaitContext(
                    mode="spawn",
                    timeout_ms=timeout_ms,
                    frame_scope=scope,
                    query_mode=query.mode,
                    query=query.query,
                ),
            )
        child = outcome.value
        spawn_method = "event" if outcome.branch == "event" else "page-scan"
        log.info("Spawned page detected via %s", spawn_method)

        await settle_page(child, timeout_ms)
        child_target_id = await read_page_target_id(child)
        child_title = await run.title(child)
        child_url = child.url

        title_matched = None
        if expected_title is not None:
            title_matched = expected_title.lower() in child_title.lower()
            if not title_matched:
                raise assert_failed(
                    f'spawn assertion failed: title did not include "{expected_title}"',
                    assertion_id="title",
                    expected=expected_title,
                    actual=child_title,
                    hints=["Check the opened page title with a read-only probe"],
                )

        proof_payload = envelope = None
        if proof:
            proof_payload = {
                "action": "spawn",
                "parentTargetId": run.target_id,
                "targetId": child_target_id,
                "title": child_title,
                "titleMatched": title_matched,
                "finalUrl": child_url,
            }
            envelope = build_proof_envelope(
                action="spawn",
                url_before=url_before,
                url_after=child_url,
                target_before=run.target_id,
                target_after=child_target_id or run.target_id,
                match_count=resolver.frame_index.match_count,
                picked_index=picked,
                wait=wait_evidence(None, None),
                assertions=None,
                count_after=None,
                details={"spawnMethod": spawn_method},
            )

        timing = await run.persist(url=child_url, title=child_title, target_id=child_target_id)
        fields = run_fields(run)
        fields["target_id"] = child_target_id or ""
        return SpawnReport(
            **fields,
            **query_fields(query),
            parent_target_id=run.target_id,
            action_id=run.action_id,
            match_count=resolver.frame_index.match_count,
            picked_index=picked,
            clicked=clicked_dict(preview),
            spawn_method=spawn_method,
            url=child_url,
            title=child_title,
            timing=timing,
            proof=proof_payload,
            proof_envelope=envelope,
        )

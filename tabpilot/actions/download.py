from __future__ import annotations

# mypy: ignore-errors
import asyncio
import hashlib
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import unquote, urljoin, urlparse

from playwright.async_api import Page

from tabpilot.actions._common import clicked_dict, query_fields, resolve_match, run_fields
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS, DOWNLOAD_DIR, DOWNLOAD_FILENAME_MAX, RESPONSE_BUFFER_SIZE
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import ActionError, ErrorKind, InternalContext
from tabpilot.evidence import build_proof_envelope, wait_evidence
from tabpilot.query import QueryResolver, parse_frame_scope, parse_match_index, parse_target_query
from tabpilot.races import race_event
from tabpilot.reports import DownloadReport
from tabpilot.session import SessionStore

log = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset(
    {"authorization", "proxy-authorization", "cookie", "set-cookie", "x-api-key", "x-auth-token"}
)
DEFAULT_FILENAME = "download.bin"
MAX_COLLISION_SUFFIX = 5000

_FILENAME_STAR_RE = re.compile(r"filename\*\s*=\s*(?:UTF-8|utf-8)''([^;]+)")
_FILENAME_RE = re.compile(r'filename\s*=\s*(?:"([^"]*)"|([^;]+))')


def redact_headers(headers: dict[str, str] | None) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for name, value in (headers or {}).items():
        key = str(name).lower()
        redacted[key] = "[REDACTED]" if key in SENSITIVE_HEADERS else str(value)
    return redacted


def sanitize_filename(raw: str | None) -> str:
    name = re.sub(r"[\\/]+", "-", raw or "")
    name = re.sub(r"\s+", " ", name).strip()
    name = re.sub(r"[^A-Za-z0-9._ -]+", "-", name)
    name = re.sub(r"-+", "-", name).strip(" .")
    name = name[:DOWNLOAD_FILENAME_MAX].strip()
    return name or DEFAULT_FILENAME


def unique_path(directory: Path, name: str) -> Path:
    candidate = directory / name
    if not candidate.exists():
        return candidate
    stem, suffix = Path(name).stem, Path(name).suffix
    for n in range(1, MAX_COLLISION_SUFFIX + 1):
        candidate = directory / f"{stem}-{n}{suffix}"
        if not candidate.exists():
            return candidate
    raise ActionError(ErrorKind.INTERNAL, f"no free download filename for {name} in {directory}")


def filename_from_content_disposition(value: str | None) -> str | None:
    if not value:
        return None
    star = _FILENAME_STAR_RE.search(value)
    if star:
        return unquote(star.group(1).strip().strip('"')) or None
    plain = _FILENAME_RE.search(value)
    if plain:
        return (plain.group(1) if plain.group(1) is not None else plain.group(2)).strip() or None
    return None


def filename_from_url(url: str | None) -> str | None:
    if not url:
        return None
    tail = unquote(urlparse(url).path.rsplit("/", 1)[-1])
    return tail or None


def pick_download_response(responses: Iterable[Any], url: str | None) -> Any | None:
    """Prefer the response for ``url``; otherwise the latest attachment response."""
    buffered = list(responses)
    if url:
        for response in reversed(buffered):
            if response.url == url:
                return response
    for response in reversed(buffered):
        disposition = (response.headers or {}).get("content-disposition", "")
        if "attachment" in disposition.lower():
            return response
    return None


def _mime_from_headers(headers: dict[str, str]) -> str | None:
    content_type = headers.get("content-type")
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip() or None


def _hash_file(path: Path) -> tuple[str, int]:
    digest = hashlib.sha256()
    size = 0
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


def _write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


@dataclass(slots=True)
class SavedDownload:
    method: str
    final_url: str | None
    status: int | None
    mime: str | None
    file_name: str
    path: Path
    sha256: str
    bytes: int
    headers: dict[str, str] = field(default_factory=dict)


async def fetch_download(page: Page, url: str, out_dir: Path, timeout_ms: int) -> SavedDownload:
    """Re-request ``url`` through the page's request context, sharing its cookies."""
    target = urljoin(page.url, url)
    response = await page.request.get(target, timeout=timeout_ms, fail_on_status_code=False)
    try:
        payload = await response.body()
        headers = {str(k).lower(): str(v) for k, v in (response.headers or {}).items()}
        final_url = response.url
        status = response.status
    finally:
        await response.dispose()
    name = sanitize_filename(
        filename_from_content_disposition(headers.get("content-disposition"))
        or filename_from_url(final_url)
        or DEFAULT_FILENAME
    )
    await asyncio.to_thread(out_dir.mkdir, parents=True, exist_ok=True)
    path = unique_path(out_dir, name)
    await asyncio.to_thread(_write_bytes, path, payload)
    sha256, size = await asyncio.to_thread(_hash_file, path)
    return SavedDownload(
        method="fetch",
        final_url=final_url,
        status=status,
        mime=_mime_from_headers(headers),
        file_name=path.name,
        path=path,
        sha256=sha256,
        bytes=size,
        headers=redact_headers(headers),
    )


async def save_download_event(download: Any, responses: Iterable[Any], out_dir: Path) -> SavedDownload:
    await asyncio.to_thread(out_dir.mkdir, parents=True, exist_ok=True)
    path = unique_path(out_dir, sanitize_filename(download.suggested_filename))
    await download.save_as(path)
    sha256, size = await asyncio.to_thread(_hash_file, path)
    response = pick_download_response(responses, download.url)
    headers = {str(k).lower(): str(v) for k, v in (response.headers or {}).items()} if response else {}
    return SavedDownload(
        method="event",
        final_url=download.url,
        status=response.status if response else None,
        mime=_mime_from_headers(headers),
        file_name=path.name,
        path=path,
        sha256=sha256,
        bytes=size,
        headers=redact_headers(headers),
    )


async def download(
    *,
    target_id: str,
    session_id: str | None = None,
    text: str | None = None,
    selector: str | None = None,
    contains: str | None = None,
    visible_only: bool = False,
    index: int | str | None = None,
    frame_scope: str | None = None,
    out_dir: str | Path | None = None,
    fetch_fallback: bool = True,
    allow_missing_download_event: bool = False,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    proof: bool = False,
    assert_url_prefix: str | None = None,
    assert_selector: str | None = None,
    assert_text: str | None = None,
    persist_state: bool = True,
    store: SessionStore | None = None,
    connector: BrowserConnector | None = None,
) -> DownloadReport:
    query = parse_target_query(text=text, selector=selector, contains=contains, visible_only=visible_only)
    scope = parse_frame_scope(frame_scope)
    requested_index = parse_match_index(index)
    assertions = parse_action_assertions(
        assert_url_prefix=assert_url_prefix,
        assert_selector=assert_selector,
        assert_text=assert_text,
    )
    directory = Path(out_dir) if out_dir else DOWNLOAD_DIR

    async with ActionRun(
        kind="download",
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
        picked = await resolve_match(resolver, requested_index, action="download")
        preview = await resolver.preview_at(picked)
        url_before = page.url
        source_url = urljoin(url_before, preview.href) if preview and preview.href else url_before

        responses: deque = deque(maxlen=RESPONSE_BUFFER_SIZE)
        fallback_errors: list[str] = []

        async def _trigger() -> None:
            if await resolver.dom_click_at(picked) is None:
                raise resolver.mismatch_error(
                    "Unable to click the matched element",
                    "click_resolution_failed",
                    requested_index=picked,
                )

        async def _fallback() -> SavedDownload | None:
            candidate = pick_download_response(responses, None)
            url = candidate.url if candidate is not None else source_url
            try:
                return await fetch_download(page, url, directory, timeout_ms)
            except Exception as exc:
                log.info("Fetch fallback for %s failed: %s", url, exc)
                fallback_errors.append(str(exc).splitlines()[0][:200] if str(exc) else type(exc).__name__)
                return None

        page.on("response", responses.append)
        try:
            outcome = await race_event(
                page.wait_for_event("download", timeout=timeout_ms),
                _trigger,
                fallback=_fallback if fetch_fallback else None,
            )
            if outcome.branch == "event":
                saved = await save_download_event(outcome.value, responses, directory)
            else:
                saved = outcome.value
        finally:
            page.remove_listener("response", responses.append)

        failure_reason = None
        if saved is None:
            failure_reason = f"download event did not fire within {timeout_ms}ms"
            if fallback_errors:
                failure_reason += f"; fetch fallback failed: {fallback_errors[0]}"
            if not allow_missing_download_event:
                raise ActionError(
                    ErrorKind.INTERNAL,
                    failure_reason,
                    hints=[
                        "Check that the element starts a download rather than navigating",
                        "Pass --allow-missing-download-event to report the miss instead of failing",
                    ],
                    context=InternalContext(op="download", detail=source_url),
                )
            log.info("No download captured: %s", failure_reason)

        download_payload = {
            "downloadStarted": saved is not None,
            "sourceUrl": source_url,
            "finalUrl": saved.final_url if saved else None,
            "status": saved.status if saved else None,
            "mime": saved.mime if saved else None,
            "headers": saved.headers if saved else {},
            "fileName": saved.file_name if saved else None,
            "path": str(saved.path) if saved else None,
            "sha256": saved.sha256 if saved else None,
            "bytes": saved.bytes if saved else None,
        }
        method = saved.method if saved else "none"

        await run.settle()
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)
        url_after = page.url
        title = await run.title()

        proof_payload = envelope = None
        if proof:
            proof_payload = {
                "downloadStarted": saved is not None,
                "downloadMethod": method,
                "fileName": download_payload["fileName"],
                "path": download_payload["path"],
                "bytes": download_payload["bytes"],
                "mime": download_payload["mime"],
                "sourceUrl": source_url,
                "failureReason": failure_reason,
            }
            envelope = build_proof_envelope(
                action="download",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=run.target_id,
                match_count=resolver.frame_index.match_count,
                picked_index=picked,
                wait=wait_evidence(None, None),
                assertions=assertions_report,
                count_after=None,
                details={"downloadMethod": method, "sha256": download_payload["sha256"]},
            )

        timing = await run.persist(url=url_after, title=title)
        return DownloadReport(
            **run_fields(run),
            **query_fields(query),
            action_id=run.action_id,
            match_count=resolver.frame_index.match_count,
            picked_index=picked,
            clicked=clicked_dict(preview),
            source_url=source_url,
            download=download_payload,
            download_method=method,
            failure_reason=failure_reason,
            url=url_after,
            title=title,
            timing=timing,
            assertions=assertions_report,
            proof=proof_payload,
            proof_envelope=envelope,
        )

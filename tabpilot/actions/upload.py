from __future__ import annotations

# mypy: ignore-errors
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from playwright.async_api import Page

from tabpilot.actions._common import require_text, run_fields
from tabpilot.assertions import evaluate_action_assertions, parse_action_assertions
from tabpilot.config import DEFAULT_TIMEOUT_MS
from tabpilot.engine import ActionRun, BrowserConnector
from tabpilot.errors import ActionError, ErrorKind, WaitContext, assert_failed, query_invalid
from tabpilot.evidence import build_proof_envelope, wait_evidence
from tabpilot.races import race_event
from tabpilot.reports import UploadReport
from tabpilot.scripts import IS_FILE_INPUT_SCRIPT
from tabpilot.session import SessionStore
from tabpilot.wait import PollTimeout, parse_wait_after, poll_until, resolve_wait_timeout_ms, wait_after_action

log = logging.getLogger(__name__)

_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
    ".json": "application/json",
    ".txt": "text/plain",
    ".csv": "text/csv",
}


def mime_from_name(name: str) -> str:
    return _MIME_BY_SUFFIX.get(Path(name).suffix.lower(), "application/octet-stream")


@dataclass(frozen=True, slots=True)
class UploadFile:
    path: Path
    name: str
    size: int
    mime: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "size": self.size, "type": self.mime}


def parse_upload_files(paths: Sequence[str] | None) -> list[UploadFile]:
    cleaned = [str(raw).strip() for raw in (paths or []) if str(raw).strip()]
    if not cleaned:
        raise query_invalid("Provide at least one --file <path>", reason="files_missing")
    files: list[UploadFile] = []
    for raw in cleaned:
        path = Path(raw).expanduser().resolve()
        if not path.exists() or not os.access(path, os.R_OK):
            raise query_invalid(f"file is not readable: {raw}", reason="file_unreadable")
        if not path.is_file():
            raise query_invalid(f"file must point to a regular file: {raw}", reason="file_not_regular")
        files.append(UploadFile(path=path, name=path.name, size=path.stat().st_size, mime=mime_from_name(path.name)))
    return files


@dataclass(frozen=True, slots=True)
class ResultVerification:
    selector: str | None
    text_contains: str | None
    filename_regex: str | None
    expected_filename: str | None

    @property
    def enabled(self) -> bool:
        return bool(self.selector or self.text_contains or self.filename_regex or self.expected_filename)


def parse_result_verification(
    files: Sequence[UploadFile],
    *,
    result_selector: str | None,
    result_text_contains: str | None,
    result_filename_regex: str | None,
    expect_uploaded_filename: str | None,
) -> ResultVerification:
    selector = (result_selector or "").strip() or None
    text_contains = (result_text_contains or "").strip() or None
    expected = (expect_uploaded_filename or "").strip() or None
    pattern = (result_filename_regex or "").strip() or None
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise query_invalid(f"result filename regex is invalid: {exc}", reason="regex_invalid") from exc
    verification = ResultVerification(selector, text_contains, pattern, expected)
    if pattern is None and verification.enabled:
        name = expected or (files[0].name if len(files) == 1 else None)
        if name:
            pattern = rf"\b{re.escape(name)}\b"
    return ResultVerification(selector, text_contains, pattern, expected)


def _fold(value: str) -> str:
    return " ".join(value.split()).lower()


def resolve_uploaded_filename(file_names: Sequence[str], expected: str | None, text: str) -> str | None:
    """Name the uploaded file the result text mentions: an attached file first, then ``expected``."""
    for name in file_names:
        if name in text:
            return name
    if expected and expected in text:
        return expected
    return None


async def _read_result_text(page: Page, selector: str | None, timeout_ms: int) -> tuple[str, str]:
    target = selector or "body"
    try:
        text = await page.locator(target).first.inner_text(timeout=timeout_ms)
    except Exception as exc:
        log.debug("Result text read from %s failed: %s", target, exc)
        text = ""
    return text or "", "selector" if selector else "body"


async def verify_upload_result(
    page: Page,
    verification: ResultVerification,
    timeout_ms: int,
    file_names: Sequence[str] = (),
) -> dict[str, Any]:
    report: dict[str, Any] = {
        "enabled": verification.enabled,
        "selector": verification.selector,
        "textContains": verification.text_contains,
        "filenameRegex": verification.filename_regex,
        "source": "none",
        "matchedTextContains": None,
        "matchedFilenameRegex": None,
        "matchedText": None,
        "satisfied": not verification.enabled,
    }
    if not verification.enabled:
        return report
    regex = re.compile(verification.filename_regex, re.IGNORECASE) if verification.filename_regex else None
    last_text = ""

    async def _check() -> bool:
        nonlocal last_text
        text, source = await _read_result_text(page, verification.selector, min(timeout_ms, 1000))
        report["source"] = source
        last_text = text
        satisfied = True
        if verification.text_contains:
            report["matchedTextContains"] = _fold(verification.text_contains) in _fold(text)
            satisfied = satisfied and report["matchedTextContains"]
        if regex is not None:
            found = regex.search(text)
            report["matchedFilenameRegex"] = found.group(0) if found else None
            satisfied = satisfied and found is not None
        report["matchedText"] = " ".join(text.split())[:240] or None
        return satisfied

    try:
        await poll_until(_check, timeout_ms=timeout_ms)
    except PollTimeout as exc:
        if verification.expected_filename:
            raise assert_failed(
                f"uploaded filename assertion failed: expected {verification.expected_filename}",
                assertion_id="uploaded-filename",
                expected=verification.expected_filename,
                actual=report["matchedText"],
                hints=["Point --result-selector at the element that lists uploaded files"],
            ) from exc
        raise ActionError(
            ErrorKind.WAIT_TIMEOUT,
            "upload result verification did not pass before timeout",
            hints=["Check --result-selector and --result-text-contains against the page"],
            context=WaitContext(mode="upload-result", value=verification.selector, timeout_ms=timeout_ms, elapsed_ms=exc.elapsed_ms),
        ) from exc
    report["satisfied"] = True
    report["uploadedFilename"] = resolve_uploaded_filename(file_names, verification.expected_filename, last_text)
    expected = verification.expected_filename
    if expected and report["uploadedFilename"] != expected:
        raise assert_failed(
            f"uploaded filename assertion failed: expected {expected}",
            assertion_id="uploaded-filename",
            expected=expected,
            actual=report["uploadedFilename"] or report["matchedText"],
            hints=["Point --result-selector at the element that lists uploaded files"],
        )
    return report


async def upload(
    *,
    target_id: str,
    selector: str | None,
    files: Sequence[str] | None,
    session_id: str | None = None,
    submit_selector: str | None = None,
    expect_uploaded_filename: str | None = None,
    result_selector: str | None = None,
    result_text_contains: str | None = None,
    result_filename_regex: str | None = None,
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
) -> UploadReport:
    selector = require_text(selector, "selector is required", reason="selector_missing").strip()
    upload_files = parse_upload_files(files)
    submit_selector = (submit_selector or "").strip() or None
    verification = parse_result_verification(
        upload_files,
        result_selector=result_selector,
        result_text_contains=result_text_contains,
        result_filename_regex=result_filename_regex,
        expect_uploaded_filename=expect_uploaded_filename,
    )
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
    paths = [str(item.path) for item in upload_files]

    async with ActionRun(
        kind="upload",
        target_id=target_id,
        timeout_ms=timeout_ms,
        session_id=session_id,
        store=store,
        connector=connector,
        persist_state=persist_state,
    ) as run:
        page = run.page
        cdp = await run.cdp()
        await cdp.ensure_valid_selector(selector)
        if submit_selector:
            await cdp.ensure_valid_selector(submit_selector)
        if verification.selector:
            await cdp.ensure_valid_selector(verification.selector)

        locator = page.locator(selector)
        if await locator.count() < 1:
            raise query_invalid(f"No element matched upload selector: {selector}", reason="no_match", query_mode="selector", query=selector)
        element = locator.first
        url_before = page.url

        if await element.evaluate(IS_FILE_INPUT_SCRIPT):
            await element.set_input_files(paths, timeout=timeout_ms)
            mode = "direct-input"
        else:
            outcome = await race_event(
                page.wait_for_event("filechooser", timeout=timeout_ms),
                lambda: element.click(timeout=timeout_ms),
            )
            if outcome.value is None:
                raise query_invalid(
                    "selector did not trigger a file chooser",
                    hints=["Target the <input type=file> element directly"],
                    reason="no_file_chooser",
                    query_mode="selector",
                    query=selector,
                )
            await outcome.value.set_files(paths, timeout=timeout_ms)
            mode = "filechooser"
        log.info("Uploaded %s file(s) via %s", len(paths), mode)

        submitted = False
        if submit_selector:
            submit = page.locator(submit_selector)
            if await submit.count() < 1:
                raise query_invalid(
                    f"No element matched submit selector: {submit_selector}",
                    reason="no_match",
                    query_mode="selector",
                    query=submit_selector,
                )
            await submit.first.click(timeout=timeout_ms)
            submitted = True

        await run.settle()
        wait_result = await wait_after_action(wait_spec, page=page, cdp=cdp)
        result_report = await verify_upload_result(page, verification, timeout_ms, [item.name for item in upload_files])
        assertions_report = await evaluate_action_assertions(assertions, url=page.url, cdp=cdp)
        url_after = page.url
        title = await run.title()

        envelope = None
        if proof:
            envelope = build_proof_envelope(
                action="upload",
                url_before=url_before,
                url_after=url_after,
                target_before=run.target_id,
                target_after=run.target_id,
                match_count=None,
                picked_index=None,
                wait=wait_evidence(wait_spec, wait_result),
                assertions=assertions_report,
                count_after=None,
                details={"mode": mode, "fileCount": len(upload_files), "submitted": submitted},
            )

        timing = await run.persist(url=url_after, title=title)
        return UploadReport(
            **run_fields(run),
            action_id=run.action_id,
            selector=selector,
            files=[item.to_dict() for item in upload_files],
            mode=mode,
            submit_selector=submit_selector,
            submitted=submitted,
            uploaded_filename=result_report.get("uploadedFilename"),
            upload_verified=bool(verification.enabled and result_report["satisfied"]),
            matched_result_text=result_report["matchedText"],
            result_verification=result_report,
            url=url_after,
            title=title,
            timing=timing,
            wait=wait_result,
            assertions=assertions_report,
            proof_envelope=envelope,
        )

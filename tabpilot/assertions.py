from __future__ import annotations

# mypy: ignore-errors
from dataclasses import dataclass
from typing import Any

from tabpilot.cdp import CdpSession
from tabpilot.errors import assert_failed
from tabpilot.scripts import BODY_TEXT_SCRIPT, QUERY_OP_SCRIPT

_ASSERT_HINTS = (
    "Retry with a narrower assertion target",
    "Inspect the page with a read-only probe before asserting",
)


@dataclass(frozen=True, slots=True)
class ActionAssertions:
    url_prefix: str | None = None
    selector: str | None = None
    text: str | None = None

    @property
    def empty(self) -> bool:
        return not (self.url_prefix or self.selector or self.text)


def parse_action_assertions(
    *,
    assert_url_prefix: str | None = None,
    assert_selector: str | None = None,
    assert_text: str | None = None,
) -> ActionAssertions | None:
    parsed = ActionAssertions(
        url_prefix=(assert_url_prefix or "").strip() or None,
        selector=(assert_selector or "").strip() or None,
        text=(assert_text or "").strip() or None,
    )
    return None if parsed.empty else parsed


def _fold(value: str) -> str:
    return " ".join(value.split()).lower()


async def evaluate_action_assertions(
    assertions: ActionAssertions | None,
    *,
    url: str,
    cdp: CdpSession,
) -> dict[str, Any] | None:
    """Check the post-action assertions in order and raise on the first failure."""
    if assertions is None:
        return None
    checks: list[dict[str, Any]] = []

    def _record(assertion_id: str, passed: bool, expected: str, actual: str) -> None:
        checks.append({"id": assertion_id, "passed": passed, "expected": expected, "actual": actual})
        if not passed:
            raise assert_failed(
                f"assertion failed: {assertion_id}",
                assertion_id=assertion_id,
                expected=expected,
                actual=actual[:240],
                hints=_ASSERT_HINTS,
            )

    if assertions.url_prefix:
        _record("url-prefix", url.startswith(assertions.url_prefix), assertions.url_prefix, url)

    if assertions.selector:
        await cdp.ensure_valid_selector(assertions.selector)
        visible = bool(
            await cdp.evaluate(
                cdp.main_frame_id,
                QUERY_OP_SCRIPT,
                {"op": "wait-selector-visible", "waitSelector": assertions.selector},
            )
        )
        _record("selector", visible, assertions.selector, "visible" if visible else "not visible")

    if assertions.text:
        body = str(await cdp.evaluate(cdp.main_frame_id, BODY_TEXT_SCRIPT, 0) or "")
        _record("text", _fold(assertions.text) in _fold(body), assertions.text, body[:240])

    return {"total": len(checks), "failed": 0, "checks": checks}

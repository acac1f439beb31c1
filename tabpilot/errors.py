from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

MAX_HINTS = 3
MAX_MESSAGE_CHARS = 220


class ErrorKind(str, Enum):
    QUERY_INVALID = "E_QUERY_INVALID"
    WAIT_TIMEOUT = "E_WAIT_TIMEOUT"
    ASSERT_FAILED = "E_ASSERT_FAILED"
    INTERNAL = "E_INTERNAL"
    TARGET_NOT_FOUND = "E_TARGET_NOT_FOUND"
    SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"
    SESSION_UNREACHABLE = "E_SESSION_UNREACHABLE"


@dataclass(frozen=True, slots=True)
class QueryContext:
    reason: str | None = None
    query_mode: str | None = None
    query: str | None = None
    visible_only: bool | None = None
    frame_scope: str | None = None
    frame_count: int | None = None
    match_count: int | None = None
    requested_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "queryMode": self.query_mode,
            "query": self.query,
            "visibleOnly": self.visible_only,
            "frameScope": self.frame_scope,
            "frameCount": self.frame_count,
            "matchCount": self.match_count,
            "requestedIndex": self.requested_index,
        }


@dataclass(frozen=True, slots=True)
class WaitContext:
    mode: str | None = None
    value: str | None = None
    timeout_ms: int | None = None
    elapsed_ms: int | None = None
    frame_scope: str | None = None
    query_mode: str | None = None
    query: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "value": self.value,
            "timeoutMs": self.timeout_ms,
            "elapsedMs": self.elapsed_ms,
            "frameScope": self.frame_scope,
            "queryMode": self.query_mode,
            "query": self.query,
        }


@dataclass(frozen=True, slots=True)
class AssertContext:
    assertion_id: str | None = None
    expected: str | None = None
    actual: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "assertionId": self.assertion_id,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass(frozen=True, slots=True)
class InternalContext:
    op: str | None = None
    frame_cdp_id: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "frameCdpId": self.frame_cdp_id,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class TargetContext:
    requested_target_id: str | None = None
    known_url: str | None = None
    active_targets: int | None = None
    sample_target_ids: tuple[str, ...] = field(default_factory=tuple)
    replacement_target_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestedTargetId": self.requested_target_id,
            "knownUrl": self.known_url,
            "activeTargets": self.active_targets,
            "sampleTargetIds": list(self.sample_target_ids),
            "replacementTargetId": self.replacement_target_id,
        }


@dataclass(frozen=True, slots=True)
class SessionContext:
    requested_session_id: str | None = None
    target_hint: str | None = None
    cdp_origin: str | None = None
    known_sessions: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestedSessionId": self.requested_session_id,
            "targetHint": self.target_hint,
            "cdpOrigin": self.cdp_origin,
            "knownSessions": self.known_sessions,
        }


ErrorContext = QueryContext | WaitContext | AssertContext | InternalContext | TargetContext | SessionContext

CONTEXT_TYPES: dict[ErrorKind, type] = {
    ErrorKind.QUERY_INVALID: QueryContext,
    ErrorKind.WAIT_TIMEOUT: WaitContext,
    ErrorKind.ASSERT_FAILED: AssertContext,
    ErrorKind.INTERNAL: InternalContext,
    ErrorKind.TARGET_NOT_FOUND: TargetContext,
    ErrorKind.SESSION_NOT_FOUND: SessionContext,
    ErrorKind.SESSION_UNREACHABLE: SessionContext,
}


def _one_line(message: str) -> str:
    text = " ".join(str(message).split())
    if len(text) <= MAX_MESSAGE_CHARS:
        return text
    return text[: MAX_MESSAGE_CHARS - 3].rstrip() + "..."


class ActionError(RuntimeError):
    """A typed failure of one engine invocation.

    Every kind has exactly one context type; pairing a kind with the wrong
    context is a programming error and raises ``TypeError`` at construction.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        hints: Iterable[str] = (),
        context: ErrorContext | None = None,
    ) -> None:
        expected = CONTEXT_TYPES[kind]
        if context is None:
            context = expected()
        if not isinstance(context, expected):
            raise TypeError(f"{kind.value} requires {expected.__name__}, got {type(context).__name__}")
        self.kind = kind
        self.message = _one_line(message)
        self.hints = [hint for hint in hints if hint][:MAX_HINTS]
        self.context = context
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": False,
            "code": self.code,
            "message": self.message,
            "hints": list(self.hints),
            "hintContext": self.context.to_dict(),
        }


def query_invalid(message: str, *, hints: Iterable[str] = (), **context: Any) -> ActionError:
    return ActionError(ErrorKind.QUERY_INVALID, message, hints=hints, context=QueryContext(**context))


def internal_error(message: str, *, op: str | None = None, frame_cdp_id: str | None = None, detail: str | None = None) -> ActionError:
    return ActionError(
        ErrorKind.INTERNAL,
        message,
        context=InternalContext(op=op, frame_cdp_id=frame_cdp_id, detail=detail),
    )


def assert_failed(
    message: str,
    *,
    assertion_id: str,
    expected: str | None,
    actual: str | None,
    hints: Iterable[str] = (),
) -> ActionError:
    return ActionError(
        ErrorKind.ASSERT_FAILED,
        message,
        hints=hints,
        context=AssertContext(assertion_id=assertion_id, expected=expected, actual=actual),
    )

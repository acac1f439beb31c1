"""Report shapes returned by the action verbs.

Every report serialises the same keys on every run; sections that were not
requested are emitted as ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tabpilot.engine import ActionTiming
from tabpilot.wait import WaitResult


def _wait_dict(wait: WaitResult | None) -> dict[str, Any] | None:
    return wait.to_dict() if wait is not None else None


@dataclass(slots=True)
class ClickReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    mode: str
    selector: str | None
    contains: str | None
    visible_only: bool
    query: str | None
    match_count: int
    picked_index: int
    clicked: dict[str, Any]
    click_method: str
    url: str
    title: str
    timing: ActionTiming
    wait: WaitResult | None = None
    snapshot: dict[str, Any] | None = None
    proof: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None
    assertions: dict[str, Any] | None = None
    delta: dict[str, Any] | None = None
    handoff: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "mode": self.mode,
            "selector": self.selector,
            "contains": self.contains,
            "visibleOnly": self.visible_only,
            "query": self.query,
            "matchCount": self.match_count,
            "pickedIndex": self.picked_index,
            "clicked": self.clicked,
            "clickMethod": self.click_method,
            "url": self.url,
            "title": self.title,
            "wait": _wait_dict(self.wait),
            "snapshot": self.snapshot,
            "proof": self.proof,
            "proofEnvelope": self.proof_envelope,
            "assertions": self.assertions,
            "delta": self.delta,
            "handoff": {
                "sameTarget": self.handoff.get("sameTarget", True),
                "openedTargetId": self.handoff.get("openedTargetId"),
                "openedUrl": self.handoff.get("openedUrl"),
                "openedTitle": self.handoff.get("openedTitle"),
            },
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class ExplainReport:
    session_id: str
    session_source: str
    target_id: str
    mode: str
    selector: str | None
    contains: str | None
    visible_only: bool
    query: str
    match_count: int
    requested_index: int | None
    picked_index: int | None
    picked: dict[str, Any] | None
    rejected: list[dict[str, Any]]
    rejected_truncated: bool
    reason: str
    url: str
    title: str
    timing: ActionTiming

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "mode": self.mode,
            "selector": self.selector,
            "contains": self.contains,
            "visibleOnly": self.visible_only,
            "query": self.query,
            "matchCount": self.match_count,
            "requestedIndex": self.requested_index,
            "pickedIndex": self.picked_index,
            "picked": self.picked,
            "rejected": self.rejected,
            "rejectedTruncated": self.rejected_truncated,
            "reason": self.reason,
            "url": self.url,
            "title": self.title,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class FillReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    mode: str
    selector: str | None
    contains: str | None
    visible_only: bool
    query: str
    match_count: int
    picked_index: int
    value_length: int
    events_dispatched: list[str]
    url: str
    title: str
    timing: ActionTiming
    wait: WaitResult | None = None
    assertions: dict[str, Any] | None = None
    proof: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "mode": self.mode,
            "selector": self.selector,
            "contains": self.contains,
            "visibleOnly": self.visible_only,
            "query": self.query,
            "matchCount": self.match_count,
            "pickedIndex": self.picked_index,
            "valueLength": self.value_length,
            "eventsDispatched": list(self.events_dispatched),
            "url": self.url,
            "title": self.title,
            "wait": _wait_dict(self.wait),
            "assertions": self.assertions,
            "proof": self.proof,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class KeypressReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    key: str
    mode: str | None
    selector: str | None
    query: str | None
    match_count: int | None
    picked_index: int | None
    focused: dict[str, Any] | None
    result_text: str
    url: str
    title: str
    timing: ActionTiming
    wait: WaitResult | None = None
    assertions: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "key": self.key,
            "mode": self.mode,
            "selector": self.selector,
            "query": self.query,
            "matchCount": self.match_count,
            "pickedIndex": self.picked_index,
            "focused": self.focused,
            "resultText": self.result_text,
            "url": self.url,
            "title": self.title,
            "wait": _wait_dict(self.wait),
            "assertions": self.assertions,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class UploadReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    selector: str
    files: list[dict[str, Any]]
    mode: str
    submit_selector: str | None
    submitted: bool
    uploaded_filename: str | None
    upload_verified: bool
    matched_result_text: str | None
    result_verification: dict[str, Any]
    url: str
    title: str
    timing: ActionTiming
    wait: WaitResult | None = None
    assertions: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "selector": self.selector,
            "files": self.files,
            "fileCount": len(self.files),
            "mode": self.mode,
            "submitSelector": self.submit_selector,
            "submitted": self.submitted,
            "uploadedFilename": self.uploaded_filename,
            "uploadVerified": self.upload_verified,
            "matchedResultText": self.matched_result_text,
            "resultVerification": self.result_verification,
            "url": self.url,
            "title": self.title,
            "wait": _wait_dict(self.wait),
            "assertions": self.assertions,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class DownloadReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    mode: str
    selector: str | None
    contains: str | None
    visible_only: bool
    query: str
    match_count: int
    picked_index: int
    clicked: dict[str, Any]
    source_url: str
    download: dict[str, Any]
    download_method: str
    failure_reason: str | None
    url: str
    title: str
    timing: ActionTiming
    assertions: dict[str, Any] | None = None
    proof: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "mode": self.mode,
            "selector": self.selector,
            "contains": self.contains,
            "visibleOnly": self.visible_only,
            "query": self.query,
            "matchCount": self.match_count,
            "pickedIndex": self.picked_index,
            "clicked": self.clicked,
            "sourceUrl": self.source_url,
            "downloadStarted": bool(self.download.get("downloadStarted")),
            "downloadMethod": self.download_method,
            "downloadStatus": self.download.get("status"),
            "downloadFinalUrl": self.download.get("finalUrl"),
            "downloadFileName": self.download.get("fileName"),
            "downloadBytes": self.download.get("bytes"),
            "download": self.download,
            "failureReason": self.failure_reason,
            "url": self.url,
            "title": self.title,
            "assertions": self.assertions,
            "proof": self.proof,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class DialogReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    trigger: dict[str, Any] | None
    dialog: dict[str, Any]
    url: str
    title: str
    timing: ActionTiming
    wait: WaitResult | None = None
    assertions: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "trigger": self.trigger,
            "dialog": self.dialog,
            "url": self.url,
            "title": self.title,
            "wait": _wait_dict(self.wait),
            "assertions": self.assertions,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class DragDropReport:
    session_id: str
    session_source: str
    target_id: str
    action_id: str
    source: str
    destination: str
    source_count: int
    destination_count: int
    url: str
    title: str
    timing: ActionTiming
    wait: WaitResult | None = None
    assertions: dict[str, Any] | None = None
    proof: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "from": self.source,
            "to": self.destination,
            "fromCount": self.source_count,
            "toCount": self.destination_count,
            "result": "dragged",
            "url": self.url,
            "title": self.title,
            "wait": _wait_dict(self.wait),
            "assertions": self.assertions,
            "proof": self.proof,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }


@dataclass(slots=True)
class SpawnReport:
    session_id: str
    session_source: str
    parent_target_id: str
    target_id: str
    action_id: str
    mode: str
    selector: str | None
    contains: str | None
    visible_only: bool
    query: str
    match_count: int
    picked_index: int
    clicked: dict[str, Any]
    spawn_method: str
    url: str
    title: str
    timing: ActionTiming
    proof: dict[str, Any] | None = None
    proof_envelope: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sessionId": self.session_id,
            "sessionSource": self.session_source,
            "parentTargetId": self.parent_target_id,
            "targetId": self.target_id,
            "actionId": self.action_id,
            "mode": self.mode,
            "selector": self.selector,
            "contains": self.contains,
            "visibleOnly": self.visible_only,
            "query": self.query,
            "matchCount": self.match_count,
            "pickedIndex": self.picked_index,
            "clicked": self.clicked,
            "spawnMethod": self.spawn_method,
            "url": self.url,
            "title": self.title,
            "proof": self.proof,
            "proofEnvelope": self.proof_envelope,
            "timingMs": self.timing.to_dict(),
        }

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

SessionSource = Literal["explicit", "target-inferred", "implicit-new"]
ActionKind = Literal["click", "fill", "keypress", "upload", "download", "dialog", "drag-drop", "spawn"]


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    cdp_origin: str
    created_at: int
    last_seen_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "cdpOrigin": self.cdp_origin,
            "createdAt": self.created_at,
            "lastSeenAt": self.last_seen_at,
        }


@dataclass(slots=True)
class SessionHandle:
    session_id: str
    cdp_origin: str


@dataclass(slots=True)
class TargetSnapshot:
    target_id: str
    session_id: str
    url: str
    title: str
    last_action_id: str | None = None
    last_action_kind: str | None = None
    last_action_at: int | None = None
    updated_at: int = 0

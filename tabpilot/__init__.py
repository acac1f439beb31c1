"""Target-action engine for browsers driven over the Chrome DevTools Protocol."""

from tabpilot.errors import ActionError, ErrorKind
from tabpilot.models import SessionRecord, TargetSnapshot
from tabpilot.query import FrameIndex, QueryResolver, TargetQuery
from tabpilot.session import SessionStore

__all__ = [
    "ActionError",
    "ErrorKind",
    "FrameIndex",
    "QueryResolver",
    "SessionRecord",
    "SessionStore",
    "TargetQuery",
    "TargetSnapshot",
]

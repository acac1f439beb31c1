"""Action verbs run against one browser target."""

from tabpilot.actions.click import click
from tabpilot.actions.dialog import dialog
from tabpilot.actions.download import download
from tabpilot.actions.drag_drop import drag_drop
from tabpilot.actions.fill import fill
from tabpilot.actions.keypress import keypress
from tabpilot.actions.spawn import spawn
from tabpilot.actions.upload import upload

__all__ = [
    "click",
    "dialog",
    "download",
    "drag_drop",
    "fill",
    "keypress",
    "spawn",
    "upload",
]

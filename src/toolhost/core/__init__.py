"""Core application components."""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolhost.core.events import Event, EventBus

if TYPE_CHECKING:
    from toolhost.core.app import ToolHostApp as ToolHostApp

__all__ = ["ToolHostApp", "EventBus", "Event"]


def __getattr__(name: str):
    # The app imports every other subpackage; keep `toolhost.core.events` cheap.
    if name == "ToolHostApp":
        from toolhost.core.app import ToolHostApp  # local import

        return ToolHostApp
    raise AttributeError(name)

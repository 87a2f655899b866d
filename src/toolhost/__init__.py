"""
toolhost - supervise MCP capability servers and expose their tools.

Launches stdio capability servers under a security policy and merges their
tools with built-in ones into a single registry for a calling agent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from toolhost.core.app import ToolHostApp as ToolHostApp

__all__ = ["ToolHostApp", "__version__"]


def __getattr__(name: str):
    # Lazy import so that `toolhost.mcp.*` can be used without the app wiring.
    if name == "ToolHostApp":
        from toolhost.core.app import ToolHostApp  # local import

        return ToolHostApp
    raise AttributeError(name)

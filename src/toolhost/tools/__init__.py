"""Tools module - unified registry of built-in and external tools."""

from toolhost.tools.registry import ToolRegistry
from toolhost.tools.base import BaseTool, ToolResult

__all__ = ["ToolRegistry", "BaseTool", "ToolResult"]

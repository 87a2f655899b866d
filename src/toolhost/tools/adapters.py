"""
Export registry tools to agent frameworks.

Tool ids such as "time:list" are not valid function names for most LLM
APIs, so they are mapped with `openai_function_name`.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

from langchain_core.tools import StructuredTool
from loguru import logger
from pydantic import BaseModel, Field, create_model

from toolhost.tools.base import BaseTool, ToolResult


Dispatcher = Callable[[str, Dict[str, Any]], Awaitable[ToolResult]]

_JSON_TYPES: Dict[str, type] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def openai_function_name(tool_id: str) -> str:
    name = re.sub(r"[^a-zA-Z0-9_-]", "__", tool_id or "")
    return name[:64] or "tool"


def to_openai_tools(tools: Iterable[BaseTool]) -> List[Dict[str, Any]]:
    """Chat Completions `tools=[...]` entries."""
    return [
        {
            "type": "function",
            "function": {
                "name": openai_function_name(tool.id),
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }
        for tool in tools
    ]


def _json_schema_to_python_type(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return str
    json_type = schema.get("type", "string")
    if isinstance(json_type, list):
        json_type = next((t for t in json_type if t != "null"), "string")
    return _JSON_TYPES.get(json_type, str)


def _args_model(tool: BaseTool) -> Type[BaseModel]:
    params = tool.input_schema or {}
    props = params.get("properties", {}) or {}
    required = set(params.get("required", []) or [])
    fields: Dict[str, Any] = {}

    for prop_name, prop_info in props.items():
        prop_type = _json_schema_to_python_type(prop_info)
        description = prop_info.get("description", "") if isinstance(prop_info, dict) else ""
        default_val = prop_info.get("default", ...) if isinstance(prop_info, dict) else ...
        if prop_name not in required and default_val is ...:
            default_val = None
            prop_type = Optional[prop_type]
        fields[prop_name] = (prop_type, Field(default=default_val, description=description))

    return create_model(f"{openai_function_name(tool.id)}_args", **fields)


def _langchain_tool(tool: BaseTool, dispatch: Dispatcher) -> StructuredTool:
    tool_id = tool.id

    async def executor(**kwargs: Any) -> Any:
        result = await dispatch(tool_id, kwargs)
        if result.success:
            return result.data
        return f"Error: {result.error}"

    def sync_executor(**kwargs: Any) -> Any:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(executor(**kwargs))
        raise RuntimeError("Synchronous tool execution is not supported in an active event loop")

    return StructuredTool.from_function(
        func=sync_executor,
        coroutine=executor,
        name=openai_function_name(tool_id),
        description=tool.description or tool_id,
        args_schema=_args_model(tool),
    )


def to_langchain_tools(tools: Iterable[BaseTool], dispatch: Dispatcher) -> List[StructuredTool]:
    """
    Wrap registry tools as LangChain StructuredTools.

    Calls are routed through `dispatch` (normally `ToolRegistry.call_tool`) so
    that confirmation and validation still apply.
    """
    out: List[StructuredTool] = []
    for tool in tools:
        try:
            out.append(_langchain_tool(tool, dispatch))
        except Exception as e:
            logger.warning(f"Skipping LangChain export of {tool.id}: {e}")
    return out

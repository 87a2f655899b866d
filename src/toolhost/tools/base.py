"""
Base Tool - common surface of built-in and external tools.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ToolOrigin(str, Enum):
    BUILTIN = "builtin"
    EXTERNAL = "external"


class ToolPermission(str, Enum):
    """Tool permission levels."""
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"


@dataclass
class ToolResult:
    """Result envelope returned by every tool call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return "success" if self.success else "error"

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "ToolResult":
        return cls(success=True, data=data, metadata=dict(metadata))

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, error=error, metadata=dict(metadata))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        payload["execution_time_ms"] = self.execution_time_ms
        payload["metadata"] = self.metadata
        return payload


class ToolDefinition(BaseModel):
    """Tool definition for registration."""

    name: str
    description: str
    permissions: List[ToolPermission] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)  # JSON Schema
    requires_confirmation: bool = False


class BaseTool(ABC):
    """
    Abstract base class for tools in the unified registry.

    All tools must implement:
    - definition: Tool metadata
    - execute: Core execution logic

    Built-ins use their definition name as id; external tools override `id`
    with the "<server>:<tool>" composite.
    """

    origin: ToolOrigin = ToolOrigin.BUILTIN

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Get tool definition."""

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """
        Execute the tool.

        Args:
            **kwargs: Tool-specific parameters

        Returns:
            ToolResult with execution outcome
        """

    @property
    def id(self) -> str:
        return self.definition.name

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def description(self) -> str:
        return self.definition.description

    @property
    def input_schema(self) -> Dict[str, Any]:
        return self.definition.parameters

    @property
    def server_name(self) -> Optional[str]:
        return None

    @property
    def requires_confirmation(self) -> bool:
        return self.definition.requires_confirmation

    def validate_params(self, params: Dict[str, Any]) -> Optional[str]:
        """
        Validate input parameters.

        Returns:
            Error message if invalid, None if valid
        """
        required = self.input_schema.get("required", []) or []
        for param in required:
            if param not in params:
                return f"Missing required parameter: {param}"
        return None

    async def safe_execute(self, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> ToolResult:
        """Execute with validation and error handling; never raises."""
        params = dict(params or {})
        start_time = time.time()

        error = self.validate_params(params)
        if error:
            return ToolResult(success=False, error=error, execution_time_ms=(time.time() - start_time) * 1000)

        try:
            if timeout:
                result = await asyncio.wait_for(self.execute(**params), timeout=timeout)
            else:
                result = await self.execute(**params)
        except asyncio.TimeoutError:
            result = ToolResult(success=False, error=f"Tool '{self.id}' timed out after {timeout}s")
        except Exception as e:
            result = ToolResult(success=False, error=str(e))

        result.execution_time_ms = (time.time() - start_time) * 1000
        return result

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "origin": self.origin.value,
            "server_name": self.server_name,
            "requires_confirmation": self.requires_confirmation,
        }

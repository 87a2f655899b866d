"""
MCP data model - server configuration, status and discovered tools.

`ServerConfig` is the persisted, versioned settings schema. Everything else
here is runtime state that never leaves the process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


CONFIG_SCHEMA_VERSION = 1


class ToolHostError(Exception):
    """Base class for errors raised by toolhost."""


class ConfigurationError(ToolHostError):
    """Invalid, unsafe, unknown or duplicate server configuration."""


class ServerConnectionError(ToolHostError):
    """Spawning or talking to a capability server failed."""


class ToolInvocationError(ToolHostError):
    """A tool call was rejected before it reached the server."""


class ServerSecurityPolicy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    allowlist: List[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = None
    max_memory_mb: Optional[int] = None
    read_only: bool = False
    sandboxed: bool = False


class ServerConfig(BaseModel):
    """Launch configuration of one capability server."""

    model_config = ConfigDict(extra="ignore")

    schema_version: int = CONFIG_SCHEMA_VERSION
    name: str
    command: str
    args: List[str] = Field(default_factory=list)
    working_directory: Optional[str] = None
    enabled: bool = False
    description: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    security: Optional[ServerSecurityPolicy] = None

    @field_validator("name", "command")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("working_directory")
    @classmethod
    def _blank_cwd(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None

    @field_validator("schema_version")
    @classmethod
    def _check_version(cls, v: int) -> int:
        if v > CONFIG_SCHEMA_VERSION:
            raise ValueError(f"unsupported server config schema_version {v}")
        return v

    def to_settings(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    STOPPING = "stopping"


# Process exit while running goes straight to STOPPED; everything else
# follows stopped -> starting -> running -> stopping -> stopped.
LEGAL_TRANSITIONS: Dict[ServerState, frozenset] = {
    ServerState.STOPPED: frozenset({ServerState.STARTING}),
    ServerState.STARTING: frozenset({ServerState.RUNNING, ServerState.ERROR, ServerState.STOPPING}),
    ServerState.RUNNING: frozenset({ServerState.STOPPING, ServerState.ERROR, ServerState.STOPPED}),
    ServerState.STOPPING: frozenset({ServerState.STOPPED, ServerState.ERROR}),
    ServerState.ERROR: frozenset({ServerState.STARTING, ServerState.STOPPED}),
}


def can_transition(current: ServerState, new: ServerState) -> bool:
    return new in LEGAL_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ToolAnnotations:
    title: Optional[str] = None
    read_only_hint: Optional[bool] = None
    destructive_hint: Optional[bool] = None
    idempotent_hint: Optional[bool] = None
    open_world_hint: Optional[bool] = None

    @classmethod
    def from_sdk(cls, annotations: Any) -> Optional["ToolAnnotations"]:
        if annotations is None:
            return None
        return cls(
            title=getattr(annotations, "title", None),
            read_only_hint=getattr(annotations, "readOnlyHint", None),
            destructive_hint=getattr(annotations, "destructiveHint", None),
            idempotent_hint=getattr(annotations, "idempotentHint", None),
            open_world_hint=getattr(annotations, "openWorldHint", None),
        )


@dataclass
class MCPTool:
    """A tool reported by a capability server."""

    id: str
    server_name: str
    tool_name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    annotations: Optional[ToolAnnotations] = None

    @classmethod
    def create(
        cls,
        server_name: str,
        tool_name: str,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        annotations: Optional[ToolAnnotations] = None,
    ) -> "MCPTool":
        return cls(
            id=f"{server_name}:{tool_name}",
            server_name=server_name,
            tool_name=tool_name,
            description=description or "",
            input_schema=dict(input_schema or {}),
            annotations=annotations,
        )

    @classmethod
    def from_sdk(cls, server_name: str, tool: Any) -> "MCPTool":
        schema = getattr(tool, "inputSchema", None)
        return cls.create(
            server_name,
            str(getattr(tool, "name", "") or "").strip(),
            description=str(getattr(tool, "description", None) or ""),
            input_schema=schema if isinstance(schema, dict) else {},
            annotations=ToolAnnotations.from_sdk(getattr(tool, "annotations", None)),
        )

    @property
    def destructive(self) -> bool:
        return bool(self.annotations and self.annotations.destructive_hint)


@dataclass
class ServerStatus:
    name: str
    state: ServerState = ServerState.STOPPED
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None
    tools: List[MCPTool] = field(default_factory=list)

    def copy(self) -> "ServerStatus":
        return ServerStatus(
            name=self.name,
            state=self.state,
            last_error=self.last_error,
            start_time=self.start_time,
            tools=list(self.tools),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "last_error": self.last_error,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "tools": [t.id for t in self.tools],
        }

"""
Preconfigured capability servers and install/diagnostic hints.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from toolhost.mcp.types import ConfigurationError, ServerConfig, ServerSecurityPolicy


def get_preconfigured_servers() -> List[ServerConfig]:
    """Known servers. All start disabled; the user opts in."""
    return [
        ServerConfig(
            name="time",
            command="uvx",
            args=["mcp-server-time"],
            description="Current time and timezone conversion",
            timeout_seconds=30,
            security=ServerSecurityPolicy(read_only=True),
        ),
        ServerConfig(
            name="filesystem",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-filesystem"],
            description="File and directory operations",
            timeout_seconds=60,
            security=ServerSecurityPolicy(),
        ),
        ServerConfig(
            name="git",
            command="uvx",
            args=["mcp-server-git"],
            description="Read and search git repositories",
            timeout_seconds=60,
            security=ServerSecurityPolicy(),
        ),
        ServerConfig(
            name="memory",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-memory"],
            description="Knowledge-graph style persistent memory",
            timeout_seconds=60,
            security=ServerSecurityPolicy(),
        ),
    ]


def get_preconfigured_server(name: str) -> Optional[ServerConfig]:
    for server in get_preconfigured_servers():
        if server.name == name:
            return server
    return None


def get_preconfigured_server_names() -> List[str]:
    return [s.name for s in get_preconfigured_servers()]


def get_available_preconfigured_servers(configured: Iterable[ServerConfig]) -> List[ServerConfig]:
    taken = {c.name for c in configured}
    return [s for s in get_preconfigured_servers() if s.name not in taken]


def add_preconfigured_server(name: str, configured: List[ServerConfig]) -> List[ServerConfig]:
    preset = get_preconfigured_server(name)
    if preset is None:
        raise ConfigurationError(f"Preconfigured server '{name}' not found")
    if any(c.name == name for c in configured):
        raise ConfigurationError(f"Server '{name}' is already configured")
    return [*configured, preset.model_copy(update={"enabled": False})]


def create_custom_server(name: str, command: str, args: Optional[List[str]] = None) -> ServerConfig:
    return ServerConfig(name=name, command=command, args=list(args or []), enabled=False, timeout_seconds=30)


_INSTALL_INSTRUCTIONS: Dict[str, str] = {
    "time": (
        "Install uv (https://docs.astral.sh/uv/) so that `uvx mcp-server-time` works, "
        "or `pip install mcp-server-time` and launch it with `python -m mcp_server_time`."
    ),
    "git": (
        "Install uv (https://docs.astral.sh/uv/) so that `uvx mcp-server-git` works, "
        "or `pip install mcp-server-git` and launch it with `python -m mcp_server_git`."
    ),
    "filesystem": (
        "Install Node.js (https://nodejs.org/). npx downloads "
        "@modelcontextprotocol/server-filesystem on first run."
    ),
    "memory": (
        "Install Node.js (https://nodejs.org/). npx downloads "
        "@modelcontextprotocol/server-memory on first run."
    ),
}


def get_installation_instructions(name: str) -> Optional[str]:
    return _INSTALL_INSTRUCTIONS.get(name)


def command_not_found_hint(command: str) -> str:
    base = command.replace("\\", "/").rsplit("/", 1)[-1]
    if base in {"uvx", "uv"}:
        return (
            "Install uv (curl -LsSf https://astral.sh/uv/install.sh | sh) and make sure "
            "~/.local/bin or ~/.cargo/bin is on PATH."
        )
    if base in {"npx", "npm", "node"}:
        return "Install Node.js from https://nodejs.org/ and make sure npx is on PATH."
    if base in {"python", "python3"}:
        return "Install Python 3 and make sure it is on PATH, or use an absolute interpreter path."
    return f"Make sure '{base}' is installed and available on PATH (try: which {base})."

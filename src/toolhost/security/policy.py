"""
Security Policy - validation of server configs and tool input.

Pure policy evaluation: the only state kept here is the per-tool rate-limit
counters and the append-only violation log.
"""

from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from loguru import logger
from pydantic import BaseModel, Field

from toolhost.mcp.types import ServerConfig


DEFAULT_ALLOWED_COMMANDS = [
    "python",
    "python3",
    "node",
    "npm",
    "npx",
    "uvx",
    "uv",
    "mcp-server-time",
    "mcp-server-filesystem",
    "mcp-server-git",
]

DEFAULT_ALLOWED_DOMAINS = ["localhost", "127.0.0.1", "::1"]

SUSPICIOUS_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r"[;&|`$]"),
    re.compile(r"\.\."),
    re.compile(r"/etc/passwd"),
    re.compile(r"/proc/"),
    re.compile(r"/sys/"),
    re.compile(r"/dev/"),
    re.compile(r"/tmp/.*\.(sh|py|js|exe|bat|cmd)"),
    re.compile(r"curl\s+.*\|\s*sh"),
    re.compile(r"wget\s+.*\|\s*sh"),
]

UNSAFE_PATH_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r"^/etc/"),
    re.compile(r"^/proc/"),
    re.compile(r"^/sys/"),
    re.compile(r"^/dev/"),
    re.compile(r"^/root/"),
    re.compile(r"^/var/log/"),
    re.compile(r"^/tmp/.*\.(sh|py|js|exe|bat|cmd)/?$"),
]

RATE_WINDOW_SECONDS = 60.0
HOURLY_WINDOW_SECONDS = 3600.0


class RateLimitSettings(BaseModel):
    enabled: bool = True
    max_calls_per_minute: int = 60
    max_calls_per_hour: int = 1000


class SecurityConfig(BaseModel):
    allowed_commands: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    allowed_domains: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS))
    max_timeout_ms: int = 30000
    max_memory_mb: int = 512
    enable_sandboxing: bool = True
    require_confirmation: bool = True
    rate_limiting: RateLimitSettings = Field(default_factory=RateLimitSettings)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    remaining: Optional[int] = None

    @classmethod
    def build(cls, errors: List[str], warnings: List[str], remaining: Optional[int] = None) -> "ValidationResult":
        return cls(valid=not errors, errors=list(errors), warnings=list(warnings), remaining=remaining)


@dataclass
class RateLimitCounter:
    count: int
    window_start: float


@dataclass
class SecurityViolation:
    type: str  # command | domain | timeout | memory | rate_limit | input
    message: str
    server_name: str
    tool_name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "server_name": self.server_name,
            "tool_name": self.tool_name,
        }


class ToolLike(Protocol):
    id: str
    input_schema: Dict[str, Any]


def contains_suspicious_pattern(value: str) -> bool:
    return any(p.search(value) for p in SUSPICIOUS_PATTERNS)


def _normalize_path(path: str) -> str:
    expanded = os.path.expanduser(path.strip())
    return os.path.normpath(expanded).replace("\\", "/")


def is_path_safe(path: str) -> bool:
    normalized = _normalize_path(path)
    # Match the roots themselves as well as anything underneath them.
    candidates = {normalized, normalized.rstrip("/") + "/"}
    return not any(p.search(c) for p in UNSAFE_PATH_PATTERNS for c in candidates)


def _split_tool_id(tool_id: str) -> tuple[str, Optional[str]]:
    if ":" in tool_id:
        server, tool = tool_id.split(":", 1)
        return server, tool
    return tool_id, None


class SecurityPolicy:
    """
    Security policy engine.

    Features:
    - Command allow-listing for server launch commands
    - Suspicious argument / input pattern detection
    - Working directory checks
    - Per-tool rate limiting (per minute and per hour)
    - Append-only violation log with optional JSON-lines audit file
    """

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        *,
        audit_log_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or SecurityConfig()
        self._clock = clock
        self._minute_counters: Dict[str, RateLimitCounter] = {}
        self._hour_counters: Dict[str, RateLimitCounter] = {}
        self._violations: List[SecurityViolation] = []
        self._audit_file = Path(audit_log_path) if audit_log_path else None

    # ------------------------------------------------------------------
    # Server configuration
    # ------------------------------------------------------------------

    def validate_server_config(self, config: ServerConfig) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        extra_allowed = config.security.allowlist if config.security else []
        if not self.is_command_allowed(config.command, extra_allowed):
            errors.append(f"Command '{config.command}' is not in the allowed commands list")
            self._record(
                SecurityViolation(
                    type="command",
                    message=f"Rejected launch command '{config.command}'",
                    server_name=config.name,
                )
            )

        for arg in config.args:
            if contains_suspicious_pattern(arg):
                errors.append(f"Argument '{arg}' contains suspicious patterns")

        if config.working_directory and not is_path_safe(config.working_directory):
            errors.append(f"Working directory '{config.working_directory}' is not safe")

        if config.security is None:
            warnings.append("No security configuration provided, using defaults")
        else:
            policy = config.security
            if policy.timeout_ms is not None and policy.timeout_ms > self._config.max_timeout_ms:
                errors.append(
                    f"Timeout {policy.timeout_ms}ms exceeds the maximum of {self._config.max_timeout_ms}ms"
                )
            if policy.max_memory_mb is not None and policy.max_memory_mb > self._config.max_memory_mb:
                errors.append(
                    f"Memory limit {policy.max_memory_mb}MB exceeds the maximum of {self._config.max_memory_mb}MB"
                )
            if self._config.enable_sandboxing and not policy.sandboxed:
                warnings.append(f"Server '{config.name}' is not marked as sandboxed")

        return ValidationResult.build(errors, warnings)

    def is_command_allowed(self, command: str, extra_allowed: Optional[List[str]] = None) -> bool:
        allowed = set(self._config.allowed_commands)
        allowed.update(extra_allowed or [])
        if command in allowed:
            return True
        base = re.split(r"[\\/]", command)[-1] if command else command
        return bool(base) and base in allowed

    def is_domain_allowed(self, host: str) -> bool:
        return (host or "").strip().lower() in {d.lower() for d in self._config.allowed_domains}

    # ------------------------------------------------------------------
    # Tool input
    # ------------------------------------------------------------------

    def validate_tool_input(self, tool: ToolLike, args: Optional[Dict[str, Any]]) -> ValidationResult:
        args = args or {}
        errors: List[str] = []
        warnings: List[str] = []
        remaining: Optional[int] = None

        if self._config.rate_limiting.enabled:
            allowed, remaining = self.check_rate_limit(tool.id)
            if not allowed:
                errors.append(f"Rate limit exceeded for tool {tool.id}")

        schema = tool.input_schema or {}
        for key in schema.get("required", []) or []:
            if key not in args:
                errors.append(f"Required property '{key}' is missing")

        server_name, tool_name = _split_tool_id(tool.id)
        for key, value in args.items():
            if isinstance(value, str) and contains_suspicious_pattern(value):
                errors.append(f"Property '{key}' contains suspicious patterns")
                self._record(
                    SecurityViolation(
                        type="input",
                        message=f"Suspicious value for '{key}' in tool {tool.id}",
                        server_name=server_name,
                        tool_name=tool_name,
                    )
                )

        if getattr(tool, "destructive", False) and not self._config.require_confirmation:
            warnings.append("Destructive operation detected - confirmation may be required")

        return ValidationResult.build(errors, warnings, remaining)

    def check_rate_limit(self, tool_id: str) -> tuple[bool, int]:
        """Count one call against `tool_id`; returns (allowed, remaining per-minute quota)."""
        limits = self._config.rate_limiting
        now = self._clock()

        minute = self._minute_counters.get(tool_id)
        if minute is None or now - minute.window_start > RATE_WINDOW_SECONDS:
            minute = RateLimitCounter(count=0, window_start=now)
            self._minute_counters[tool_id] = minute

        hour = self._hour_counters.get(tool_id)
        if hour is None or now - hour.window_start > HOURLY_WINDOW_SECONDS:
            hour = RateLimitCounter(count=0, window_start=now)
            self._hour_counters[tool_id] = hour

        if minute.count >= limits.max_calls_per_minute or hour.count >= limits.max_calls_per_hour:
            server_name, tool_name = _split_tool_id(tool_id)
            self._record(
                SecurityViolation(
                    type="rate_limit",
                    message=f"Rate limit exceeded for tool {tool_id}",
                    server_name=server_name,
                    tool_name=tool_name,
                )
            )
            return False, 0

        minute.count += 1
        hour.count += 1
        return True, limits.max_calls_per_minute - minute.count

    def reset_rate_limits(self) -> None:
        self._minute_counters.clear()
        self._hour_counters.clear()

    # ------------------------------------------------------------------
    # Violations
    # ------------------------------------------------------------------

    def _record(self, violation: SecurityViolation) -> None:
        self._violations.append(violation)
        logger.warning(f"Security violation ({violation.type}): {violation.message}")
        if self._audit_file is None:
            return
        try:
            self._audit_file.parent.mkdir(parents=True, exist_ok=True)
            with self._audit_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(violation.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to write security audit log: {e}")

    def get_violations(self) -> List[SecurityViolation]:
        return list(self._violations)

    def clear_violations(self) -> None:
        self._violations.clear()

    def get_security_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for v in self._violations:
            by_type[v.type] = by_type.get(v.type, 0) + 1
        return {
            "total_violations": len(self._violations),
            "violations_by_type": by_type,
            "rate_limit_hits": by_type.get("rate_limit", 0),
        }

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_security_config(self, changes: Union[SecurityConfig, Dict[str, Any], None] = None, **kwargs: Any) -> SecurityConfig:
        if isinstance(changes, SecurityConfig):
            self._config = changes.model_copy(deep=True)
            return self.get_security_config()

        merged = self._config.model_dump()
        updates = {**(changes or {}), **kwargs}
        rate = updates.pop("rate_limiting", None)
        if isinstance(rate, RateLimitSettings):
            rate = rate.model_dump()
        if rate:
            merged["rate_limiting"].update(rate)
        merged.update(updates)
        self._config = SecurityConfig.model_validate(merged)
        logger.info("Security configuration updated")
        return self.get_security_config()

    def get_security_config(self) -> SecurityConfig:
        return self._config.model_copy(deep=True)

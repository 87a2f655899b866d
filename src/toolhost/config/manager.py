"""
Configuration Manager - Settings and preferences.

Handles YAML/JSON configuration, environment overrides and the persisted
list of capability servers.
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from loguru import logger
from pydantic import ValidationError

from toolhost.mcp.types import ServerConfig
from toolhost.security.policy import SecurityConfig


class ConfigManager:
    """
    Configuration manager for toolhost.

    Features:
    - YAML/JSON configuration files
    - Environment variable overrides
    - Change watchers
    - Default values
    """

    DEFAULT_CONFIG = {
        "app": {
            "name": "toolhost",
            "version": "0.1.0",
            "debug": False,
        },
        "security": SecurityConfig().model_dump(),
        "mcp": {
            "timeouts": {
                "start_seconds": 30.0,
                "list_tools_seconds": 30.0,
                "call_tool_seconds": 300.0,
            },
            "discovery": {
                "retries": 3,
                "backoff_seconds": 0.5,
            },
            "servers": [],
        },
        "tools": {
            "workspace_dir": "workspace",
            "memory_file": "workspace/memory.md",
            "confirmation_timeout_seconds": 60.0,
        },
        "logging": {
            "audit_file": "logs/security_audit.jsonl",
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to configuration file
        """
        self._config_path = Path(config_path) if config_path else Path("config.yaml")
        self._config: Dict[str, Any] = copy.deepcopy(self.DEFAULT_CONFIG)
        self._watchers: List[Callable[[str, Any], None]] = []
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._config_path

    async def load(self) -> None:
        """Load configuration from file."""
        self._config = copy.deepcopy(self.DEFAULT_CONFIG)

        if self._config_path.exists():
            try:
                content = self._config_path.read_text(encoding="utf-8")
                if self._config_path.suffix in [".yaml", ".yml"]:
                    file_config = yaml.safe_load(content) or {}
                else:
                    file_config = json.loads(content)
                self._deep_merge(self._config, file_config)
                logger.info(f"Configuration loaded from {self._config_path}")
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        else:
            await self.save()
            logger.info("Created default configuration file")

        self._apply_env_overrides()
        self._loaded = True

    async def save(self) -> None:
        """Save configuration to file."""
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)
            if self._config_path.suffix in [".yaml", ".yml"]:
                content = yaml.safe_dump(self._config, default_flow_style=False, sort_keys=False)
            else:
                content = json.dumps(self._config, indent=2)
            self._config_path.write_text(content, encoding="utf-8")
            logger.debug(f"Configuration saved to {self._config_path}")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "mcp.timeouts.start_seconds")
            default: Default value if not found
        """
        value: Any = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dot-notation key and notify watchers."""
        parts = key.split(".")
        config = self._config
        for part in parts[:-1]:
            if not isinstance(config.get(part), dict):
                config[part] = {}
            config = config[part]
        config[parts[-1]] = value

        for watcher in self._watchers:
            try:
                watcher(key, value)
            except Exception as e:
                logger.warning(f"Config watcher error: {e}")

    def watch(self, callback: Callable[[str, Any], None]) -> None:
        self._watchers.append(callback)

    def unwatch(self, callback: Callable[[str, Any], None]) -> None:
        if callback in self._watchers:
            self._watchers.remove(callback)

    # ------------------------------------------------------------------
    # Typed sections
    # ------------------------------------------------------------------

    def get_server_configs(self) -> List[ServerConfig]:
        """Persisted servers; malformed entries are skipped."""
        out: List[ServerConfig] = []
        for raw in self.get("mcp.servers", []) or []:
            try:
                out.append(ServerConfig.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed server entry {raw!r}: {e}")
        return out

    def set_server_configs(self, configs: List[ServerConfig]) -> None:
        self.set("mcp.servers", [c.to_settings() for c in configs])

    def get_security_config(self) -> SecurityConfig:
        try:
            return SecurityConfig.model_validate(self.get("security", {}) or {})
        except ValidationError as e:
            logger.warning(f"Invalid security section, using defaults: {e}")
            return SecurityConfig()

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        env_mappings = {
            "TOOLHOST_DEBUG": ("app.debug", lambda x: x.lower() == "true"),
            "TOOLHOST_WORKSPACE": ("tools.workspace_dir", str),
            "TOOLHOST_RATE_LIMIT": ("security.rate_limiting.max_calls_per_minute", int),
        }

        for env_var, (config_key, converter) in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                try:
                    self.set(config_key, converter(value))
                    logger.debug(f"Applied env override: {env_var}")
                except ValueError as e:
                    logger.warning(f"Failed to apply {env_var}: {e}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    @property
    def all(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

"""Central registry for MCP server configurations.

The registry is the one piece of shared mutable state in the connection
layer. Entries are immutable ``MCPServerConfig`` objects and every write
swaps a whole entry under a lock, so readers always see either the old or
the new configuration.
"""
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import MCPServerConfig
from .errors import ConfigNotFoundError

logger = logging.getLogger(__name__)


class ServerRegistry:
    """Registry of MCP server configurations keyed by server name."""

    def __init__(self):
        self._configs: Dict[str, MCPServerConfig] = {}
        self._lock = threading.Lock()

    def register(self, config: MCPServerConfig) -> None:
        """Insert or replace the configuration for ``config.name``.

        Args:
            config: The server configuration to register
        """
        with self._lock:
            replaced = config.name in self._configs
            self._configs[config.name] = config
        if replaced:
            logger.info(f"MCP server '{config.name}' re-registered (transport={config.transport.value})")
        else:
            logger.debug(f"Registered MCP server: {config.name} (transport={config.transport.value})")

    def get(self, name: str) -> MCPServerConfig:
        """Get a server configuration by name.

        Raises:
            ConfigNotFoundError: If no configuration is registered under ``name``
        """
        with self._lock:
            config = self._configs.get(name)
        if config is None:
            raise ConfigNotFoundError(name)
        return config

    def with_override(self, name: str, **patch: Any) -> MCPServerConfig:
        """Derive a configuration with some fields replaced.

        The registry itself is left untouched; the derived config is only
        visible to whoever holds the returned object.

        Args:
            name: Name of the registered base configuration
            **patch: Field values to replace (e.g. ``url="https://..."``)

        Returns:
            A validated, derived MCPServerConfig

        Raises:
            ConfigNotFoundError: If ``name`` is not registered
            ValueError: If ``patch`` names unknown fields or yields an invalid config
        """
        base = self.get(name)
        unknown = set(patch) - set(MCPServerConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown MCPServerConfig fields: {sorted(unknown)}")
        if "name" in patch and patch["name"] != name:
            raise ValueError("An override cannot rename the server")

        data = base.model_dump(exclude={"server_instance"})
        data["server_instance"] = base.server_instance
        data.update(patch)
        return MCPServerConfig.model_validate(data)

    def unregister(self, name: str) -> bool:
        """Remove a server configuration.

        Returns:
            True if the server was found and removed, False otherwise
        """
        with self._lock:
            removed = self._configs.pop(name, None) is not None
        if removed:
            logger.debug(f"Unregistered MCP server: {name}")
        return removed

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._configs

    def get_names(self) -> List[str]:
        with self._lock:
            return list(self._configs.keys())

    def get_all(self) -> List[MCPServerConfig]:
        with self._lock:
            return list(self._configs.values())

    def load_from_json(self, path: Path) -> List[MCPServerConfig]:
        """Load server configurations from a JSON file.

        Expected format::

            {
                "servers": [
                    {"name": "github", "transport": "stdio", "command": "npx", ...},
                    {"name": "search", "transport": "http", "url": "https://..."}
                ]
            }

        Args:
            path: Path to the JSON file

        Returns:
            List of registered configurations

        Raises:
            ValueError: If the file is not valid JSON or holds an invalid entry
        """
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid MCP server file {path}: {e}") from e

        loaded = []
        for server_data in data.get("servers", []):
            config = MCPServerConfig.model_validate(server_data)
            self.register(config)
            loaded.append(config)

        logger.info(f"Loaded {len(loaded)} MCP servers from {path}")
        return loaded


# Lazily created process registry
_default_registry: Optional[ServerRegistry] = None


def get_default_registry() -> ServerRegistry:
    """Get the process-wide server registry, creating it on first access."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ServerRegistry()
    return _default_registry


def reset_default_registry() -> None:
    """Reset the default registry (primarily for testing)."""
    global _default_registry
    _default_registry = None

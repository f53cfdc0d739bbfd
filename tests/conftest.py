"""Test configuration and fixtures."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from llming_connect.mcp.config import MCPServerConfig, TransportKind
from llming_connect.mcp.connection import InProcessMCPServer
from llming_connect.mcp.credentials import CredentialSet
from llming_connect.mcp.errors import MCPError
from llming_connect.mcp.manager import MCPClientManager
from llming_connect.mcp.registry import ServerRegistry

GOOD_KEY = "good-key"
BAD_KEY = "bad-key"


class KeyCheckingServer(InProcessMCPServer):
    """In-process server that only accepts known API keys.

    ``delays`` maps a key to the seconds its authentication takes, which lets
    tests interleave concurrent attempts deterministically.
    """

    def __init__(self, valid_keys=(GOOD_KEY,), delays: Optional[Dict[str, float]] = None):
        self.valid_keys = set(valid_keys)
        self.delays = delays or {}
        self.authenticated: List[str] = []

    async def authenticate(self, credentials: CredentialSet) -> None:
        key = credentials.api_key.get_secret_value() if credentials.api_key else None
        delay = self.delays.get(key, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if key not in self.valid_keys:
            raise MCPError("Invalid API key")
        self.authenticated.append(key)

    async def list_tools(self) -> List[Dict[str, Any]]:
        return [
            {"name": "lookup", "description": "Look something up", "inputSchema": {"type": "object", "properties": {}}},
            {"name": "summarize", "description": "Summarize", "inputSchema": {"type": "object", "properties": {}}},
        ]


@pytest.fixture
def key_server() -> KeyCheckingServer:
    return KeyCheckingServer()


@pytest.fixture
def registry(key_server) -> ServerRegistry:
    """Registry with one in-process and one HTTP server."""
    registry = ServerRegistry()
    registry.register(MCPServerConfig(name="inproc", server_instance=key_server))
    registry.register(MCPServerConfig(name="search", transport=TransportKind.HTTP, url="https://a.example"))
    return registry


@pytest.fixture
def manager(registry) -> MCPClientManager:
    return MCPClientManager(registry, connect_timeout=5.0)

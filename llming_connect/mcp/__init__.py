"""MCP (Model Context Protocol) server registry, BYOK credentials and per-user connections.

Transport drivers and the manager are imported lazily so that configuration
and credential handling can be used without pulling in aiohttp.
"""

from llming_connect.mcp.config import MCPServerConfig, TransportKind
from llming_connect.mcp.credentials import AuthType, CredentialSet, classify
from llming_connect.mcp.errors import (
    MCPError,
    RejectedEmptyError,
    ConfigNotFoundError,
    ConnectionTestFailedError,
    ConnectionTimeoutError,
    UnauthenticatedError,
    StoreError,
)
from llming_connect.mcp.registry import ServerRegistry, get_default_registry, reset_default_registry

__all__ = [
    "MCPServerConfig",
    "TransportKind",
    "AuthType",
    "CredentialSet",
    "classify",
    "MCPError",
    "RejectedEmptyError",
    "ConfigNotFoundError",
    "ConnectionTestFailedError",
    "ConnectionTimeoutError",
    "UnauthenticatedError",
    "StoreError",
    "ServerRegistry",
    "get_default_registry",
    "reset_default_registry",
    "MCPClientManager",
    "ConnectionHandle",
    "ConnectionState",
    "MCPConnection",
    "InProcessMCPServer",
    "create_connection",
    "register_default_servers",
]


def __getattr__(name: str):
    """Lazy imports for the aiohttp-backed modules."""
    _connection_names = {
        "MCPConnection", "MCPStdioConnection", "MCPHTTPConnection", "MCPSSEConnection",
        "MCPInProcessConnection", "InProcessMCPServer", "create_connection",
    }
    _manager_names = {"MCPClientManager", "ConnectionHandle", "ConnectionState"}
    if name in _connection_names:
        from llming_connect.mcp import connection as _conn
        return getattr(_conn, name)
    if name in _manager_names:
        from llming_connect.mcp import manager as _manager
        return getattr(_manager, name)
    if name == "register_default_servers":
        from llming_connect.mcp.servers import register_default_servers
        return register_default_servers
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

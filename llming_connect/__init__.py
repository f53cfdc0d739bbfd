"""llming-connect — per-user BYOK connections to MCP servers."""

from llming_connect.mcp.config import MCPServerConfig, TransportKind
from llming_connect.mcp.credentials import AuthType, CredentialSet, classify
from llming_connect.mcp.errors import (
    MCPError,
    RejectedEmptyError,
    ConfigNotFoundError,
    ConnectionTestFailedError,
    ConnectionTimeoutError,
)
from llming_connect.mcp.registry import ServerRegistry
from llming_connect.config import ConnectSettings

__version__ = "0.1.0"

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
    "ServerRegistry",
    "ConnectSettings",
    "MCPClientManager",
    "ConnectionHandle",
    "ConnectionState",
]


def __getattr__(name: str):
    if name in ("MCPClientManager", "ConnectionHandle", "ConnectionState"):
        from llming_connect.mcp import manager
        return getattr(manager, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Error taxonomy for MCP connection attempts."""
from typing import Optional


class MCPError(Exception):
    """Base exception for MCP configuration and connection errors."""
    pass


class RejectedEmptyError(MCPError):
    """Raised when a connection attempt carries no credential material."""

    def __init__(self, message: str = "API key, API token, or custom environment variables are required"):
        super().__init__(message)


class ConfigNotFoundError(MCPError):
    """Raised when no server configuration is registered under a name."""

    def __init__(self, server_name: str):
        self.server_name = server_name
        super().__init__(f"MCP server '{server_name}' is not registered")


class ConnectionTestFailedError(MCPError):
    """Raised when the transport handshake or connection test fails.

    ``reason`` is the driver's failure message and is surfaced verbatim
    to the caller.
    """

    def __init__(self, server_name: str, reason: str):
        self.server_name = server_name
        self.reason = reason
        super().__init__(reason)


class ConnectionTimeoutError(ConnectionTestFailedError):
    """Raised when the handshake exceeds the caller-supplied timeout."""

    def __init__(self, server_name: str, timeout: Optional[float]):
        self.timeout = timeout
        super().__init__(server_name, f"Connection to '{server_name}' timed out after {timeout}s")


class UnauthenticatedError(MCPError):
    """Raised by identity resolvers when the caller cannot be identified."""
    pass


class StoreError(MCPError):
    """Raised when a connection record cannot be read or written."""
    pass

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class ConnectSettings:
    """Defines the runtime settings of the connection service."""
    connect_timeout: float = 30.0
    """Seconds a BYOK connection test may take before it is abandoned."""
    user_header: str = "x-user-id"
    """Request header carrying the authenticated user id (set by the auth proxy)."""
    mongo_uri: Optional[str] = None
    """MongoDB connection string. Without it connection records are kept in memory."""
    mongo_db: str = "llming_connect"
    """MongoDB database for connection records."""
    mongo_collection: str = "mcp_connections"
    """MongoDB collection for connection records."""
    credentials_key: Optional[str] = None
    """Fernet key used to encrypt stored credentials. Required with MongoDB."""
    servers_file: Optional[Path] = None
    """Optional JSON file with additional MCP server definitions."""
    port: int = 8000
    """HTTP port of the standalone server."""
    cors_origins: list[str] = field(default_factory=list)
    """Origins allowed to call the API from a browser."""

    @classmethod
    def from_env(cls) -> "ConnectSettings":
        """Build settings from environment variables.

        :return: Settings with defaults for every unset variable
        :raises ValueError: If a numeric variable cannot be parsed
        """
        servers_file = os.environ.get("MCP_SERVERS_FILE")
        origins = os.environ.get("MCP_CORS_ORIGINS", "")
        return cls(
            connect_timeout=float(os.environ.get("MCP_CONNECT_TIMEOUT", "30")),
            user_header=os.environ.get("MCP_USER_HEADER", "x-user-id"),
            mongo_uri=os.environ.get("MONGODB_CONNECTION") or None,
            mongo_db=os.environ.get("MCP_MONGODB_DB", "llming_connect"),
            mongo_collection=os.environ.get("MCP_MONGODB_COLLECTION", "mcp_connections"),
            credentials_key=os.environ.get("MCP_CREDENTIALS_KEY") or None,
            servers_file=Path(servers_file) if servers_file else None,
            port=int(os.environ.get("PORT", "8000")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )

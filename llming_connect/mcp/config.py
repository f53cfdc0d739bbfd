"""Configuration for connecting to MCP servers."""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TransportKind(str, Enum):
    """Connection mechanism declared by a server configuration."""
    STDIO = "stdio"
    SSE = "sse"
    HTTP = "http"
    INPROCESS = "inprocess"


NETWORK_TRANSPORTS = frozenset({TransportKind.SSE, TransportKind.HTTP})


class MCPServerConfig(BaseModel):
    """Configuration for connecting to an MCP server.

    Instances are immutable; use ``ServerRegistry.with_override`` to derive
    a modified copy.
    """
    name: str = Field(..., min_length=1, description="Unique server name used as registry key")
    transport: TransportKind = Field(..., description="Transport kind; inferred from the populated fields when omitted")

    # Stdio mode
    command: Optional[str] = Field(None, description="Command to execute for stdio transport")
    args: Optional[List[str]] = Field(None, description="Arguments for the command")
    env: Optional[Dict[str, str]] = Field(None, description="Environment variables to set")
    cwd: Optional[str] = Field(None, description="Working directory for the command")

    # HTTP / SSE mode
    url: Optional[str] = Field(None, description="URL for HTTP/SSE transport")
    headers: Optional[Dict[str, str]] = Field(None, description="Additional HTTP headers")

    # In-process mode
    server_instance: Optional[Any] = Field(None, exclude=True, description="In-process MCP server instance")

    # How user credentials reach the server
    api_key_env: Optional[str] = Field(None, description="Env var receiving the API key (stdio)")
    api_token_env: Optional[str] = Field(None, description="Env var receiving the API token (stdio)")
    api_key_header: str = Field("Authorization", description="Header carrying the API key (HTTP/SSE)")
    api_key_prefix: str = Field("Bearer ", description="Prefix prepended to the API key header value")
    api_token_header: str = Field("X-API-Token", description="Header carrying the API token (HTTP/SSE)")

    # UI metadata
    label: Optional[str] = Field(None, description="Display name (e.g. 'GitHub')")
    description: Optional[str] = Field(None, description="Short description for UI")
    category: Optional[str] = Field(None, description="Grouping category (e.g. 'Developer')")

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True, use_enum_values=False)

    @model_validator(mode="before")
    @classmethod
    def _infer_transport(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("transport"):
            data = dict(data)
            if data.get("server_instance") is not None:
                data["transport"] = TransportKind.INPROCESS
            elif data.get("command"):
                data["transport"] = TransportKind.STDIO
            elif data.get("url"):
                data["transport"] = TransportKind.HTTP
        return data

    @model_validator(mode="after")
    def _check_transport_fields(self) -> "MCPServerConfig":
        if self.transport == TransportKind.STDIO and not self.command:
            raise ValueError("stdio transport requires 'command'")
        if self.transport in NETWORK_TRANSPORTS and not self.url:
            raise ValueError(f"{self.transport.value} transport requires 'url'")
        if self.transport == TransportKind.INPROCESS and self.server_instance is None:
            raise ValueError("inprocess transport requires 'server_instance'")
        return self

    def is_stdio(self) -> bool:
        """Check if this is a stdio-based connection."""
        return self.transport == TransportKind.STDIO

    def is_network(self) -> bool:
        """Check if this is an HTTP or SSE connection."""
        return self.transport in NETWORK_TRANSPORTS

    def is_inprocess(self) -> bool:
        """Check if this is an in-process server."""
        return self.transport == TransportKind.INPROCESS

    @property
    def endpoint(self) -> Optional[str]:
        """Network address, only meaningful for HTTP/SSE transports."""
        return self.url if self.is_network() else None

"""MCP client manager: per-user connections to registered MCP servers.

The manager owns a :class:`ServerRegistry` and the live connections opened
through it. Connections are keyed by ``(server_name, user_id)`` so one
user's credentials and session state are never reachable through another
user's key.

Concurrent ``connect`` calls for the same key are not serialized: the
attempt that completes last wins and the connection it displaces is closed.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .config import MCPServerConfig
from .connection import MCPConnection, create_connection
from .credentials import AuthType, CredentialSet
from .errors import ConnectionTestFailedError, ConnectionTimeoutError
from .registry import ServerRegistry

logger = logging.getLogger(__name__)

ConnectionKey = Tuple[str, str]
ConnectionFactory = Callable[[MCPServerConfig, CredentialSet], MCPConnection]

DEFAULT_CONNECT_TIMEOUT = 30.0


class ConnectionState(str, Enum):
    """Lifecycle state of the connection for one ``(server_name, user_id)`` key."""
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class ConnectionHandle:
    """A live, tested connection between one user and one MCP server."""
    server_name: str
    user_id: str
    auth_type: AuthType
    connection: MCPConnection
    effective_endpoint: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    connected_at: float = field(default_factory=time.time)

    @property
    def key(self) -> ConnectionKey:
        return self.server_name, self.user_id

    async def close(self) -> None:
        await self.connection.close()


class MCPClientManager:
    """Manages MCP server configurations and per-user connections."""

    def __init__(
        self,
        registry: Optional[ServerRegistry] = None,
        *,
        connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT,
        connection_factory: ConnectionFactory = create_connection,
    ):
        """Initialize the manager.

        :param registry: Server registry to use; a private one is created if omitted
        :param connect_timeout: Default bound in seconds for a connect attempt, None for no bound
        :param connection_factory: Builds a transport driver for a config and credential set
        """
        self.registry = registry or ServerRegistry()
        self.connect_timeout = connect_timeout
        self._connection_factory = connection_factory
        self._connections: Dict[ConnectionKey, ConnectionHandle] = {}
        self._states: Dict[ConnectionKey, ConnectionState] = {}
        # Latest unsettled attempt per key; ids come from one counter so they never repeat
        self._attempts: Dict[ConnectionKey, int] = {}
        self._attempt_ids = itertools.count(1)

    # ── Configuration ─────────────────────────────────────────

    def register_server(self, config: MCPServerConfig) -> None:
        """Register or replace a server configuration.

        This is a global mutation: every user connecting afterwards sees the
        new configuration. Use ``connect(..., endpoint=...)`` for a one-off
        endpoint instead.
        """
        self.registry.register(config)

    def get_config(self, server_name: str) -> MCPServerConfig:
        """Get the registered configuration for a server.

        :raises ConfigNotFoundError: If the server is not registered
        """
        return self.registry.get(server_name)

    def _resolve_config(self, server_name: str, endpoint: Optional[str]) -> MCPServerConfig:
        config = self.registry.get(server_name)
        if not endpoint or endpoint == config.url:
            return config
        if not config.is_network():
            logger.warning(f"Ignoring endpoint override for {config.transport.value} server '{server_name}'")
            return config
        return self.registry.with_override(server_name, url=endpoint)

    # ── Connections ───────────────────────────────────────────

    async def connect(
        self,
        server_name: str,
        credentials: CredentialSet,
        user_id: str,
        *,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ConnectionHandle:
        """Open and test a connection to ``server_name`` for ``user_id``.

        :param server_name: Name of a registered server
        :param credentials: The user's credential set
        :param user_id: Stable identifier of the connecting user
        :param endpoint: Endpoint to use for this attempt only (HTTP/SSE servers)
        :param timeout: Bound in seconds for the handshake; defaults to ``connect_timeout``
        :return: The connected handle, also retrievable via ``get_connection``

        :raises ConfigNotFoundError: If the server is not registered
        :raises ConnectionTimeoutError: If the handshake exceeds the timeout
        :raises ConnectionTestFailedError: If the handshake or connection test fails
        """
        if not user_id:
            raise ValueError("user_id is required")
        config = self._resolve_config(server_name, endpoint)
        key: ConnectionKey = (server_name, user_id)
        timeout = self.connect_timeout if timeout is None else timeout

        attempt = next(self._attempt_ids)
        self._attempts[key] = attempt
        self._states[key] = ConnectionState.CONNECTING
        logger.info(
            f"Connecting MCP server '{server_name}' for user {user_id} "
            f"(transport={config.transport.value}, auth={credentials.auth_type.value})"
        )

        connection: Optional[MCPConnection] = None
        try:
            connection = self._connection_factory(config, credentials)
            tools = await asyncio.wait_for(connection.handshake(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._discard(key, attempt, connection)
            logger.warning(f"MCP server '{server_name}' timed out after {timeout}s for user {user_id}")
            raise ConnectionTimeoutError(server_name, timeout)
        except asyncio.CancelledError:
            await self._discard(key, attempt, connection)
            raise
        except Exception as e:
            await self._discard(key, attempt, connection)
            logger.warning(f"MCP connection test failed for '{server_name}' (user {user_id}): {e}")
            raise ConnectionTestFailedError(server_name, str(e) or type(e).__name__) from e

        handle = ConnectionHandle(
            server_name=server_name,
            user_id=user_id,
            auth_type=credentials.auth_type,
            connection=connection,
            effective_endpoint=config.endpoint,
            tools=tools,
        )
        previous = self._connections.get(key)
        self._connections[key] = handle
        latest = self._attempts.get(key)
        if latest == attempt:
            del self._attempts[key]
        if latest in (attempt, None):
            self._states[key] = ConnectionState.CONNECTED
        if previous is not None:
            await previous.close()
        logger.info(f"MCP server '{server_name}' connected for user {user_id} ({len(tools)} tools)")
        return handle

    async def _discard(self, key: ConnectionKey, attempt: int, connection: Optional[MCPConnection]) -> None:
        """Unwind a failed attempt and update the key's state."""
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Error while closing failed MCP connection {key}: {e}")
        if self._attempts.get(key) == attempt:
            del self._attempts[key]
            self._states[key] = ConnectionState.CONNECTED if key in self._connections else ConnectionState.FAILED

    async def disconnect(self, server_name: str, user_id: str) -> bool:
        """Close and forget the connection for a key.

        :return: True if a connection was closed
        """
        key = (server_name, user_id)
        handle = self._connections.pop(key, None)
        self._states.pop(key, None)
        self._attempts.pop(key, None)
        if handle is None:
            return False
        await handle.close()
        logger.info(f"MCP server '{server_name}' disconnected for user {user_id}")
        return True

    def get_connection(self, server_name: str, user_id: str) -> Optional[ConnectionHandle]:
        return self._connections.get((server_name, user_id))

    def get_state(self, server_name: str, user_id: str) -> ConnectionState:
        return self._states.get((server_name, user_id), ConnectionState.UNCONNECTED)

    def get_user_connections(self, user_id: str) -> List[ConnectionHandle]:
        return [h for (_, uid), h in self._connections.items() if uid == user_id]

    @property
    def active_count(self) -> int:
        return len(self._connections)

    async def close_all(self) -> None:
        """Close every live connection. Call on application shutdown."""
        handles = list(self._connections.values())
        self._connections.clear()
        self._states.clear()
        self._attempts.clear()
        results = await asyncio.gather(*(h.close() for h in handles), return_exceptions=True)
        for handle, result in zip(handles, results):
            if isinstance(result, Exception):
                logger.warning(f"Error closing MCP connection {handle.key}: {result}")
        if handles:
            logger.info(f"Closed {len(handles)} MCP connections")

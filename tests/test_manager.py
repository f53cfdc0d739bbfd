"""Tests for MCPClientManager connection handling."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from llming_connect.mcp.config import MCPServerConfig, TransportKind
from llming_connect.mcp.connection import MCPConnection, MCPInProcessConnection
from llming_connect.mcp.credentials import AuthType, CredentialSet, classify
from llming_connect.mcp.errors import (
    ConfigNotFoundError,
    ConnectionTestFailedError,
    ConnectionTimeoutError,
    MCPError,
)
from llming_connect.mcp.manager import ConnectionState, MCPClientManager
from llming_connect.mcp.registry import ServerRegistry

from .conftest import BAD_KEY, GOOD_KEY, KeyCheckingServer


class RecordingConnection(MCPConnection):
    """Driver double that records what it was asked to do."""

    def __init__(self, config: MCPServerConfig, credentials: CredentialSet, delay: float = 0.0, error: Optional[str] = None):
        super().__init__(config, credentials)
        self.delay = delay
        self.error = error
        self.closed = False

    async def start(self) -> None:
        self._started = True
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise MCPError(self.error)

    async def list_tools(self) -> List[Dict[str, Any]]:
        return [{"name": "search"}]

    async def close(self) -> None:
        self.closed = True
        self._started = False


class RecordingFactory:
    """Connection factory returning RecordingConnections with per-key behaviour."""

    def __init__(self, delays: Optional[Dict[str, float]] = None, errors: Optional[Dict[str, str]] = None):
        self.delays = delays or {}
        self.errors = errors or {}
        self.created: List[RecordingConnection] = []

    def __call__(self, config: MCPServerConfig, credentials: CredentialSet) -> RecordingConnection:
        key = credentials.api_key.get_secret_value() if credentials.api_key else None
        conn = RecordingConnection(config, credentials, self.delays.get(key, 0.0), self.errors.get(key))
        self.created.append(conn)
        return conn


@pytest.fixture
def factory() -> RecordingFactory:
    return RecordingFactory()


@pytest.fixture
def recording_manager(registry, factory) -> MCPClientManager:
    return MCPClientManager(registry, connect_timeout=5.0, connection_factory=factory)


class TestConnect:
    """Tests for successful and failing connect attempts."""

    @pytest.mark.asyncio
    async def test_connect_in_process(self, manager, key_server):
        """Test connecting to an in-process server with a valid key."""
        handle = await manager.connect("inproc", classify(api_key=GOOD_KEY), "user-1")

        assert handle.server_name == "inproc"
        assert handle.user_id == "user-1"
        assert handle.auth_type == AuthType.API_KEY
        assert handle.tools == ["lookup", "summarize"]
        assert handle.effective_endpoint is None
        assert isinstance(handle.connection, MCPInProcessConnection)
        assert manager.get_connection("inproc", "user-1") is handle
        assert manager.get_state("inproc", "user-1") == ConnectionState.CONNECTED
        assert key_server.authenticated == [GOOD_KEY]

    @pytest.mark.asyncio
    async def test_connect_rejected_credentials(self, manager):
        """Test that rejected credentials raise ConnectionTestFailedError and leave nothing behind."""
        with pytest.raises(ConnectionTestFailedError) as exc_info:
            await manager.connect("inproc", classify(api_key=BAD_KEY), "user-1")

        assert exc_info.value.reason == "Invalid API key"
        assert exc_info.value.server_name == "inproc"
        assert manager.get_connection("inproc", "user-1") is None
        assert manager.get_state("inproc", "user-1") == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_unknown_server_never_reaches_transport(self, recording_manager, factory):
        """Test that an unregistered server fails before any driver is created."""
        with pytest.raises(ConfigNotFoundError):
            await recording_manager.connect("nope", classify(api_key=GOOD_KEY), "user-1")
        assert factory.created == []
        assert recording_manager.get_state("nope", "user-1") == ConnectionState.UNCONNECTED

    @pytest.mark.asyncio
    async def test_failed_driver_is_closed(self, registry):
        """Test that a driver failing its handshake is closed before the error propagates."""
        factory = RecordingFactory(errors={BAD_KEY: "HTTP 500"})
        manager = MCPClientManager(registry, connection_factory=factory)

        with pytest.raises(ConnectionTestFailedError):
            await manager.connect("search", classify(api_key=BAD_KEY), "user-1")

        assert len(factory.created) == 1
        assert factory.created[0].closed

    @pytest.mark.asyncio
    async def test_empty_user_id_rejected(self, manager):
        with pytest.raises(ValueError):
            await manager.connect("inproc", classify(api_key=GOOD_KEY), "")

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, manager):
        """Test that a new attempt after a failure starts cleanly."""
        with pytest.raises(ConnectionTestFailedError):
            await manager.connect("inproc", classify(api_key=BAD_KEY), "user-1")
        handle = await manager.connect("inproc", classify(api_key=GOOD_KEY), "user-1")
        assert manager.get_connection("inproc", "user-1") is handle
        assert manager.get_state("inproc", "user-1") == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_failed_retry_keeps_existing_connection(self, manager):
        """Test that a failing attempt does not tear down a live connection for the key."""
        handle = await manager.connect("inproc", classify(api_key=GOOD_KEY), "user-1")
        with pytest.raises(ConnectionTestFailedError):
            await manager.connect("inproc", classify(api_key=BAD_KEY), "user-1")
        assert manager.get_connection("inproc", "user-1") is handle
        assert manager.get_state("inproc", "user-1") == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_state_is_connecting_during_handshake(self, registry):
        factory = RecordingFactory(delays={GOOD_KEY: 0.2})
        manager = MCPClientManager(registry, connection_factory=factory)

        task = asyncio.create_task(manager.connect("search", classify(api_key=GOOD_KEY), "user-1"))
        await asyncio.sleep(0.05)
        assert manager.get_state("search", "user-1") == ConnectionState.CONNECTING
        await task
        assert manager.get_state("search", "user-1") == ConnectionState.CONNECTED


class TestIsolation:
    """Tests for per-user isolation of concurrent attempts."""

    @pytest.mark.asyncio
    async def test_invalid_credentials_do_not_affect_other_user(self):
        """Test that one user's failure does not fail another user's concurrent attempt."""
        server = KeyCheckingServer(delays={GOOD_KEY: 0.1, BAD_KEY: 0.05})
        registry = ServerRegistry()
        registry.register(MCPServerConfig(name="inproc", server_instance=server))
        manager = MCPClientManager(registry)

        good, bad = await asyncio.gather(
            manager.connect("inproc", classify(api_key=GOOD_KEY), "alice"),
            manager.connect("inproc", classify(api_key=BAD_KEY), "bob"),
            return_exceptions=True,
        )

        assert not isinstance(good, Exception)
        assert good.user_id == "alice"
        assert isinstance(bad, ConnectionTestFailedError)
        assert manager.get_state("inproc", "alice") == ConnectionState.CONNECTED
        assert manager.get_state("inproc", "bob") == ConnectionState.FAILED
        assert manager.get_connection("inproc", "bob") is None

    @pytest.mark.asyncio
    async def test_connections_hold_their_own_credentials(self, manager):
        alice = await manager.connect("inproc", classify(api_key=GOOD_KEY, custom_env={"WHO": "alice"}), "alice")
        bob = await manager.connect("inproc", classify(api_key=GOOD_KEY, custom_env={"WHO": "bob"}), "bob")

        assert alice.connection is not bob.connection
        assert alice.connection.credentials.custom_env["WHO"].get_secret_value() == "alice"
        assert bob.connection.credentials.custom_env["WHO"].get_secret_value() == "bob"
        assert [h.user_id for h in manager.get_user_connections("alice")] == ["alice"]

    @pytest.mark.asyncio
    async def test_same_key_last_completion_wins(self, registry):
        """Test that racing attempts for one key keep the last completed one and close the other."""
        factory = RecordingFactory(delays={"slow": 0.15, "fast": 0.0})
        manager = MCPClientManager(registry, connection_factory=factory)

        slow, fast = await asyncio.gather(
            manager.connect("search", classify(api_key="slow"), "user-1"),
            manager.connect("search", classify(api_key="fast"), "user-1"),
        )

        assert manager.get_connection("search", "user-1") is slow
        assert fast.connection.closed
        assert not slow.connection.closed
        assert manager.active_count == 1


class TestUnexpectedDriverErrors:
    """Tests for drivers failing with exceptions outside the MCP error types."""

    @pytest.mark.asyncio
    async def test_unexpected_error_is_unwound(self, registry):
        """Test that a driver raising TypeError is closed and reported as a failed test."""
        created = []

        class MalformedToolsConnection(RecordingConnection):
            async def list_tools(self):
                return list(None)

        def factory(config, credentials):
            conn = MalformedToolsConnection(config, credentials)
            created.append(conn)
            return conn

        manager = MCPClientManager(registry, connection_factory=factory)

        with pytest.raises(ConnectionTestFailedError) as exc_info:
            await manager.connect("search", classify(api_key=GOOD_KEY), "user-1")

        assert isinstance(exc_info.value.__cause__, TypeError)
        assert created[0].closed
        assert manager.get_state("search", "user-1") == ConnectionState.FAILED
        assert manager.get_connection("search", "user-1") is None

    @pytest.mark.parametrize("result", [{"tools": None}, {"tools": "search"}, ["search"]])
    def test_malformed_tools_result_rejected(self, result):
        with pytest.raises(MCPError, match="Malformed tools/list result"):
            MCPConnection._result_tools(result)

    def test_tools_result_keeps_descriptors(self):
        assert MCPConnection._result_tools(None) == []
        assert MCPConnection._result_tools({"tools": [{"name": "a"}, "junk"]}) == [{"name": "a"}]


class TestAttemptBookkeeping:
    """Tests for the state reported after overlapping attempts settle."""

    @pytest.mark.asyncio
    async def test_older_success_after_newer_failure_is_connected(self, registry):
        """Test that a handle installed after a newer attempt failed reports connected."""
        factory = RecordingFactory(delays={"slow": 0.15}, errors={BAD_KEY: "Invalid API key"})
        manager = MCPClientManager(registry, connection_factory=factory)

        slow, bad = await asyncio.gather(
            manager.connect("search", classify(api_key="slow"), "user-1"),
            manager.connect("search", classify(api_key=BAD_KEY), "user-1"),
            return_exceptions=True,
        )

        assert isinstance(bad, ConnectionTestFailedError)
        assert manager.get_connection("search", "user-1") is slow
        assert manager.get_state("search", "user-1") == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_settled_attempts_are_forgotten(self, manager):
        with pytest.raises(ConnectionTestFailedError):
            await manager.connect("inproc", classify(api_key=BAD_KEY), "user-1")
        await manager.connect("inproc", classify(api_key=GOOD_KEY), "user-2")

        assert manager._attempts == {}
        assert manager.get_state("inproc", "user-1") == ConnectionState.FAILED
        assert manager.get_state("inproc", "user-2") == ConnectionState.CONNECTED


class TestTimeout:
    """Tests for bounded connect attempts."""

    @pytest.mark.asyncio
    async def test_timeout_releases_resources(self, registry):
        """Test that a timed out attempt closes its driver and leaves the key clean."""
        factory = RecordingFactory(delays={"slow": 5.0})
        manager = MCPClientManager(registry, connection_factory=factory)

        with pytest.raises(ConnectionTimeoutError) as exc_info:
            await manager.connect("search", classify(api_key="slow"), "user-1", timeout=0.05)

        assert isinstance(exc_info.value, ConnectionTestFailedError)
        assert exc_info.value.timeout == 0.05
        assert factory.created[0].closed
        assert manager.get_connection("search", "user-1") is None
        assert manager.get_state("search", "user-1") == ConnectionState.FAILED

        handle = await manager.connect("search", classify(api_key=GOOD_KEY), "user-1", timeout=1.0)
        assert manager.get_connection("search", "user-1") is handle

    @pytest.mark.asyncio
    async def test_default_timeout_from_manager(self):
        server = KeyCheckingServer(delays={GOOD_KEY: 5.0})
        registry = ServerRegistry()
        registry.register(MCPServerConfig(name="inproc", server_instance=server))
        manager = MCPClientManager(registry, connect_timeout=0.05)

        with pytest.raises(ConnectionTimeoutError):
            await manager.connect("inproc", classify(api_key=GOOD_KEY), "user-1")
        assert manager.get_connection("inproc", "user-1") is None


class TestEndpointOverride:
    """Tests for shared registration versus attempt-scoped endpoints."""

    @pytest.mark.asyncio
    async def test_register_server_is_a_shared_mutation(self, manager):
        """Test that register_server replaces the endpoint for every later caller."""
        manager.register_server(MCPServerConfig(name="search", transport=TransportKind.HTTP, url="https://a.example"))
        manager.register_server(MCPServerConfig(name="search", transport=TransportKind.HTTP, url="https://b.example"))
        assert manager.get_config("search").url == "https://b.example"

    @pytest.mark.asyncio
    async def test_connect_endpoint_is_attempt_scoped(self, recording_manager, factory):
        """Test that an endpoint passed to connect is used once and not registered."""
        handle = await recording_manager.connect(
            "search", classify(api_key=GOOD_KEY), "alice", endpoint="https://alice.example",
        )
        other = await recording_manager.connect("search", classify(api_key=GOOD_KEY), "bob")

        assert handle.effective_endpoint == "https://alice.example"
        assert factory.created[0].config.url == "https://alice.example"
        assert other.effective_endpoint == "https://a.example"
        assert recording_manager.get_config("search").url == "https://a.example"

    @pytest.mark.asyncio
    async def test_endpoint_ignored_for_in_process(self, manager):
        handle = await manager.connect(
            "inproc", classify(api_key=GOOD_KEY), "alice", endpoint="https://ignored.example",
        )
        assert handle.effective_endpoint is None

    @pytest.mark.asyncio
    async def test_get_config_unknown(self, manager):
        with pytest.raises(ConfigNotFoundError):
            manager.get_config("nope")


class TestDisconnect:
    """Tests for disconnecting and draining."""

    @pytest.mark.asyncio
    async def test_disconnect(self, recording_manager):
        handle = await recording_manager.connect("search", classify(api_key=GOOD_KEY), "user-1")

        assert await recording_manager.disconnect("search", "user-1") is True
        assert handle.connection.closed
        assert recording_manager.get_state("search", "user-1") == ConnectionState.UNCONNECTED
        assert await recording_manager.disconnect("search", "user-1") is False

    @pytest.mark.asyncio
    async def test_close_all(self, recording_manager):
        handles = [
            await recording_manager.connect("search", classify(api_key=GOOD_KEY), user)
            for user in ("a", "b", "c")
        ]
        assert recording_manager.active_count == 3

        await recording_manager.close_all()

        assert recording_manager.active_count == 0
        assert all(h.connection.closed for h in handles)

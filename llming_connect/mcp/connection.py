"""MCP (Model Context Protocol) transport drivers.

Each driver opens a session to one MCP server on behalf of one user,
performs the MCP handshake (``initialize`` + ``notifications/initialized``)
and runs ``tools/list`` as the connection test. Credentials are applied per
connection object and never written back into the shared configuration.
"""
import asyncio
import collections
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import aiohttp

from .config import MCPServerConfig, TransportKind
from .credentials import CredentialSet
from .errors import MCPError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "llming-connect", "version": "1.0.0"}
REQUEST_TIMEOUT = 30.0


class MCPConnection(ABC):
    """Abstract base class for MCP connections.

    Holds the JSON-RPC bookkeeping shared by the stream-based drivers:
    request ids, futures waiting for responses and response dispatch.
    """

    def __init__(self, config: MCPServerConfig, credentials: Optional[CredentialSet] = None):
        self.config = config
        self.credentials = credentials or CredentialSet()
        self._request_id = 0
        self._pending_requests: Dict[int, asyncio.Future] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @abstractmethod
    async def start(self) -> None:
        """Open the transport and perform the MCP handshake."""
        pass

    @abstractmethod
    async def list_tools(self) -> List[Dict[str, Any]]:
        """List available tools from the MCP server."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release all transport resources."""
        pass

    async def handshake(self) -> List[str]:
        """Start the connection and run the ``tools/list`` connection test.

        Returns:
            Names of the tools the server exposes to these credentials
        """
        await self.start()
        tools = await self.list_tools()
        return [tool["name"] for tool in tools if "name" in tool]

    # ── JSON-RPC helpers ──────────────────────────────────────

    def _next_request(self, method: str, params: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        self._request_id += 1
        return self._request_id, {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

    @staticmethod
    def _notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "method": method, "params": params or {}}

    @staticmethod
    def _initialize_params() -> Dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        }

    def _dispatch(self, message: Dict[str, Any]) -> None:
        """Resolve the pending future matching a JSON-RPC response."""
        if "id" not in message or "method" in message:
            # Server-initiated requests and notifications are not needed for the handshake
            return
        future = self._pending_requests.pop(message["id"], None)
        if future is None or future.done():
            return
        if "error" in message:
            error = message["error"] or {}
            future.set_exception(MCPError(error.get("message", "Unknown error")))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending_requests = self._pending_requests, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _wait_response(self, request_id: int, future: asyncio.Future, method: str) -> Any:
        try:
            return await asyncio.wait_for(future, timeout=REQUEST_TIMEOUT)
        except asyncio.TimeoutError:
            self._pending_requests.pop(request_id, None)
            raise MCPError(f"Request {method} timed out")

    @staticmethod
    def _result_tools(result: Any) -> List[Dict[str, Any]]:
        if result is None:
            return []
        tools = result.get("tools", []) if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise MCPError("Malformed tools/list result")
        return [tool for tool in tools if isinstance(tool, dict)]


class MCPStdioConnection(MCPConnection):
    """MCP connection over stdio (JSON-RPC to local process).

    Spawns a child process with the user's credentials in its environment
    and communicates via stdin/stdout using JSON-RPC 2.0.
    """

    def __init__(self, config: MCPServerConfig, credentials: Optional[CredentialSet] = None):
        """Initialize stdio connection.

        Args:
            config: MCP server configuration with command, args, env
            credentials: Credentials handed to the process as environment variables
        """
        if not config.command:
            raise ValueError("MCPServerConfig must have 'command' for stdio transport")
        super().__init__(config, credentials)
        self.process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = collections.deque(maxlen=20)
        self._exit_message: Optional[str] = None

    def _build_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.config.env:
            env.update(self.config.env)
        env.update(self.credentials.to_env(self.config))
        return env

    async def start(self) -> None:
        """Start the MCP server process and initialize the session."""
        if self._started:
            return

        try:
            self.process = await asyncio.create_subprocess_exec(
                self.config.command,
                *(self.config.args or []),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=self.config.cwd,
                limit=10 * 1024 * 1024,  # 10MB buffer
            )
        except OSError as e:
            raise MCPError(f"Failed to start '{self.config.command}': {e}") from e

        self._reader_task = asyncio.create_task(self._read_responses())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._started = True

        await self._initialize()
        logger.info(f"MCP stdio connection started: {self.config.name} ({self.config.command})")

    async def _initialize(self) -> Dict[str, Any]:
        """Send MCP initialize request and initialized notification."""
        result = await self._send_request("initialize", self._initialize_params())
        await self._write(self._notification("notifications/initialized"))
        return result

    async def _read_stderr(self) -> None:
        """Keep the last stderr lines for error reporting."""
        while self.process and self.process.stderr:
            line = await self.process.stderr.readline()
            if not line:
                break
            self._stderr_tail.append(line.decode(errors="replace").rstrip())

    async def _read_responses(self) -> None:
        """Read JSON-RPC responses from stdout until the process closes it."""
        while self.process and self.process.stdout:
            line = await self.process.stdout.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except ValueError as e:
                logger.warning(f"Failed to parse MCP response from {self.config.name}: {e}")
                continue
            if isinstance(message, dict):
                self._dispatch(message)

        self._exit_message = await self._exit_reason()
        self._fail_pending(MCPError(self._exit_message))

    async def _exit_reason(self) -> str:
        returncode = None
        if self.process:
            try:
                returncode = await asyncio.wait_for(self.process.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        if self._stderr_task:
            await asyncio.wait({self._stderr_task}, timeout=0.5)
        reason = "MCP server process closed the connection"
        if returncode is not None:
            reason += f" (exit code {returncode})"
        if self._stderr_tail:
            reason += f": {self._stderr_tail[-1]}"
        return reason

    async def _write(self, message: Dict[str, Any]) -> None:
        if not self.process or not self.process.stdin:
            raise MCPError("Connection not started")
        try:
            self.process.stdin.write(json.dumps(message).encode() + b"\n")
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise MCPError(await self._exit_reason()) from e

    async def _send_request(self, method: str, params: Dict[str, Any]) -> Any:
        """Send a JSON-RPC request and wait for response."""
        if self._exit_message:
            raise MCPError(self._exit_message)
        request_id, request = self._next_request(method, params)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future
        await self._write(request)
        return await self._wait_response(request_id, future, method)

    async def list_tools(self) -> List[Dict[str, Any]]:
        """List available tools from the MCP server."""
        return self._result_tools(await self._send_request("tools/list", {}))

    async def close(self) -> None:
        """Close the connection and terminate the process."""
        for task in (self._reader_task, self._stderr_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = self._stderr_task = None
        self._fail_pending(MCPError("Connection closed"))

        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    self.process.kill()
                    await self.process.wait()
            except ProcessLookupError:
                pass
        self.process = None

        if self._started:
            logger.info(f"MCP stdio connection closed: {self.config.name}")
        self._started = False


async def iter_sse_events(stream: aiohttp.StreamReader) -> AsyncIterator[Tuple[str, str]]:
    """Yield ``(event, data)`` pairs from a server-sent-events stream."""
    event = "message"
    data_lines: List[str] = []
    async for raw in stream:
        line = raw.decode("utf-8").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event, data_lines = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


def _raise_for_status(status: int, body: str, url: str) -> None:
    if status in (401, 403):
        raise MCPError(f"Server rejected credentials (HTTP {status})")
    if status >= 400:
        raise MCPError(f"HTTP {status} from {url}: {body[:200]}")


class MCPHTTPConnection(MCPConnection):
    """MCP connection over streamable HTTP (remote server).

    Every JSON-RPC message is POSTed to the server URL; replies arrive either
    as a JSON body or as a short server-sent-events stream.
    """

    def __init__(self, config: MCPServerConfig, credentials: Optional[CredentialSet] = None):
        """Initialize HTTP connection.

        Args:
            config: MCP server configuration with url and headers
            credentials: Credentials sent as request headers
        """
        if not config.url:
            raise ValueError("MCPServerConfig must have 'url' for HTTP transport")
        super().__init__(config, credentials)
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_id: Optional[str] = None

    def _build_headers(self) -> Dict[str, str]:
        """Build HTTP headers for requests."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.config.headers:
            headers.update(self.config.headers)
        headers.update(self.credentials.to_headers(self.config))
        return headers

    async def start(self) -> None:
        """Open the HTTP session and initialize the MCP session."""
        if self._started:
            return
        self._session = aiohttp.ClientSession(headers=self._build_headers())
        self._started = True

        await self._post(*self._next_request("initialize", self._initialize_params()))
        await self._post(None, self._notification("notifications/initialized"))
        logger.info(f"MCP HTTP connection started: {self.config.name} ({self.config.url})")

    async def _post(self, request_id: Optional[int], message: Dict[str, Any]) -> Any:
        if not self._session:
            raise MCPError("Connection not started")
        headers = {"Mcp-Session-Id": self._session_id} if self._session_id else None
        try:
            async with self._session.post(self.config.url, json=message, headers=headers) as resp:
                if resp.status >= 400:
                    _raise_for_status(resp.status, await resp.text(), self.config.url)
                session_id = resp.headers.get("Mcp-Session-Id")
                if session_id:
                    self._session_id = session_id
                if request_id is None:
                    return None

                if "text/event-stream" in resp.headers.get("Content-Type", ""):
                    response = await self._read_event_response(resp, request_id)
                else:
                    response = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise MCPError(f"Cannot reach {self.config.url}: {e}") from e

        if not isinstance(response, dict):
            raise MCPError(f"Unexpected response from {self.config.url}")
        if "error" in response:
            raise MCPError((response["error"] or {}).get("message", "Unknown error"))
        return response.get("result")

    @staticmethod
    async def _read_event_response(resp: aiohttp.ClientResponse, request_id: int) -> Dict[str, Any]:
        async for _event, data in iter_sse_events(resp.content):
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        raise MCPError("Event stream ended without a response")

    async def list_tools(self) -> List[Dict[str, Any]]:
        """List available tools from the MCP server."""
        return self._result_tools(await self._post(*self._next_request("tools/list", {})))

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        self._session_id = None

        if self._started:
            logger.info(f"MCP HTTP connection closed: {self.config.name}")
        self._started = False


class MCPSSEConnection(MCPConnection):
    """MCP connection over the server-sent-events transport.

    Opens a long-lived event stream, waits for the server to announce its
    message endpoint, then POSTs JSON-RPC requests to that endpoint while
    responses arrive on the stream.
    """

    def __init__(self, config: MCPServerConfig, credentials: Optional[CredentialSet] = None):
        if not config.url:
            raise ValueError("MCPServerConfig must have 'url' for SSE transport")
        super().__init__(config, credentials)
        self._session: Optional[aiohttp.ClientSession] = None
        self._stream: Optional[aiohttp.ClientResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._endpoint: Optional[asyncio.Future] = None
        self._post_url: Optional[str] = None

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.config.headers:
            headers.update(self.config.headers)
        headers.update(self.credentials.to_headers(self.config))
        return headers

    async def start(self) -> None:
        """Open the event stream and initialize the MCP session."""
        if self._started:
            return
        # The event stream stays open for the lifetime of the connection
        self._session = aiohttp.ClientSession(
            headers=self._build_headers(), timeout=aiohttp.ClientTimeout(total=None, sock_connect=REQUEST_TIMEOUT),
        )
        self._started = True

        try:
            self._stream = await self._session.get(self.config.url, headers={"Accept": "text/event-stream"})
        except aiohttp.ClientError as e:
            raise MCPError(f"Cannot reach {self.config.url}: {e}") from e
        if self._stream.status >= 400:
            _raise_for_status(self._stream.status, await self._stream.text(), self.config.url)

        self._endpoint = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_events())
        self._post_url = await self._endpoint

        await self._send_request("initialize", self._initialize_params())
        await self._post(self._notification("notifications/initialized"))
        logger.info(f"MCP SSE connection started: {self.config.name} ({self.config.url})")

    async def _read_events(self) -> None:
        error: Exception = MCPError("Event stream closed by server")
        try:
            async for event, data in iter_sse_events(self._stream.content):
                if event == "endpoint":
                    if not self._endpoint.done():
                        self._endpoint.set_result(urljoin(self.config.url, data.strip()))
                    continue
                try:
                    message = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.warning(f"Failed to parse MCP event from {self.config.name}: {e}")
                    continue
                if isinstance(message, dict):
                    self._dispatch(message)
        except (aiohttp.ClientError, UnicodeDecodeError) as e:
            error = MCPError(f"Event stream error: {e}")
        finally:
            if self._endpoint and not self._endpoint.done():
                self._endpoint.set_exception(error)
            self._fail_pending(error)

    async def _post(self, message: Dict[str, Any]) -> None:
        if not self._session or not self._post_url:
            raise MCPError("Connection not started")
        try:
            async with self._session.post(self._post_url, json=message) as resp:
                if resp.status >= 400:
                    _raise_for_status(resp.status, await resp.text(), self._post_url)
        except aiohttp.ClientError as e:
            raise MCPError(f"Cannot reach {self._post_url}: {e}") from e

    async def _send_request(self, method: str, params: Dict[str, Any]) -> Any:
        request_id, request = self._next_request(method, params)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future
        try:
            await self._post(request)
        except MCPError:
            self._pending_requests.pop(request_id, None)
            raise
        return await self._wait_response(request_id, future, method)

    async def list_tools(self) -> List[Dict[str, Any]]:
        """List available tools from the MCP server."""
        return self._result_tools(await self._send_request("tools/list", {}))

    async def close(self) -> None:
        """Close the event stream and the HTTP session."""
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self._fail_pending(MCPError("Connection closed"))

        if self._stream:
            self._stream.close()
            self._stream = None
        if self._session:
            await self._session.close()
            self._session = None
        self._post_url = None

        if self._started:
            logger.info(f"MCP SSE connection closed: {self.config.name}")
        self._started = False


class InProcessMCPServer(ABC):
    """Abstract base class for in-process MCP servers.

    Subclass this to expose tools from the host process. ``authenticate`` is
    called once per connection with that user's credentials and raises
    :class:`MCPError` to reject them.
    """

    async def authenticate(self, credentials: CredentialSet) -> None:
        """Validate the credentials of a connecting user. Accepts everything by default."""
        return None

    @abstractmethod
    async def list_tools(self) -> List[Dict[str, Any]]:
        """List available tools.

        Returns:
            List of tool descriptors, each with keys: name, description, inputSchema
        """
        pass


class MCPInProcessConnection(MCPConnection):
    """MCP connection adapter wrapping an InProcessMCPServer."""

    def __init__(self, config: MCPServerConfig, credentials: Optional[CredentialSet] = None):
        super().__init__(config, credentials)
        self.server: InProcessMCPServer = config.server_instance

    async def start(self) -> None:
        if self._started:
            return
        await self.server.authenticate(self.credentials)
        self._started = True
        logger.info(f"MCP in-process connection ready: {self.config.name}")

    async def list_tools(self) -> List[Dict[str, Any]]:
        if not self._started:
            raise MCPError("Connection not started")
        return list(await self.server.list_tools())

    async def close(self) -> None:
        """In-process server lifecycle is managed externally."""
        if self._started:
            logger.info(f"MCP in-process connection closed: {self.config.name}")
        self._started = False


_DRIVERS = {
    TransportKind.STDIO: MCPStdioConnection,
    TransportKind.HTTP: MCPHTTPConnection,
    TransportKind.SSE: MCPSSEConnection,
    TransportKind.INPROCESS: MCPInProcessConnection,
}


def create_connection(config: MCPServerConfig, credentials: Optional[CredentialSet] = None) -> MCPConnection:
    """Create the transport driver matching ``config.transport``.

    Args:
        config: MCP server configuration (MCPServerConfig or dict)
        credentials: The user's credentials for this connection

    Returns:
        An unstarted MCPConnection instance
    """
    # Handle dict configs (from model_dump serialization)
    if isinstance(config, dict):
        config = MCPServerConfig(**config)
    return _DRIVERS[config.transport](config, credentials)

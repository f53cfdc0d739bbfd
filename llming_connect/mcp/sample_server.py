#!/usr/bin/env python3
"""
Sample BYOK MCP server for testing llming-connect's stdio transport.

Expects the user's key in ``SAMPLE_MCP_API_KEY`` and refuses to start when it
does not match ``SAMPLE_MCP_EXPECTED_KEY`` (default ``sample-key``), the way
real key-protected servers exit on bad credentials.

Environment:
    SAMPLE_MCP_API_KEY       — key supplied by the connecting user
    SAMPLE_MCP_EXPECTED_KEY  — key the server accepts
    SAMPLE_MCP_STARTUP_DELAY — seconds to sleep before serving (timeout tests)

Usage:
    SAMPLE_MCP_API_KEY=sample-key python -m llming_connect.mcp.sample_server
"""

import asyncio
import os
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool


server = Server(
    "sample-byok-server",
    instructions="Sample key-protected MCP server used to test BYOK connections.",
)


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="whoami",
            description="Describe the credentials this server was started with.",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="echo",
            description="Echo a message back.",
            inputSchema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "Text to echo"},
                },
                "required": ["message"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    if name == "whoami":
        key = os.environ.get("SAMPLE_MCP_API_KEY", "")
        extra = sorted(k for k in os.environ if k.startswith("SAMPLE_MCP_EXTRA_"))
        text = f"key=***{key[-4:]}\nextra={','.join(extra) or '-'}"
        return [TextContent(type="text", text=text)]

    if name == "echo":
        return [TextContent(type="text", text=str(arguments.get("message", "")))]

    return [TextContent(type="text", text=f"Unknown tool: {name}")]


async def main():
    """Validate the key, then run the MCP server."""
    delay = float(os.environ.get("SAMPLE_MCP_STARTUP_DELAY", "0"))
    if delay:
        await asyncio.sleep(delay)

    expected = os.environ.get("SAMPLE_MCP_EXPECTED_KEY", "sample-key")
    if os.environ.get("SAMPLE_MCP_API_KEY") != expected:
        print("Invalid API key", file=sys.stderr)
        sys.exit(1)

    print("Sample BYOK MCP Server starting...", file=sys.stderr)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(main())

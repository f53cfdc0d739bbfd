"""Built-in MCP server catalog.

These are the servers users can connect with their own keys out of the box.
Hosts install them explicitly at startup via :func:`register_default_servers`.
"""
import logging
from pathlib import Path
from typing import List, Optional

from .config import MCPServerConfig, TransportKind
from .registry import ServerRegistry

logger = logging.getLogger(__name__)

DEFAULT_SERVERS: List[MCPServerConfig] = [
    MCPServerConfig(
        name="github",
        transport=TransportKind.STDIO,
        command="npx",
        args=["-y", "@modelcontextprotocol/server-github"],
        api_key_env="GITHUB_PERSONAL_ACCESS_TOKEN",
        api_token_env="GITHUB_PERSONAL_ACCESS_TOKEN",
        label="GitHub",
        description="Repositories, issues and pull requests",
        category="Developer",
    ),
    MCPServerConfig(
        name="brave-search",
        transport=TransportKind.STDIO,
        command="npx",
        args=["-y", "@modelcontextprotocol/server-brave-search"],
        api_key_env="BRAVE_API_KEY",
        label="Brave Search",
        description="Web and local search",
        category="Search",
    ),
    MCPServerConfig(
        name="slack",
        transport=TransportKind.STDIO,
        command="npx",
        args=["-y", "@modelcontextprotocol/server-slack"],
        api_token_env="SLACK_BOT_TOKEN",
        label="Slack",
        description="Channels and messages (set SLACK_TEAM_ID via custom env)",
        category="Communication",
    ),
    MCPServerConfig(
        name="browserbase",
        transport=TransportKind.STDIO,
        command="npx",
        args=["-y", "@browserbasehq/mcp"],
        api_key_env="BROWSERBASE_API_KEY",
        label="Browserbase",
        description="Headless browser automation (set BROWSERBASE_PROJECT_ID via custom env)",
        category="Automation",
    ),
    MCPServerConfig(
        name="linear",
        transport=TransportKind.SSE,
        url="https://mcp.linear.app/sse",
        label="Linear",
        description="Issues and projects",
        category="Productivity",
    ),
    MCPServerConfig(
        name="notion",
        transport=TransportKind.HTTP,
        url="https://mcp.notion.com/mcp",
        label="Notion",
        description="Pages and databases",
        category="Productivity",
    ),
]


def register_default_servers(registry: ServerRegistry, servers_file: Optional[Path] = None) -> List[str]:
    """Register the built-in catalog, then any servers from a JSON file.

    Entries from ``servers_file`` replace built-in entries of the same name.

    :param registry: Registry to populate
    :param servers_file: Optional JSON file in the ``ServerRegistry.load_from_json`` format
    :return: Names of all registered servers
    """
    for config in DEFAULT_SERVERS:
        registry.register(config)
    if servers_file is not None:
        registry.load_from_json(servers_file)
    names = registry.get_names()
    logger.info(f"Registered {len(names)} MCP servers: {', '.join(sorted(names))}")
    return names

"""Standalone BYOK connection server — run llming-connect without a host app.

Usage::

    poetry run llming-connect

    # Custom port:
    PORT=9000 poetry run llming-connect

Environment variables:
    PORT                    — Server port (default: 8000)
    MCP_CONNECT_TIMEOUT     — Connection test timeout in seconds (default: 30)
    MCP_USER_HEADER         — Header carrying the user id (default: x-user-id)
    MCP_SERVERS_FILE        — JSON file with additional MCP servers (optional)
    MCP_CORS_ORIGINS        — Comma separated browser origins (optional)
    MONGODB_CONNECTION      — MongoDB URI; connection records stay in memory without it
    MCP_MONGODB_DB          — MongoDB database (default: llming_connect)
    MCP_MONGODB_COLLECTION  — MongoDB collection (default: mcp_connections)
    MCP_CREDENTIALS_KEY     — Fernet key encrypting stored credentials (required with MongoDB)

Loads .env from the current working directory or any parent directory.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from llming_connect.config import ConnectSettings
from llming_connect.store import ConnectionStore, MemoryConnectionStore

logger = logging.getLogger(__name__)


def create_store(settings: ConnectSettings) -> ConnectionStore:
    """Pick the connection record store for the given settings."""
    if settings.mongo_uri:
        from llming_connect.store.mongodb_store import MongoDBConnectionStore
        return MongoDBConnectionStore(
            mongo_uri=settings.mongo_uri,
            mongo_db=settings.mongo_db,
            mongo_collection=settings.mongo_collection,
            credentials_key=settings.credentials_key,
        )
    logger.warning("MONGODB_CONNECTION not set, connection records are kept in memory only")
    return MemoryConnectionStore()


# ── FastAPI app factory ──────────────────────────────────────────

def create_app(settings: Optional[ConnectSettings] = None, store: Optional[ConnectionStore] = None):
    """Create the FastAPI application.

    The manager and store are created here, handed to the router, and
    drained by the lifespan on shutdown. Also called by uvicorn via the
    factory=True flag.
    """
    from dotenv import load_dotenv, find_dotenv
    load_dotenv(find_dotenv(usecwd=True))

    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware

    from llming_connect.api import HeaderIdentityResolver, build_byok_router
    from llming_connect.mcp.manager import MCPClientManager
    from llming_connect.mcp.servers import register_default_servers

    settings = settings or ConnectSettings.from_env()
    manager = MCPClientManager(connect_timeout=settings.connect_timeout)
    register_default_servers(manager.registry, settings.servers_file)
    store = store or create_store(settings)

    @asynccontextmanager
    async def lifespan(_a):
        yield
        await manager.close_all()
        await store.close()

    _app = FastAPI(title="llming-connect", docs_url=None, redoc_url=None, lifespan=lifespan)
    _app.state.mcp_manager = manager
    _app.state.connection_store = store

    if settings.cors_origins:
        _app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    _app.include_router(build_byok_router(manager, store, HeaderIdentityResolver(settings.user_header)))

    @_app.get("/health")
    async def health():
        return {"ok": True, "servers": len(manager.registry.get_names()), "connections": manager.active_count}

    return _app


# ── Entry point ──────────────────────────────────────────────────

def main():
    """Load .env and start the server."""
    from dotenv import load_dotenv, find_dotenv
    load_dotenv(find_dotenv(usecwd=True))

    import uvicorn

    settings = ConnectSettings.from_env()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )

    print(f"\n  llming-connect → http://localhost:{settings.port}\n")
    uvicorn.run(
        "llming_connect.standalone:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
    )


if __name__ == "__main__":
    main()

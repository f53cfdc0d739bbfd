"""BYOK (Bring Your Own Key) API for MCP servers.

Endpoints:
  GET    /api/llming-connect/mcp/servers                      — list connectable servers
  POST   /api/llming-connect/mcp/connect-byok                 — test and store a BYOK connection
  GET    /api/llming-connect/mcp/connections                  — list the caller's connections
  DELETE /api/llming-connect/mcp/connections/{connection_id}  — disconnect and forget a connection

The caller's identity comes from an IdentityResolver; a connection record
is only stored after the connection test succeeded.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from llming_connect.mcp.credentials import classify
from llming_connect.mcp.errors import (
    ConfigNotFoundError,
    ConnectionTestFailedError,
    RejectedEmptyError,
    StoreError,
    UnauthenticatedError,
)
from llming_connect.mcp.manager import MCPClientManager
from llming_connect.store import ConnectionStore

from .identity import IdentityResolver

logger = logging.getLogger(__name__)

API_PREFIX = "/api/llming-connect/mcp"


# ── Request models ──────────────────────────────────────────────────

class ConnectBYOKRequest(BaseModel):
    """Body of a BYOK connect request (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    server_name: str = ""
    api_key: Optional[str] = None
    api_token: Optional[str] = None
    custom_env: Optional[Dict[str, str]] = None
    project_id: Optional[str] = None
    url: Optional[str] = None
    """Endpoint for SSE/HTTP servers, used for this connection only."""


# ── Router ──────────────────────────────────────────────────────────

def build_byok_router(
    manager: MCPClientManager,
    store: ConnectionStore,
    identity_resolver: IdentityResolver,
) -> APIRouter:
    """Build the BYOK API router around an explicitly created manager and store."""

    async def current_user(request: Request) -> str:
        try:
            return await identity_resolver.resolve(request)
        except UnauthenticatedError as e:
            logger.info(f"[BYOK] Unauthenticated request: {e}")
            raise HTTPException(401, "Unauthorized")

    router = APIRouter(prefix=API_PREFIX)

    # ── Server catalog ──────────────────────────────────────

    @router.get("/servers")
    async def list_servers():
        servers = [
            {
                "name": config.name,
                "transport": config.transport.value,
                "label": config.label or config.name,
                "description": config.description or "",
                "category": config.category,
                "endpoint": config.endpoint,
            }
            for config in sorted(manager.registry.get_all(), key=lambda c: c.name)
        ]
        return {"count": len(servers), "servers": servers}

    # ── Connect ─────────────────────────────────────────────

    @router.post("/connect-byok")
    async def connect_byok(payload: ConnectBYOKRequest, user_id: str = Depends(current_user)):
        if not payload.server_name:
            raise HTTPException(400, "Server name is required")

        try:
            credentials = classify(payload.api_key, payload.api_token, payload.custom_env)
        except RejectedEmptyError as e:
            raise HTTPException(400, str(e))

        try:
            handle = await manager.connect(
                payload.server_name, credentials, user_id, endpoint=payload.url
            )
        except ConfigNotFoundError as e:
            raise HTTPException(404, str(e))
        except ConnectionTestFailedError as e:
            raise HTTPException(400, f"Connection test failed: {e.reason}")
        except ValueError as e:
            raise HTTPException(400, f"Invalid connection parameters: {e}")

        try:
            connection_id = await store.persist(
                user_id,
                payload.server_name,
                credentials.auth_type,
                credentials,
                payload.project_id,
            )
        except StoreError as e:
            logger.error(f"[BYOK] Failed to store connection {payload.server_name} for user {user_id}: {e}")
            await manager.disconnect(payload.server_name, user_id)
            raise HTTPException(500, "Failed to establish BYOK connection")

        logger.info(
            f"[BYOK] User {user_id} connected {payload.server_name} "
            f"(auth={credentials.auth_type.value}, connection={connection_id})"
        )
        return {
            "success": True,
            "connectionId": connection_id,
            "authType": credentials.auth_type.value,
            "tools": handle.tools,
            "message": "BYOK connection established successfully",
        }

    # ── Connections ─────────────────────────────────────────

    @router.get("/connections")
    async def list_connections(user_id: str = Depends(current_user)):
        records = await store.list_for_user(user_id)
        return {
            "count": len(records),
            "connections": [
                {
                    "connectionId": r.connection_id,
                    "serverName": r.server_name,
                    "authType": r.auth_type.value,
                    "projectId": r.project_id,
                    "state": manager.get_state(r.server_name, user_id).value,
                    "updatedAt": r.updated_at.isoformat(),
                }
                for r in records
            ],
        }

    @router.delete("/connections/{connection_id}")
    async def delete_connection(connection_id: str, user_id: str = Depends(current_user)):
        record = await store.get(connection_id)
        if record is None or record.user_id != user_id:
            raise HTTPException(404, f"Connection {connection_id} not found")
        await store.delete(connection_id, user_id)
        # The live session is per (server, user); other projects may still use it
        remaining = [r for r in await store.list_for_user(user_id) if r.server_name == record.server_name]
        disconnected = False
        if not remaining:
            disconnected = await manager.disconnect(record.server_name, user_id)
        logger.info(f"[BYOK] User {user_id} removed connection {connection_id} ({record.server_name})")
        return {"success": True, "disconnected": disconnected}

    return router

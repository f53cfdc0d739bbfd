"""HTTP API for BYOK MCP connections.

The router is built by build_byok_router() and mounted by the host app.
"""

from .byok_api import API_PREFIX, ConnectBYOKRequest, build_byok_router
from .identity import HeaderIdentityResolver, IdentityResolver

__all__ = [
    "API_PREFIX",
    "ConnectBYOKRequest",
    "build_byok_router",
    "HeaderIdentityResolver",
    "IdentityResolver",
]

"""Identity resolution for API requests."""
from abc import ABC, abstractmethod

from starlette.requests import Request

from llming_connect.mcp.errors import UnauthenticatedError


class IdentityResolver(ABC):
    """Resolves the stable user id of an inbound request."""

    @abstractmethod
    async def resolve(self, request: Request) -> str:
        """Return the caller's user id.

        :raises UnauthenticatedError: If the request carries no valid identity
        """
        raise NotImplementedError("Subclasses must implement resolve")


class HeaderIdentityResolver(IdentityResolver):
    """Reads the user id from a header set by an upstream auth proxy."""

    def __init__(self, header: str = "x-user-id"):
        self.header = header

    async def resolve(self, request: Request) -> str:
        user_id = request.headers.get(self.header, "").strip()
        if not user_id:
            raise UnauthenticatedError(f"Missing {self.header} header")
        return user_id

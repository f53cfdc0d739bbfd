from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from llming_connect.mcp.credentials import AuthType, CredentialSet


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionRecord(BaseModel):
    """Durable metadata of a successful BYOK connection. Never holds plaintext credentials."""
    connection_id: str
    user_id: str
    server_name: str
    auth_type: AuthType
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ConnectionStore(ABC):
    """Base class for connection record storage.

    A store owns the retention and redaction policy for the credentials it
    is handed. Records are unique per ``(user_id, server_name, project_id)``;
    persisting the same triple again updates the record and keeps its id.
    """

    @abstractmethod
    async def persist(
        self,
        user_id: str,
        server_name: str,
        auth_type: AuthType,
        credentials: CredentialSet,
        project_id: Optional[str] = None,
    ) -> str:
        """Store a connection record and return its connection id."""
        raise NotImplementedError("Subclasses must implement persist")

    @abstractmethod
    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        """Get a record by connection id."""
        raise NotImplementedError("Subclasses must implement get")

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[ConnectionRecord]:
        """List all records of a user, oldest first."""
        raise NotImplementedError("Subclasses must implement list_for_user")

    @abstractmethod
    async def load_credentials(self, connection_id: str, user_id: str) -> Optional[CredentialSet]:
        """Load the credentials of a record, only for the user owning it."""
        raise NotImplementedError("Subclasses must implement load_credentials")

    @abstractmethod
    async def delete(self, connection_id: str, user_id: str) -> bool:
        """Delete a record owned by ``user_id``. Returns True if it existed."""
        raise NotImplementedError("Subclasses must implement delete")

    async def close(self) -> None:
        """Release backend resources. The default implementation does nothing."""
        pass

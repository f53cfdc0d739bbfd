import logging
import threading
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from llming_connect.mcp.credentials import AuthType, CredentialSet

from .connection_store import ConnectionRecord, ConnectionStore, _utcnow

logger = logging.getLogger(__name__)


class MemoryConnectionStore(ConnectionStore):
    """Connection store with in-memory tracking, for development and tests."""

    def __init__(self):
        self._records: Dict[str, ConnectionRecord] = {}
        self._credentials: Dict[str, CredentialSet] = {}
        self._index: Dict[Tuple[str, str, Optional[str]], str] = {}
        self._lock = threading.Lock()

    async def persist(
        self,
        user_id: str,
        server_name: str,
        auth_type: AuthType,
        credentials: CredentialSet,
        project_id: Optional[str] = None,
    ) -> str:
        key = (user_id, server_name, project_id)
        with self._lock:
            connection_id = self._index.get(key)
            if connection_id is None:
                connection_id = uuid4().hex
                record = ConnectionRecord(
                    connection_id=connection_id,
                    user_id=user_id,
                    server_name=server_name,
                    auth_type=auth_type,
                    project_id=project_id,
                )
                self._index[key] = connection_id
            else:
                record = self._records[connection_id].model_copy(
                    update={"auth_type": auth_type, "updated_at": _utcnow()}
                )
            self._records[connection_id] = record
            self._credentials[connection_id] = credentials
        logger.debug(f"Stored connection {connection_id} ({server_name}, auth={auth_type.value}) for user {user_id}")
        return connection_id

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        with self._lock:
            return self._records.get(connection_id)

    async def list_for_user(self, user_id: str) -> List[ConnectionRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at)

    async def load_credentials(self, connection_id: str, user_id: str) -> Optional[CredentialSet]:
        with self._lock:
            record = self._records.get(connection_id)
            if record is None or record.user_id != user_id:
                return None
            return self._credentials.get(connection_id)

    async def delete(self, connection_id: str, user_id: str) -> bool:
        with self._lock:
            record = self._records.get(connection_id)
            if record is None or record.user_id != user_id:
                return False
            del self._records[connection_id]
            self._credentials.pop(connection_id, None)
            self._index.pop((record.user_id, record.server_name, record.project_id), None)
        logger.debug(f"Deleted connection {connection_id} for user {user_id}")
        return True

import json
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from cryptography.fernet import Fernet, InvalidToken
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from llming_connect.mcp.credentials import AuthType, CredentialSet
from llming_connect.mcp.errors import StoreError

from .connection_store import ConnectionRecord, ConnectionStore, _utcnow

logger = logging.getLogger(__name__)


class MongoDBConnectionStore(ConnectionStore):
    """Connection store backed by MongoDB.

    Credentials are encrypted with Fernet before they are written; the
    plaintext never reaches the database.
    """

    def __init__(
        self,
        *,
        mongo_uri: str,
        mongo_db: str,
        mongo_collection: str,
        credentials_key: str,
    ):
        if not mongo_uri or not mongo_db or not mongo_collection:
            raise ValueError("MongoDB URI, database, and collection are required")
        if not credentials_key:
            raise ValueError("A Fernet credentials key is required to store BYOK credentials")
        self.mongo_uri = mongo_uri
        self.mongo_db = mongo_db
        self.mongo_collection = mongo_collection
        self._fernet = Fernet(credentials_key)
        self._client = AsyncIOMotorClient(mongo_uri, tz_aware=True)
        self._coll = self._client[mongo_db][mongo_collection]
        self._indexes_ready = False

    async def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        try:
            await self._coll.create_index(
                [("user_id", ASCENDING), ("server_name", ASCENDING), ("project_id", ASCENDING)],
                unique=True,
            )
            await self._coll.create_index("connection_id", unique=True)
        except PyMongoError as e:
            raise StoreError(f"Failed to create MongoDB indexes: {e}") from e
        self._indexes_ready = True

    def _encrypt(self, credentials: CredentialSet) -> str:
        return self._fernet.encrypt(json.dumps(credentials.reveal()).encode()).decode()

    def _decrypt(self, token: str) -> CredentialSet:
        try:
            data = json.loads(self._fernet.decrypt(token.encode()))
        except InvalidToken as e:
            raise StoreError("Stored credentials cannot be decrypted with the configured key") from e
        return CredentialSet(**data)

    @staticmethod
    def _to_record(doc: Dict[str, Any]) -> ConnectionRecord:
        return ConnectionRecord.model_validate(doc)

    async def persist(
        self,
        user_id: str,
        server_name: str,
        auth_type: AuthType,
        credentials: CredentialSet,
        project_id: Optional[str] = None,
    ) -> str:
        await self._ensure_indexes()
        now = _utcnow()
        try:
            doc = await self._coll.find_one_and_update(
                {"user_id": user_id, "server_name": server_name, "project_id": project_id},
                {
                    "$set": {
                        "auth_type": auth_type.value,
                        "credentials": self._encrypt(credentials),
                        "updated_at": now,
                    },
                    "$setOnInsert": {"connection_id": uuid4().hex, "created_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StoreError(f"Failed to store MCP connection: {e}") from e
        logger.debug(f"Stored connection {doc['connection_id']} ({server_name}, auth={auth_type.value}) for user {user_id}")
        return doc["connection_id"]

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        try:
            doc = await self._coll.find_one({"connection_id": connection_id}, {"credentials": 0})
        except PyMongoError as e:
            raise StoreError(f"Failed to read MCP connection: {e}") from e
        return self._to_record(doc) if doc else None

    async def list_for_user(self, user_id: str) -> List[ConnectionRecord]:
        try:
            cursor = self._coll.find({"user_id": user_id}, {"credentials": 0}).sort("created_at", ASCENDING)
            return [self._to_record(doc) async for doc in cursor]
        except PyMongoError as e:
            raise StoreError(f"Failed to list MCP connections: {e}") from e

    async def load_credentials(self, connection_id: str, user_id: str) -> Optional[CredentialSet]:
        try:
            doc = await self._coll.find_one(
                {"connection_id": connection_id, "user_id": user_id}, {"credentials": 1}
            )
        except PyMongoError as e:
            raise StoreError(f"Failed to read MCP connection: {e}") from e
        if not doc or "credentials" not in doc:
            return None
        return self._decrypt(doc["credentials"])

    async def delete(self, connection_id: str, user_id: str) -> bool:
        try:
            result = await self._coll.delete_one({"connection_id": connection_id, "user_id": user_id})
        except PyMongoError as e:
            raise StoreError(f"Failed to delete MCP connection: {e}") from e
        return result.deleted_count > 0

    async def close(self) -> None:
        self._client.close()

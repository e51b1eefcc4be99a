# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
MongoDB document store backend.

Thin adapter from the engine's DocumentStore interface onto pymongo's asyncio
client, with retry on transient network errors for read operations.
"""

import logging
from collections.abc import Sequence
from typing import Any

from pymongo import AsyncMongoClient
from pymongo.errors import AutoReconnect, CollectionInvalid, PyMongoError
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError
from pymongo.operations import SearchIndexModel
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import MongoSettings
from .base import DocumentCollection, DocumentStore, DuplicateKeyError, StorageError, WriteResult

logger = logging.getLogger(__name__)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception is retryable.

    Only connection-level failures (AutoReconnect and its NetworkTimeout
    subclass) are transient. Query, validation and duplicate-key errors are
    permanent and surface immediately.
    """
    return isinstance(exception, AutoReconnect)


_read_retry = retry(
    retry=retry_if_exception(is_retryable_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


class MongoCollection(DocumentCollection):
    """DocumentCollection over a pymongo AsyncCollection."""

    def __init__(self, collection):
        self._collection = collection
        self.name = collection.name

    @_read_retry
    async def find(
        self,
        filter: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        projection: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        cursor = self._collection.find(filter, projection)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(None)

    @_read_retry
    async def find_one(self, filter: dict[str, Any]) -> dict[str, Any] | None:
        return await self._collection.find_one(filter)

    async def insert_one(self, document: dict[str, Any]) -> None:
        try:
            await self._collection.insert_one(document)
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e

    async def insert_many(self, documents: list[dict[str, Any]]) -> None:
        if not documents:
            return
        try:
            await self._collection.insert_many(documents)
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e

    async def update_one(self, filter: dict[str, Any], update: dict[str, Any], *, upsert: bool = False) -> WriteResult:
        try:
            result = await self._collection.update_one(filter, update, upsert=upsert)
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e
        return WriteResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            upserted_id=result.upserted_id,
        )

    async def delete_one(self, filter: dict[str, Any]) -> int:
        result = await self._collection.delete_one(filter)
        return result.deleted_count

    async def delete_many(self, filter: dict[str, Any]) -> int:
        result = await self._collection.delete_many(filter)
        return result.deleted_count

    @_read_retry
    async def count_documents(self, filter: dict[str, Any]) -> int:
        return await self._collection.count_documents(filter)

    @_read_retry
    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        cursor = await self._collection.aggregate(pipeline)
        return await cursor.to_list(None)

    async def create_index(self, keys: list[tuple[str, Any]], **options: Any) -> str:
        return await self._collection.create_index(keys, **options)

    @_read_retry
    async def list_indexes(self) -> list[dict[str, Any]]:
        cursor = await self._collection.list_indexes()
        return await cursor.to_list(None)

    async def ensure_vector_index(
        self,
        name: str,
        path: str,
        dimensions: int,
        similarity: str,
        filter_paths: Sequence[str] = (),
    ) -> None:
        try:
            cursor = await self._collection.list_search_indexes(name)
            existing = await cursor.to_list(None)
            if existing:
                logger.debug(f"Vector index '{name}' already present on {self.name}")
                return

            fields: list[dict[str, Any]] = [
                {
                    "type": "vector",
                    "path": path,
                    "numDimensions": dimensions,
                    "similarity": similarity,
                }
            ]
            fields.extend({"type": "filter", "path": filter_path} for filter_path in filter_paths)

            model = SearchIndexModel(
                definition={"fields": fields},
                name=name,
                type="vectorSearch",
            )
            await self._collection.create_search_index(model)
            logger.info(f"Created vector index '{name}' on {self.name}.{path} ({dimensions} dims, {similarity})")
        except PyMongoError as e:
            raise StorageError(f"Vector index creation failed on {self.name}: {e}") from e


class MongoStore(DocumentStore):
    """
    DocumentStore backed by MongoDB (Atlas or self-managed).

    The client is created lazily in ``connect()`` so construction never does
    network I/O.
    """

    def __init__(self, connection_string: str, database_name: str, config: MongoSettings | None = None):
        if not connection_string:
            raise ValueError("MongoDB connection string is required")

        self.connection_string = connection_string
        self.database_name = database_name
        self.config = config or MongoSettings()

        self.client: AsyncMongoClient | None = None
        self._database = None

    async def connect(self) -> None:
        if self.client is not None:
            return

        cfg = self.config
        self.client = AsyncMongoClient(
            self.connection_string,
            maxPoolSize=cfg.max_pool_size,
            minPoolSize=cfg.min_pool_size,
            maxIdleTimeMS=cfg.max_idle_time_ms,
            connectTimeoutMS=cfg.connect_timeout_ms,
            serverSelectionTimeoutMS=cfg.server_selection_timeout_ms,
            socketTimeoutMS=cfg.socket_timeout_ms,
            compressors=cfg.compressors,
            retryWrites=cfg.retry_writes,
            retryReads=cfg.retry_reads,
        )
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            await self.client.close()
            self.client = None
            raise StorageError(f"Failed to connect to MongoDB: {e}") from e

        self._database = self.client[self.database_name]
        logger.info(f"Connected to MongoDB database '{self.database_name}'")

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None
            self._database = None
            logger.info("MongoDB connection closed")

    def _require_database(self):
        if self._database is None:
            raise StorageError("MongoStore is not connected")
        return self._database

    def collection(self, name: str) -> MongoCollection:
        return MongoCollection(self._require_database()[name])

    async def create_collection(self, name: str) -> bool:
        try:
            await self._require_database().create_collection(name)
            return True
        except CollectionInvalid:
            return False

    async def server_status(self) -> dict[str, Any]:
        self._require_database()
        return await self.client.admin.command("serverStatus")

    async def is_sharded(self, collection_name: str) -> bool:
        stats = await self._require_database().command("collStats", collection_name)
        return bool(stats.get("sharded", False))

"""
Document-store backed result cache.

Entries live in the store's ``cache`` collection as
``{key, value, createdAt, expiresAt}``. A TTL index on ``expiresAt`` lets the
store sweep expired entries in the background; reads also filter on
``expiresAt`` so an entry is never served after its expiry even if the sweep
has not run yet.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config import CACHE_COLLECTION
from ..storage.base import DocumentStore
from .base import ResultCache

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreCache(ResultCache):
    """ResultCache over a DocumentStore collection with upsert-by-key semantics."""

    def __init__(
        self,
        store: DocumentStore,
        ttl_seconds: int = 86400,
        collection_name: str = CACHE_COLLECTION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.collection_name = collection_name
        self._clock = clock
        self._initialized = False

    @property
    def _collection(self):
        return self.store.collection(self.collection_name)

    async def initialize(self) -> None:
        """Ensure the expiry index exists."""
        if self._initialized:
            return
        try:
            await self._collection.create_index([("expiresAt", 1)], expireAfterSeconds=0)
            await self._collection.create_index([("key", 1)], unique=True)
        except Exception as e:
            # Without the TTL index entries still expire on read
            logger.warning(f"StoreCache index creation failed: {e}")
        self._initialized = True

    async def close(self) -> None:
        self._initialized = False

    async def get(self, key: str) -> Any | None:
        try:
            doc = await self._collection.find_one({"key": key, "expiresAt": {"$gt": self._clock()}})
            if doc is None:
                return None
            return json.loads(doc["value"])
        except Exception as e:
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        try:
            now = self._clock()
            await self._collection.update_one(
                {"key": key},
                {
                    "$set": {
                        "value": json.dumps(value),
                        "createdAt": now,
                        "expiresAt": now + timedelta(seconds=ttl_seconds or self.ttl_seconds),
                    }
                },
                upsert=True,
            )
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for key {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._collection.delete_one({"key": key})
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for key {key}: {e}")
            return False

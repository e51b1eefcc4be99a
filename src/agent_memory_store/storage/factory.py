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
Backend factories for the agent memory store.

Builds the document store and the result cache from settings.
"""

import logging

from ..cache.base import ResultCache
from ..cache.redis_cache import RedisCache
from ..cache.store_cache import StoreCache
from ..config import CacheSettings, MongoSettings, Settings
from .base import DocumentStore
from .mongo_store import MongoStore

logger = logging.getLogger(__name__)


def create_store_instance(config: MongoSettings | None = None) -> DocumentStore:
    """
    Create the MongoDB store backend (not yet connected).

    Raises:
        ValueError: If MONGODB_CONNECTION_STRING is not set
    """
    if config is None:
        from ..config import settings

        config = settings.mongo

    if not config.connection_string:
        raise ValueError("MONGODB_CONNECTION_STRING is not set")

    logger.info(f"Creating MongoDB store backend for database '{config.database}'")
    return MongoStore(
        connection_string=config.connection_string,
        database_name=config.database,
        config=config,
    )


def create_cache_instance(store: DocumentStore, config: CacheSettings | None = None) -> ResultCache:
    """
    Create the result cache selected by MEMORY_CACHE_BACKEND.

    The store-backed cache shares the document store connection; the Redis
    cache owns its own pool and must be initialized by the caller.
    """
    if config is None:
        from ..config import settings

        config = settings.cache

    if config.backend == "redis":
        logger.info(f"Using Redis result cache at {config.redis_url} (TTL={config.ttl_seconds}s)")
        return RedisCache(
            url=config.redis_url,
            ttl_seconds=config.ttl_seconds,
            key_prefix=config.key_prefix,
            max_connections=config.max_connections,
        )

    logger.info(f"Using document store result cache (TTL={config.ttl_seconds}s)")
    return StoreCache(store, ttl_seconds=config.ttl_seconds)


def create_memory_service(config: Settings | None = None):
    """Wire a MemoryService from settings: store, cache and search engine (not yet initialized)."""
    from ..services.memory_service import MemoryService

    if config is None:
        from ..config import settings

        config = settings

    store = create_store_instance(config.mongo)
    cache = create_cache_instance(store, config.cache)
    return MemoryService(store, cache=cache, config=config)

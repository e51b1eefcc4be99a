"""
Redis cache implementation for search results.

Provides a caching layer for expensive search operations with:
- Configurable TTL (default 24 hours), overridable per entry
- JSON serialization for ranked result lists
"""

import hashlib
import json
import logging
from typing import Any

from redis.asyncio import ConnectionPool, Redis

from .base import ResultCache

logger = logging.getLogger(__name__)


def generate_cache_key(operation: str, params: dict[str, Any]) -> str:
    """
    Generate a consistent cache key from operation and parameters.

    Args:
        operation: The operation type (e.g., 'embedding', 'cache')
        params: Dictionary of query parameters; None values are left out, so an
            absent parameter never collides with the literal string "None"

    Returns:
        Cache key string in format: operation:param1=value1:param2=value2:...
    """
    # Sort params for consistent key generation
    sorted_params = sorted(params.items())

    param_strs = []
    for key, value in sorted_params:
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            value_str = json.dumps(value, sort_keys=True, separators=(",", ":"))
        else:
            value_str = str(value)
        param_strs.append(f"{key}={value_str}")

    key_base = f"{operation}:" + ":".join(param_strs)

    # Use hash for very long keys (raw query text can be arbitrarily long)
    if len(key_base) > 200:
        key_hash = hashlib.sha256(key_base.encode()).hexdigest()[:16]
        return f"{operation}:{key_hash}"

    return key_base


class RedisCache(ResultCache):
    """
    Redis-based cache for search results.

    Provides get/set/delete operations with TTL.
    Uses JSON serialization for storing complex Python objects.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        ttl_seconds: int = 86400,
        key_prefix: str = "memory:cache:",
        max_connections: int = 10,
    ):
        """
        Initialize Redis cache.

        Args:
            url: Redis connection URL
            ttl_seconds: Default TTL for cache entries (default 86400 = 24 hours)
            key_prefix: Prefix for all cache keys
            max_connections: Maximum Redis connections in pool
        """
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.max_connections = max_connections

        self._pool: ConnectionPool | None = None
        self._redis: Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize Redis connection pool."""
        if self._initialized:
            return

        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=self.max_connections,
            decode_responses=True,
        )

        self._redis = Redis(connection_pool=self._pool)

        try:
            await self._redis.ping()
            self._initialized = True
            logger.info(f"RedisCache initialized: {self.url} (TTL={self.ttl_seconds}s)")
        except Exception as e:
            logger.error(f"RedisCache initialization failed: {e}")
            if self._redis:
                await self._redis.aclose()
            if self._pool:
                await self._pool.aclose()
            self._redis = None
            self._pool = None
            raise

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

        if self._pool:
            await self._pool.aclose()
            self._pool = None

        self._initialized = False

    def _make_key(self, key: str) -> str:
        """Add prefix to key."""
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Any | None:
        """
        Get cached value by key.

        Args:
            key: Cache key (without prefix)

        Returns:
            Cached value, or None if not found, expired or on error
        """
        if not self._initialized or not self._redis:
            return None

        try:
            value = await self._redis.get(self._make_key(key))
            if value is None:
                return None
            return json.loads(value)
        except Exception as e:
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """
        Set cached value with TTL.

        Args:
            key: Cache key (without prefix)
            value: Value to cache (must be JSON-serializable)
            ttl_seconds: Entry TTL; defaults to the cache-wide TTL

        Returns:
            True if successful, False otherwise
        """
        if not self._initialized or not self._redis:
            return False

        try:
            json_value = json.dumps(value)
            # SETEX overwrites any existing entry for the key
            await self._redis.setex(self._make_key(key), ttl_seconds or self.ttl_seconds, json_value)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for key {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """
        Delete cached value.

        Args:
            key: Cache key (without prefix)

        Returns:
            True if deleted, False otherwise
        """
        if not self._initialized or not self._redis:
            return False

        try:
            await self._redis.delete(self._make_key(key))
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for key {key}: {e}")
            return False

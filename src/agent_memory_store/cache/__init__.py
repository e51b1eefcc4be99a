"""Result caches for expensive search calls."""

from .base import ResultCache
from .redis_cache import RedisCache, generate_cache_key
from .store_cache import StoreCache

__all__ = ["ResultCache", "RedisCache", "StoreCache", "generate_cache_key"]

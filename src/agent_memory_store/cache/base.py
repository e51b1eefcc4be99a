"""Result cache interface."""

from abc import ABC, abstractmethod
from typing import Any


class ResultCache(ABC):
    """
    Key/value cache with per-entry expiry.

    Values must be JSON-serializable. Failures never propagate: a broken cache
    behaves like an empty one.
    """

    ttl_seconds: int

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on miss, expiry or error."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Upsert *value* under *key*; returns False on error."""

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

"""
Native vector-search capability detection.

Probes the backing store once per connection and records whether native
vector search can serve queries. The result is a small state machine:

    UNKNOWN ──► NATIVE ──► FALLBACK
        └──────────────────►┘

FALLBACK is terminal. The only transition out of NATIVE is the downgrade,
taken when a topology check or a runtime failure shows the index cannot be
used.
"""

import logging
from enum import Enum

from ..config import SEARCHABLE_COLLECTIONS, VECTOR_FILTER_PATHS, SearchSettings
from ..storage.base import DocumentStore

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    UNKNOWN = "unknown"
    NATIVE = "native"
    FALLBACK = "fallback"


class CapabilityState:
    """Connection-scoped capability flag with forward-only transitions."""

    def __init__(self) -> None:
        self._state = Capability.UNKNOWN
        self.downgrade_reason: str | None = None

    @property
    def state(self) -> Capability:
        return self._state

    @property
    def native_available(self) -> bool:
        return self._state is Capability.NATIVE

    def resolve(self, native: bool) -> Capability:
        """Record the probe result. Only valid from UNKNOWN."""
        if self._state is not Capability.UNKNOWN:
            raise ValueError(f"Capability already resolved as {self._state.value}")
        self._state = Capability.NATIVE if native else Capability.FALLBACK
        return self._state

    def downgrade(self, reason: str) -> bool:
        """Move to FALLBACK. Returns True if the state changed."""
        if self._state is Capability.FALLBACK:
            return False
        logger.warning(f"Native vector search disabled: {reason}")
        self._state = Capability.FALLBACK
        self.downgrade_reason = reason
        return True

    def __repr__(self) -> str:
        return f"CapabilityState({self._state.value})"


class CapabilityDetector:
    """Runs the capability probe against a store and updates a CapabilityState."""

    def __init__(
        self,
        store: DocumentStore,
        state: CapabilityState,
        config: SearchSettings | None = None,
        collections: tuple[str, ...] = SEARCHABLE_COLLECTIONS,
    ):
        self.store = store
        self.state = state
        self.config = config or SearchSettings()
        self.collections = collections

    async def detect(self) -> Capability:
        """
        Probe the store and settle the capability flag.

        Steps: server status reports vector search support, the vector index
        is ensured on every searchable collection, and the primary collection
        must not be sharded. Any failure downgrades to FALLBACK and installs a
        plain index on the embedding field instead. Never raises.

        A state that is already resolved is returned as-is; the probe runs
        once per connection.
        """
        if self.state.state is not Capability.UNKNOWN:
            return self.state.state

        try:
            status = await self.store.server_status()
            vector_search = status.get("vectorSearch") or {}
            if vector_search.get("supported") is not True:
                self._settle_fallback("vector search not supported by server")
            else:
                for name in self.collections:
                    await self.store.collection(name).ensure_vector_index(
                        name=self.config.vector_index_name,
                        path="embedding",
                        dimensions=self.config.vector_dimensions,
                        similarity=self.config.vector_similarity,
                        filter_paths=VECTOR_FILTER_PATHS,
                    )
                self.state.resolve(native=True)
                logger.info("Vector search capabilities are available and enabled")

                if await self.store.is_sharded(self.collections[0]):
                    self.state.downgrade(f"collection '{self.collections[0]}' is sharded")
        except Exception as e:
            self._settle_fallback(f"capability probe failed: {e}")

        if self.state.state is Capability.FALLBACK:
            await self._create_standard_embedding_indexes()
        return self.state.state

    def _settle_fallback(self, reason: str) -> None:
        if self.state.state is Capability.UNKNOWN:
            self.state.resolve(native=False)
            self.state.downgrade_reason = reason
            logger.info(f"Using fallback similarity search ({reason})")
        else:
            self.state.downgrade(reason)

    async def _create_standard_embedding_indexes(self) -> None:
        for name in self.collections:
            try:
                await self.store.collection(name).create_index([("embedding", 1)])
            except Exception as e:
                logger.error(f"Failed to create standard embedding index on {name}: {e}")
        logger.debug("Standard embedding indexes ensured")

"""
Configuration for the agent memory store.

Settings are grouped by concern and loaded from environment variables with a
per-group prefix (pydantic-settings). Import the module-level ``settings``
object for the process-wide configuration, or instantiate a group directly in
tests to pick up patched environment variables.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Collections searched by the hybrid engine
MEMORIES_COLLECTION = "memories"
KNOWLEDGE_COLLECTION = "knowledge"
CACHE_COLLECTION = "cache"

SEARCHABLE_COLLECTIONS = (MEMORIES_COLLECTION, KNOWLEDGE_COLLECTION)

# Fields structural search filters may reference; declared as filter fields
# on the vector index so $vectorSearch can pre-filter on them
VECTOR_FILTER_PATHS = ("type", "roomId", "agentId", "unique", "isShared")


class MongoSettings(BaseSettings):
    """Connection settings for the backing document store (MONGODB_ prefix)."""

    model_config = SettingsConfigDict(env_prefix="MONGODB_", extra="ignore")

    connection_string: str | None = None
    database: str = "elizaAgent"

    max_pool_size: int = Field(default=100, ge=1)
    min_pool_size: int = Field(default=5, ge=0)
    max_idle_time_ms: int = Field(default=60_000, ge=0)
    connect_timeout_ms: int = Field(default=10_000, ge=1)
    server_selection_timeout_ms: int = Field(default=5_000, ge=1)
    socket_timeout_ms: int = Field(default=45_000, ge=1)
    compressors: str = "zlib"
    retry_writes: bool = True
    retry_reads: bool = True


class SearchSettings(BaseSettings):
    """Hybrid search and dedup tuning (MEMORY_SEARCH_ prefix)."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_SEARCH_", extra="ignore")

    vector_index_name: str = "vector_index"
    vector_dimensions: int = Field(default=1536, ge=1)
    vector_similarity: Literal["cosine", "euclidean", "dotProduct"] = "cosine"

    # Near-duplicate gate on memory writes
    dedup_threshold: float = Field(default=0.95, ge=0.0, le=1.0)

    # A lexical hit rescues a vector match down to this floor
    lexical_rescue_floor: float = Field(default=0.3, ge=0.0, le=1.0)

    # Upper bound on documents pulled for in-process cosine ranking
    fallback_candidate_limit: int = Field(default=1000, ge=1)

    # Permanently switch to fallback after a native query fails at runtime
    downgrade_on_native_failure: bool = False

    # Atlas Search index used by the lexical cached-embedding lookup
    text_index_name: str = "memoriesContent"


class CacheSettings(BaseSettings):
    """Result cache settings (MEMORY_CACHE_ prefix)."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_CACHE_", extra="ignore")

    backend: Literal["store", "redis"] = "store"
    redis_url: str = "redis://localhost:6379"
    ttl_seconds: int = Field(default=24 * 60 * 60, ge=1)
    key_prefix: str = "memory:cache:"
    max_connections: int = Field(default=10, ge=1)


class Settings(BaseSettings):
    """Top-level settings aggregating every group."""

    model_config = SettingsConfigDict(extra="ignore")

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)


settings = Settings()

"""
Memory Service - persistence and search for agent memories and knowledge.

Owns one store connection and the connection-scoped search engine built on
it (capability flag, orchestrator, dedup gate, edit-distance engine). Every
public operation lazily runs the idempotent ``initialize()`` first.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from ..cache.base import ResultCache
from ..cache.redis_cache import generate_cache_key
from ..cache.store_cache import StoreCache
from ..config import CACHE_COLLECTION, KNOWLEDGE_COLLECTION, MEMORIES_COLLECTION, Settings
from ..models.memory import (
    InsertOutcome,
    KnowledgeItem,
    ScoredCandidate,
    SearchableRecord,
    SearchQuery,
    normalize_content,
    now_ms,
)
from ..search.capability import CapabilityDetector, CapabilityState
from ..search.dedup import DedupGate
from ..search.levenshtein import LevenshteinEngine
from ..search.orchestrator import SearchOrchestrator
from ..storage.base import DocumentStore, DuplicateKeyError
from ..utils.text import sanitize_query

logger = logging.getLogger(__name__)

# Standard (non-vector) indexes created at bootstrap, keyed by collection
STANDARD_INDEXES: dict[str, list[tuple[list[tuple[str, int]], dict[str, Any]]]] = {
    MEMORIES_COLLECTION: [
        ([("type", 1), ("roomId", 1), ("agentId", 1), ("createdAt", -1)], {}),
        ([("id", 1)], {}),
    ],
    KNOWLEDGE_COLLECTION: [
        ([("agentId", 1)], {}),
        ([("isShared", 1)], {}),
        ([("id", 1)], {"unique": True}),
    ],
}


def _to_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, timezone.utc)


class MemoryService:
    """
    Memory and knowledge operations over a document store.

    The search engine state is scoped to the connection: closing the service
    discards the capability flag so the next connection probes again.
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: ResultCache | None = None,
        config: Settings | None = None,
        levenshtein: LevenshteinEngine | None = None,
    ):
        if config is None:
            from ..config import settings

            config = settings

        self.store = store
        self.config = config
        self.cache = cache or StoreCache(store, ttl_seconds=config.cache.ttl_seconds)
        self.levenshtein = levenshtein or LevenshteinEngine()

        self._init_task: asyncio.Future | None = None
        self._initialized = False
        self._build_engine()

    def _build_engine(self) -> None:
        search_config = self.config.search
        self.capability = CapabilityState()
        self.detector = CapabilityDetector(self.store, self.capability, search_config)
        self.orchestrator = SearchOrchestrator(self.store, self.capability, search_config)
        self.dedup = DedupGate(self.orchestrator, search_config)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Connect, bootstrap collections and indexes, probe capabilities.

        Safe to call concurrently and repeatedly: callers share one pending
        initialization, and a completed one short-circuits. A failed attempt
        is cleared so the next call retries.
        """
        if self._initialized:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task

        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        try:
            await self.store.connect()
            await self._initialize_collections()
            await self._initialize_standard_indexes()
            capability = await self.detector.detect()
            await self.cache.initialize()
        except Exception as e:
            logger.error(f"Failed to initialize memory store: {e}")
            raise

        self._initialized = True
        logger.info(f"MemoryService initialized (vector search: {capability.value})")

    async def _initialize_collections(self) -> None:
        for name in (MEMORIES_COLLECTION, KNOWLEDGE_COLLECTION, CACHE_COLLECTION):
            created = await self.store.create_collection(name)
            logger.debug(f"Collection {name} {'created' if created else 'already exists'}")

    async def _initialize_standard_indexes(self) -> None:
        async def ensure(collection_name: str, indexes: list[tuple[list[tuple[str, int]], dict[str, Any]]]) -> None:
            collection = self.store.collection(collection_name)
            existing = [list(index.get("key", {}).items()) for index in await collection.list_indexes()]
            for keys, options in indexes:
                if keys in existing:
                    logger.debug(f"Index already exists for {collection_name}: {keys}")
                    continue
                logger.info(f"Creating index for {collection_name}: {keys}")
                await collection.create_index(keys, **options)

        await asyncio.gather(*(ensure(name, indexes) for name, indexes in STANDARD_INDEXES.items()))

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def close(self) -> None:
        if not self._initialized and self._init_task is None:
            return
        await self.cache.close()
        await self.store.close()
        self._initialized = False
        self._init_task = None
        self._build_engine()

    # =========================================================================
    # Normalisation
    # =========================================================================

    @staticmethod
    def _to_records(docs: list[dict[str, Any]], model: type[SearchableRecord] = SearchableRecord) -> list[Any]:
        records = []
        for doc in docs:
            try:
                records.append(model.model_validate(doc))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed document {doc.get('id')!r}: {e}")
        return records

    # =========================================================================
    # Memories
    # =========================================================================

    async def create_memory(self, memory: SearchableRecord, table_name: str) -> bool:
        """
        Persist a memory, deciding its ``unique`` flag first.

        Returns:
            True if the memory was written, False on any failure (logged)
        """
        await self._ensure_initialized()
        try:
            record = memory.model_copy(update={"type": table_name, "id": memory.id or str(uuid.uuid4())})
            is_unique = await self.dedup.should_mark_unique(record)

            doc = record.to_document()
            doc["unique"] = is_unique
            doc["createdAt"] = _to_datetime(record.created_at or now_ms())

            await self.store.collection(MEMORIES_COLLECTION).insert_one(doc)
            logger.debug(f"Stored memory {record.id} (type={table_name}, unique={is_unique})")
            return True
        except Exception as e:
            logger.error(f"Failed to create memory {memory.id}: {e}")
            return False

    async def search_memories(
        self,
        table_name: str,
        room_id: str,
        embedding: list[float],
        match_threshold: float,
        match_count: int,
        unique: bool = False,
        agent_id: str | None = None,
        search_text: str | None = None,
    ) -> list[ScoredCandidate]:
        """
        Hybrid search over one room's memories.

        Raises:
            SearchError: If neither search path can serve the query
        """
        await self._ensure_initialized()
        filters: dict[str, Any] = {"type": table_name, "roomId": room_id}
        if unique:
            filters["unique"] = True
        if agent_id:
            filters["agentId"] = agent_id

        return await self.orchestrator.search(
            MEMORIES_COLLECTION,
            SearchQuery(
                embedding=embedding,
                text=search_text,
                filters=filters,
                match_threshold=match_threshold,
                match_count=match_count,
            ),
        )

    async def search_memories_by_embedding(
        self,
        embedding: list[float],
        table_name: str,
        agent_id: str,
        match_threshold: float = 0.0,
        count: int = 10,
        room_id: str | None = None,
        unique: bool = False,
    ) -> list[ScoredCandidate]:
        """Hybrid search over an agent's memories, optionally scoped to a room."""
        await self._ensure_initialized()
        filters: dict[str, Any] = {"type": table_name, "agentId": agent_id}
        if unique:
            filters["unique"] = True
        if room_id:
            filters["roomId"] = room_id

        return await self.orchestrator.search(
            MEMORIES_COLLECTION,
            SearchQuery(embedding=embedding, filters=filters, match_threshold=match_threshold, match_count=count),
        )

    async def get_memories(
        self,
        table_name: str,
        room_id: str,
        agent_id: str | None = None,
        count: int | None = None,
        unique: bool = False,
        start: int | None = None,
        end: int | None = None,
    ) -> list[SearchableRecord]:
        """
        Newest-first memories of a room, optionally bounded by creation time (epoch ms).

        Raises:
            ValueError: If table_name or room_id is missing
        """
        if not table_name:
            raise ValueError("table_name is required")
        if not room_id:
            raise ValueError("room_id is required")

        await self._ensure_initialized()
        query: dict[str, Any] = {"type": table_name, "roomId": room_id}
        if agent_id:
            query["agentId"] = agent_id
        if unique:
            query["unique"] = True
        if start or end:
            created: dict[str, Any] = {}
            if start:
                created["$gte"] = _to_datetime(start)
            if end:
                created["$lte"] = _to_datetime(end)
            query["createdAt"] = created

        docs = await self.store.collection(MEMORIES_COLLECTION).find(query, sort=[("createdAt", -1)], limit=count or 0)
        return self._to_records(docs)

    async def get_memory_by_id(self, memory_id: str) -> SearchableRecord | None:
        await self._ensure_initialized()
        doc = await self.store.collection(MEMORIES_COLLECTION).find_one({"id": memory_id})
        if doc is None:
            return None
        records = self._to_records([doc])
        return records[0] if records else None

    async def get_memories_by_ids(self, memory_ids: list[str], table_name: str | None = None) -> list[SearchableRecord]:
        """Fetch memories by id. Returns an empty list on store errors."""
        await self._ensure_initialized()
        query: dict[str, Any] = {"id": {"$in": memory_ids}}
        if table_name:
            query["type"] = table_name
        try:
            docs = await self.store.collection(MEMORIES_COLLECTION).find(query)
        except Exception as e:
            logger.error(f"Failed to get memories by IDs: {e}")
            return []
        return self._to_records(docs)

    async def get_memories_by_room_ids(
        self, agent_id: str, room_ids: list[str], table_name: str = "messages"
    ) -> list[SearchableRecord]:
        await self._ensure_initialized()
        docs = await self.store.collection(MEMORIES_COLLECTION).find(
            {"type": table_name or "messages", "agentId": agent_id, "roomId": {"$in": room_ids}}
        )
        return self._to_records(docs)

    async def remove_memory(self, memory_id: str, table_name: str) -> None:
        await self._ensure_initialized()
        await self.store.collection(MEMORIES_COLLECTION).delete_one({"id": memory_id, "type": table_name})

    async def remove_all_memories(self, room_id: str, table_name: str) -> None:
        await self._ensure_initialized()
        deleted = await self.store.collection(MEMORIES_COLLECTION).delete_many({"roomId": room_id, "type": table_name})
        logger.info(f"Removed {deleted} memories of type {table_name} from room {room_id}")

    async def count_memories(self, room_id: str, unique: bool = True, table_name: str = "") -> int:
        if not table_name:
            raise ValueError("table_name is required")

        await self._ensure_initialized()
        query: dict[str, Any] = {"type": table_name, "roomId": room_id}
        if unique:
            query["unique"] = True
        return await self.store.collection(MEMORIES_COLLECTION).count_documents(query)

    async def get_cached_embeddings(
        self,
        query_table_name: str,
        query_threshold: int,
        query_input: str,
        query_field_name: str,
        query_field_sub_name: str,
        query_match_count: int,
    ) -> list[dict[str, Any]]:
        """
        Find stored embeddings whose text is lexically close to *query_input*.

        Candidates come from a full-text search (native) or the newest
        memories of the table (fallback), are ranked by edit distance between
        ``content.<field>.<sub_field>`` and the raw input, and kept when the
        distance is at most *query_threshold*. Store errors yield an empty
        list; malformed candidates are skipped.

        Returns:
            Dicts with ``embedding`` and ``levenshtein_score``, closest first
        """
        await self._ensure_initialized()
        collection = self.store.collection(MEMORIES_COLLECTION)
        docs: list[dict[str, Any]] = []

        try:
            if self.capability.native_available:
                try:
                    docs = await collection.aggregate(
                        self._text_relevance_pipeline(
                            query_table_name, query_input, query_field_name, query_field_sub_name, query_match_count
                        )
                    )
                except Exception as e:
                    logger.warning(f"Text search failed, falling back to standard query: {e}")
                    docs = await self._recent_memories(collection, query_table_name)
            else:
                docs = await self._recent_memories(collection, query_table_name)
        except Exception as e:
            logger.error(f"Error in get_cached_embeddings: {e}")
            return []

        results = []
        for doc in docs:
            if not doc.get("embedding"):
                continue
            try:
                content = normalize_content(doc.get("content"))
                target = content[query_field_name][query_field_sub_name]
                if not isinstance(target, str):
                    raise TypeError(f"expected text at content.{query_field_name}.{query_field_sub_name}")
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Error processing memory document {doc.get('id')!r}: {e}")
                continue

            # ScratchBufferError propagates
            score = self.levenshtein.distance(query_input, target)
            if score <= query_threshold:
                results.append({"embedding": doc["embedding"], "levenshtein_score": score})

        results.sort(key=lambda r: r["levenshtein_score"])
        return results[:query_match_count]

    def _text_relevance_pipeline(
        self, table_name: str, query_input: str, field_name: str, sub_field_name: str, match_count: int
    ) -> list[dict[str, Any]]:
        return [
            {
                "$search": {
                    "index": self.config.search.text_index_name,
                    "compound": {
                        "must": [
                            {
                                "text": {
                                    "query": sanitize_query(query_input),
                                    "path": [f"content.{field_name}.{sub_field_name}", "content.text"],
                                }
                            }
                        ],
                        "filter": [{"text": {"query": table_name, "path": "type"}}],
                    },
                }
            },
            {"$addFields": {"score": {"$meta": "searchScore"}}},
            {"$sort": {"score": -1}},
            {"$limit": match_count * 2},
        ]

    async def _recent_memories(self, collection, table_name: str) -> list[dict[str, Any]]:
        return await collection.find(
            {"type": table_name},
            sort=[("createdAt", -1)],
            limit=self.config.search.fallback_candidate_limit,
        )

    # =========================================================================
    # Knowledge
    # =========================================================================

    async def create_knowledge(self, item: KnowledgeItem) -> InsertOutcome:
        """
        Insert a knowledge item unless one with the same id exists.

        Returns:
            INSERTED, ALREADY_PRESENT (including a lost duplicate-key race),
            or FAILED on any other store error (logged)
        """
        await self._ensure_initialized()
        doc = item.to_document()
        doc["createdAt"] = _to_datetime(item.created_at or now_ms())

        try:
            result = await self.store.collection(KNOWLEDGE_COLLECTION).update_one(
                {"id": item.id}, {"$setOnInsert": doc}, upsert=True
            )
        except DuplicateKeyError:
            logger.info(f"Knowledge {item.id} already exists, skipping")
            return InsertOutcome.ALREADY_PRESENT
        except Exception as e:
            logger.error(f"Error creating knowledge {item.id}: {e}")
            return InsertOutcome.FAILED

        if result.upserted:
            return InsertOutcome.INSERTED
        logger.debug(f"Knowledge {item.id} already exists, skipping")
        return InsertOutcome.ALREADY_PRESENT

    async def get_knowledge(self, agent_id: str, id: str | None = None, limit: int | None = None) -> list[KnowledgeItem]:
        """Knowledge owned by *agent_id* or shared across agents."""
        await self._ensure_initialized()
        query: dict[str, Any] = {"$or": [{"agentId": agent_id}, {"isShared": True}]}
        if id:
            query["id"] = id
        docs = await self.store.collection(KNOWLEDGE_COLLECTION).find(query, limit=limit or 0)
        return self._to_records(docs, KnowledgeItem)

    async def search_knowledge(
        self,
        agent_id: str,
        embedding: list[float],
        match_threshold: float,
        match_count: int,
        search_text: str | None = None,
    ) -> list[KnowledgeItem]:
        """
        Cached hybrid search over the agent's own and shared knowledge.

        The cache key covers only the agent and the raw search text; a hit is
        returned as stored, without re-scoring.

        Raises:
            SearchError: If neither search path can serve the query
        """
        await self._ensure_initialized()
        cache_key = generate_cache_key("embedding", {"agent_id": agent_id, "text": search_text})

        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Knowledge search cache hit: {cache_key}")
            return [KnowledgeItem.model_validate(item) for item in cached]

        candidates = await self.orchestrator.search(
            KNOWLEDGE_COLLECTION,
            SearchQuery(
                embedding=embedding,
                text=search_text,
                filters={"$or": [{"agentId": agent_id}, {"isShared": True}]},
                match_threshold=match_threshold,
                match_count=match_count,
            ),
            record_model=KnowledgeItem,
        )
        results = [c.record.model_copy(update={"similarity": c.combined_score}) for c in candidates]

        await self.cache.set(cache_key, [r.model_dump(by_alias=True, mode="json") for r in results])
        return results

    async def remove_knowledge(self, id: str) -> None:
        await self._ensure_initialized()
        await self.store.collection(KNOWLEDGE_COLLECTION).delete_one({"id": id})

    async def clear_knowledge(self, agent_id: str, shared: bool = False) -> None:
        await self._ensure_initialized()
        query: dict[str, Any] = {"$or": [{"agentId": agent_id}, {"isShared": True}]} if shared else {"agentId": agent_id}
        try:
            await self.store.collection(KNOWLEDGE_COLLECTION).delete_many(query)
        except Exception as e:
            logger.error(f"Error clearing knowledge for agent {agent_id}: {e}")
            raise

    # =========================================================================
    # Cache
    # =========================================================================

    @staticmethod
    def _agent_cache_key(key: str, agent_id: str) -> str:
        return generate_cache_key("cache", {"agent_id": agent_id, "key": key})

    async def get_cache(self, key: str, agent_id: str) -> Any | None:
        await self._ensure_initialized()
        return await self.cache.get(self._agent_cache_key(key, agent_id))

    async def set_cache(self, key: str, agent_id: str, value: Any) -> bool:
        await self._ensure_initialized()
        return await self.cache.set(self._agent_cache_key(key, agent_id), value)

    async def delete_cache(self, key: str, agent_id: str) -> bool:
        await self._ensure_initialized()
        return await self.cache.delete(self._agent_cache_key(key, agent_id))

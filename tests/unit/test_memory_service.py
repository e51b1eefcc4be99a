"""
Tests for MemoryService.

Covers:
- Idempotent, concurrency-safe initialization and retry after failure
- Memory writes with the near-duplicate gate
- Memory reads, counts, validation
- Knowledge insert-if-absent outcomes and shared visibility
- Cached knowledge search
- Agent-scoped cache operations
- Lexical cached-embedding lookup
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeStore, ms

from agent_memory_store.cache.store_cache import StoreCache
from agent_memory_store.models.memory import InsertOutcome, KnowledgeItem, SearchableRecord
from agent_memory_store.search.capability import Capability
from agent_memory_store.services.memory_service import MemoryService
from agent_memory_store.storage.base import DuplicateKeyError, SearchError


def _memory(id: str, embedding=None, text: str = "hello", room: str = "room-1", created_at=None) -> SearchableRecord:
    return SearchableRecord(
        id=id,
        agentId="agent-1",
        roomId=room,
        userId="user-1",
        content={"text": text},
        embedding=embedding,
        createdAt=created_at,
    )


def _knowledge(id: str, embedding, text: str = "fact", agent: str | None = "agent-1", shared: bool = False, **metadata):
    return KnowledgeItem(
        id=id,
        agentId=agent,
        content={"text": text, "metadata": {"isShared": shared, **metadata}},
        embedding=embedding,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def service(store):
    return MemoryService(store)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_concurrent_initialize_runs_once(self, store, service):
        await asyncio.gather(service.initialize(), service.initialize(), service.initialize())

        assert service.initialized is True
        assert store.connect_count == 1
        assert set(store.collections) >= {"memories", "knowledge", "cache"}

    @pytest.mark.asyncio
    async def test_repeat_initialize_is_a_no_op(self, store, service):
        await service.initialize()
        await service.initialize()

        assert store.connect_count == 1
        assert store.collection("memories").calls.count("create_index") == 3

    @pytest.mark.asyncio
    async def test_creates_standard_indexes(self, store, service):
        await service.initialize()

        memory_keys = [index["key"] for index in store.collection("memories").indexes]
        assert {"type": 1, "roomId": 1, "agentId": 1, "createdAt": -1} in memory_keys
        assert "id" in store.collection("knowledge").unique_fields

    @pytest.mark.asyncio
    async def test_existing_indexes_are_not_recreated(self, store, service):
        store.collection("knowledge").indexes.append({"name": "agentId_1", "key": {"agentId": 1}})

        await service.initialize()

        created = [index["key"] for index in store.collection("knowledge").indexes]
        assert created.count({"agentId": 1}) == 1

    @pytest.mark.asyncio
    async def test_failed_initialize_can_be_retried(self, store, service):
        store.errors["connect"] = RuntimeError("server selection timeout")

        with pytest.raises(RuntimeError):
            await service.initialize()
        assert service.initialized is False

        del store.errors["connect"]
        await service.initialize()

        assert service.initialized is True
        assert store.connect_count == 1

    @pytest.mark.asyncio
    async def test_operations_initialize_lazily(self, store, service):
        assert await service.count_memories("room-1", table_name="messages") == 0
        assert service.initialized is True

    @pytest.mark.asyncio
    async def test_capability_detected_on_initialize(self):
        service = MemoryService(FakeStore(vector_search=True))
        await service.initialize()

        assert service.capability.state is Capability.NATIVE

    @pytest.mark.asyncio
    async def test_close_resets_connection_scoped_state(self):
        store = FakeStore(vector_search=True)
        service = MemoryService(store)
        await service.initialize()

        await service.close()

        assert store.close_count == 1
        assert service.initialized is False
        assert service.capability.state is Capability.UNKNOWN


class TestCreateMemory:
    @pytest.mark.asyncio
    async def test_first_memory_is_unique(self, store, service):
        assert await service.create_memory(_memory("m1", [1.0, 0.0]), "messages") is True

        doc = store.collection("memories").documents[0]
        assert doc["unique"] is True
        assert doc["type"] == "messages"
        assert isinstance(doc["createdAt"], datetime)

    @pytest.mark.asyncio
    async def test_near_duplicate_is_not_unique(self, store, service):
        await service.create_memory(_memory("m1", [1.0, 0.0]), "messages")
        await service.create_memory(_memory("m2", [1.0, 0.01]), "messages")

        flags = {d["id"]: d["unique"] for d in store.collection("memories").documents}
        assert flags == {"m1": True, "m2": False}

    @pytest.mark.asyncio
    async def test_duplicate_in_another_table_is_unique(self, store, service):
        await service.create_memory(_memory("m1", [1.0, 0.0]), "messages")
        await service.create_memory(_memory("m2", [1.0, 0.0]), "facts")

        assert all(d["unique"] for d in store.collection("memories").documents)

    @pytest.mark.asyncio
    async def test_memory_without_embedding_is_unique(self, store, service):
        await service.create_memory(_memory("m1"), "messages")
        await service.create_memory(_memory("m2"), "messages")

        assert all(d["unique"] for d in store.collection("memories").documents)

    @pytest.mark.asyncio
    async def test_missing_id_is_generated(self, store, service):
        memory = SearchableRecord(id="", roomId="room-1", content={"text": "x"})
        await service.create_memory(memory, "messages")

        assert store.collection("memories").documents[0]["id"]

    @pytest.mark.asyncio
    async def test_created_at_is_preserved(self, store, service):
        await service.create_memory(_memory("m1", created_at=ms(2023, 5, 1)), "messages")

        memory = await service.get_memory_by_id("m1")
        assert memory.created_at == ms(2023, 5, 1)

    @pytest.mark.asyncio
    async def test_write_failure_returns_false(self, store, service):
        await service.initialize()
        store.collection("memories").errors["insert_one"] = RuntimeError("write concern error")

        assert await service.create_memory(_memory("m1", [1.0, 0.0]), "messages") is False


class TestReadMemories:
    @pytest.mark.asyncio
    async def test_get_memories_requires_table_and_room(self, service):
        with pytest.raises(ValueError, match="table_name"):
            await service.get_memories(table_name="", room_id="room-1")
        with pytest.raises(ValueError, match="room_id"):
            await service.get_memories(table_name="messages", room_id="")

    @pytest.mark.asyncio
    async def test_get_memories_newest_first(self, service):
        for id, month in (("old", 1), ("new", 3), ("mid", 2)):
            await service.create_memory(_memory(id, created_at=ms(2024, month)), "messages")

        memories = await service.get_memories(table_name="messages", room_id="room-1")
        assert [m.id for m in memories] == ["new", "mid", "old"]

        limited = await service.get_memories(table_name="messages", room_id="room-1", count=1)
        assert [m.id for m in limited] == ["new"]

    @pytest.mark.asyncio
    async def test_get_memories_time_range(self, service):
        for id, month in (("old", 1), ("mid", 2), ("new", 3)):
            await service.create_memory(_memory(id, created_at=ms(2024, month)), "messages")

        memories = await service.get_memories(
            table_name="messages", room_id="room-1", start=ms(2024, 1, 15), end=ms(2024, 2, 15)
        )
        assert [m.id for m in memories] == ["mid"]

    @pytest.mark.asyncio
    async def test_get_by_ids_and_rooms(self, service):
        await service.create_memory(_memory("a"), "messages")
        await service.create_memory(_memory("b", room="room-2"), "messages")
        await service.create_memory(_memory("c", room="room-3"), "messages")

        by_ids = await service.get_memories_by_ids(["a", "c", "missing"])
        assert sorted(m.id for m in by_ids) == ["a", "c"]

        by_rooms = await service.get_memories_by_room_ids("agent-1", ["room-1", "room-2"])
        assert sorted(m.id for m in by_rooms) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_get_by_ids_store_error_returns_empty(self, store, service):
        await service.initialize()
        store.collection("memories").errors["find"] = RuntimeError("down")

        assert await service.get_memories_by_ids(["a"]) == []

    @pytest.mark.asyncio
    async def test_get_memory_by_id_missing(self, service):
        assert await service.get_memory_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_count_memories(self, service):
        await service.create_memory(_memory("m1", [1.0, 0.0]), "messages")
        await service.create_memory(_memory("m2", [1.0, 0.0]), "messages")

        assert await service.count_memories("room-1", table_name="messages") == 1
        assert await service.count_memories("room-1", unique=False, table_name="messages") == 2

    @pytest.mark.asyncio
    async def test_count_memories_requires_table(self, service):
        with pytest.raises(ValueError, match="table_name"):
            await service.count_memories("room-1")

    @pytest.mark.asyncio
    async def test_remove_memories(self, service):
        await service.create_memory(_memory("m1"), "messages")
        await service.create_memory(_memory("m2"), "messages")
        await service.create_memory(_memory("m3"), "facts")

        await service.remove_memory("m1", "messages")
        assert await service.get_memory_by_id("m1") is None

        await service.remove_all_memories("room-1", "messages")
        assert await service.count_memories("room-1", unique=False, table_name="messages") == 0
        assert await service.count_memories("room-1", unique=False, table_name="facts") == 1


class TestSearchMemories:
    @pytest.mark.asyncio
    async def test_search_memories_fallback(self, service):
        await service.create_memory(_memory("exact", [1.0, 0.0]), "messages")
        await service.create_memory(_memory("orthogonal", [0.0, 1.0]), "messages")

        results = await service.search_memories(
            table_name="messages", room_id="room-1", embedding=[1.0, 0.0], match_threshold=0.5, match_count=5
        )

        assert [r.record.id for r in results] == ["exact"]
        assert results[0].vector_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_search_memories_unique_only(self, service):
        await service.create_memory(_memory("first", [1.0, 0.0]), "messages")
        await service.create_memory(_memory("dup", [1.0, 0.0]), "messages")

        results = await service.search_memories(
            table_name="messages", room_id="room-1", embedding=[1.0, 0.0], match_threshold=0.5, match_count=5, unique=True
        )

        assert [r.record.id for r in results] == ["first"]

    @pytest.mark.asyncio
    async def test_search_memories_by_embedding_spans_rooms(self, service):
        await service.create_memory(_memory("r1", [1.0, 0.0], room="room-1"), "messages")
        await service.create_memory(_memory("r2", [1.0, 0.1], room="room-2"), "messages")

        results = await service.search_memories_by_embedding([1.0, 0.0], "messages", "agent-1", match_threshold=0.5)

        assert [r.record.id for r in results] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_search_failure_propagates(self, store, service):
        await service.initialize()
        store.collection("memories").errors["find"] = RuntimeError("down")

        with pytest.raises(SearchError):
            await service.search_memories("messages", "room-1", [1.0, 0.0], 0.5, 5)


class TestKnowledge:
    @pytest.mark.asyncio
    async def test_create_knowledge_outcomes(self, service):
        item = _knowledge("k1", [1.0, 0.0])

        assert await service.create_knowledge(item) is InsertOutcome.INSERTED
        assert await service.create_knowledge(item) is InsertOutcome.ALREADY_PRESENT

    @pytest.mark.asyncio
    async def test_duplicate_key_race_is_already_present(self, store, service):
        await service.initialize()
        store.collection("knowledge").errors["update_one"] = DuplicateKeyError("E11000")

        assert await service.create_knowledge(_knowledge("k1", [1.0, 0.0], shared=True)) is InsertOutcome.ALREADY_PRESENT

    @pytest.mark.asyncio
    async def test_other_errors_fail(self, store, service):
        await service.initialize()
        store.collection("knowledge").errors["update_one"] = RuntimeError("not primary")

        assert await service.create_knowledge(_knowledge("k1", [1.0, 0.0])) is InsertOutcome.FAILED

    @pytest.mark.asyncio
    async def test_shared_flag_is_denormalized(self, store, service):
        await service.create_knowledge(_knowledge("k1", [1.0, 0.0], shared=True, isMain=True))

        doc = store.collection("knowledge").documents[0]
        assert doc["isShared"] is True
        assert doc["isMain"] is True
        assert "similarity" not in doc

    @pytest.mark.asyncio
    async def test_get_knowledge_includes_shared(self, service):
        await service.create_knowledge(_knowledge("mine", [1.0, 0.0]))
        await service.create_knowledge(_knowledge("shared", [1.0, 0.0], agent="agent-2", shared=True))
        await service.create_knowledge(_knowledge("theirs", [1.0, 0.0], agent="agent-2"))

        items = await service.get_knowledge("agent-1")
        assert sorted(i.id for i in items) == ["mine", "shared"]

        single = await service.get_knowledge("agent-1", id="shared")
        assert [i.id for i in single] == ["shared"]

    @pytest.mark.asyncio
    async def test_search_knowledge_scores_and_caches(self, store, service):
        await service.create_knowledge(_knowledge("chunk", [1.0, 0.0], text="orbital launch window", isChunk=True))
        await service.create_knowledge(_knowledge("plain", [1.0, 0.0], text="unrelated"))

        results = await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5, search_text="launch")

        assert [r.id for r in results] == ["chunk", "plain"]
        assert results[0].similarity == pytest.approx(3.0 * 1.5)
        assert results[1].similarity == pytest.approx(1.0)

        # A hit is served as stored, even after the underlying data changes
        store.collection("knowledge").documents.clear()
        cached = await service.search_knowledge("agent-1", [0.0, 1.0], 0.99, 1, search_text="launch")
        assert [r.id for r in cached] == ["chunk", "plain"]
        assert cached[0].similarity == pytest.approx(4.5)

    @pytest.mark.asyncio
    async def test_search_knowledge_recomputes_after_ttl(self, store):
        now = [datetime(2024, 6, 1, tzinfo=timezone.utc)]
        service = MemoryService(store, cache=StoreCache(store, ttl_seconds=60, clock=lambda: now[0]))
        await service.create_knowledge(_knowledge("k1", [1.0, 0.0]))

        assert [r.id for r in await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5, search_text="q")] == ["k1"]

        await service.create_knowledge(_knowledge("k2", [1.0, 0.0]))
        now[0] += timedelta(seconds=30)
        assert [r.id for r in await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5, search_text="q")] == ["k1"]

        now[0] += timedelta(seconds=31)
        refreshed = await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5, search_text="q")
        assert sorted(r.id for r in refreshed) == ["k1", "k2"]

    @pytest.mark.asyncio
    async def test_search_knowledge_cache_is_per_agent(self, service):
        await service.create_knowledge(_knowledge("a1", [1.0, 0.0], agent="agent-1"))
        await service.create_knowledge(_knowledge("a2", [1.0, 0.0], agent="agent-2"))

        first = await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5, search_text="q")
        second = await service.search_knowledge("agent-2", [1.0, 0.0], 0.5, 5, search_text="q")

        assert [r.id for r in first] == ["a1"]
        assert [r.id for r in second] == ["a2"]

    @pytest.mark.asyncio
    async def test_search_without_text_does_not_share_cache_with_literal_none(self, service):
        await service.create_knowledge(_knowledge("k1", [1.0, 0.0]))
        without_text = await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5)

        await service.create_knowledge(_knowledge("k2", [1.0, 0.0]))
        literal = await service.search_knowledge("agent-1", [1.0, 0.0], 0.5, 5, search_text="None")

        assert [r.id for r in without_text] == ["k1"]
        assert sorted(r.id for r in literal) == ["k1", "k2"]

    @pytest.mark.asyncio
    async def test_remove_and_clear_knowledge(self, service):
        await service.create_knowledge(_knowledge("mine", [1.0, 0.0]))
        await service.create_knowledge(_knowledge("mine2", [1.0, 0.0]))
        await service.create_knowledge(_knowledge("shared", [1.0, 0.0], agent="agent-2", shared=True))

        await service.remove_knowledge("mine")
        assert sorted(i.id for i in await service.get_knowledge("agent-1")) == ["mine2", "shared"]

        await service.clear_knowledge("agent-1")
        assert [i.id for i in await service.get_knowledge("agent-1")] == ["shared"]

        await service.clear_knowledge("agent-1", shared=True)
        assert await service.get_knowledge("agent-1") == []


class TestAgentCache:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, service):
        assert await service.set_cache("profile", "agent-1", {"name": "Ada"}) is True
        assert await service.get_cache("profile", "agent-1") == {"name": "Ada"}
        assert await service.get_cache("profile", "agent-2") is None

        assert await service.delete_cache("profile", "agent-1") is True
        assert await service.get_cache("profile", "agent-1") is None


class TestCachedEmbeddings:
    @staticmethod
    def _seed(store):
        def doc(id, source_text, embedding=(0.1, 0.2), type="messages"):
            return {
                "id": id,
                "type": type,
                "roomId": "room-1",
                "content": {"text": source_text, "source": {"text": source_text}},
                "embedding": list(embedding) if embedding else None,
                "createdAt": ms(2024),
            }

        store.collection("memories").documents = [
            doc("far", "completely different sentence"),
            doc("one-off", "hello word", embedding=(0.3, 0.4)),
            doc("exact", "hello world", embedding=(0.5, 0.6)),
            doc("no-embedding", "hello world", embedding=None),
            {"id": "no-field", "type": "messages", "content": {"text": "hello world"}, "embedding": [0.7]},
            {"id": "bad-json", "type": "messages", "content": "{oops", "embedding": [0.8]},
            doc("other-table", "hello world", type="facts"),
        ]

    @pytest.mark.asyncio
    async def test_fallback_ranks_by_edit_distance(self, store, service):
        self._seed(store)

        results = await service.get_cached_embeddings("messages", 3, "hello world", "source", "text", 10)

        assert results == [
            {"embedding": [0.5, 0.6], "levenshtein_score": 0},
            {"embedding": [0.3, 0.4], "levenshtein_score": 1},
        ]

    @pytest.mark.asyncio
    async def test_match_count_truncates(self, store, service):
        self._seed(store)

        results = await service.get_cached_embeddings("messages", 100, "hello world", "source", "text", 1)

        assert results == [{"embedding": [0.5, 0.6], "levenshtein_score": 0}]

    @pytest.mark.asyncio
    async def test_native_uses_text_search_pipeline(self):
        store = FakeStore(vector_search=True)
        service = MemoryService(store)
        await service.initialize()
        store.collection("memories").aggregate_results = [
            {"id": "hit", "content": {"source": {"text": "the hello world"}}, "embedding": [0.9]},
        ]

        results = await service.get_cached_embeddings("messages", 5, "The hello world", "source", "text", 3)

        assert results == [{"embedding": [0.9], "levenshtein_score": 1}]
        search = store.collection("memories").pipelines[-1][0]["$search"]
        must = search["compound"]["must"][0]["text"]
        assert must["query"] == "hello world"
        assert must["path"] == ["content.source.text", "content.text"]
        assert search["compound"]["filter"] == [{"text": {"query": "messages", "path": "type"}}]

    @pytest.mark.asyncio
    async def test_native_failure_uses_recent_memories(self):
        store = FakeStore(vector_search=True)
        service = MemoryService(store)
        await service.initialize()
        self._seed(store)
        store.collection("memories").errors["aggregate"] = RuntimeError("no text index")

        results = await service.get_cached_embeddings("messages", 0, "hello world", "source", "text", 10)

        assert results == [{"embedding": [0.5, 0.6], "levenshtein_score": 0}]

    @pytest.mark.asyncio
    async def test_store_error_returns_empty(self, store, service):
        await service.initialize()
        store.collection("memories").errors["find"] = RuntimeError("down")

        assert await service.get_cached_embeddings("messages", 3, "hello", "source", "text", 5) == []

import copy
import os
import sys
from datetime import datetime, timezone
from typing import Any

import pytest

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from agent_memory_store.config import SearchSettings, Settings  # noqa: E402
from agent_memory_store.storage.base import (  # noqa: E402
    DocumentCollection,
    DocumentStore,
    DuplicateKeyError,
    WriteResult,
)

_MISSING = object()


def _get_path(doc: dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$in":
        return value in operand
    if op == "$ne":
        return value != operand
    if op == "$exists":
        return (value is not _MISSING) == operand
    if value is _MISSING or value is None:
        return False
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    raise NotImplementedError(op)


def _sort_key(value: Any) -> tuple[int, Any]:
    """BSON comparison order: null < numbers < strings < booleans < dates."""
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, datetime):
        return (4, value.timestamp())
    return (5, repr(value))


def matches(doc: dict[str, Any], filter: dict[str, Any]) -> bool:
    """Subset of MongoDB query semantics used by the engine."""
    for key, expected in filter.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in expected):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in expected):
                return False
            continue

        value = _get_path(doc, key)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            if not all(_compare(value, op, operand) for op, operand in expected.items()):
                return False
        else:
            # Missing fields compare equal to null
            actual = None if value is _MISSING else value
            if actual != expected:
                return False
    return True


class FakeCollection(DocumentCollection):
    """In-memory DocumentCollection with unique-index enforcement and failure injection."""

    def __init__(self, name: str):
        self.name = name
        self.documents: list[dict[str, Any]] = []
        self.indexes: list[dict[str, Any]] = [{"name": "_id_", "key": {"_id": 1}}]
        self.vector_indexes: dict[str, dict[str, Any]] = {}
        self.unique_fields: set[str] = set()
        self.pipelines: list[list[dict[str, Any]]] = []
        self.aggregate_results: list[dict[str, Any]] = []
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self._next_id = 1

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if method in self.errors:
            raise self.errors[method]

    def _check_unique(self, document: dict[str, Any]) -> None:
        for field in self.unique_fields:
            value = _get_path(document, field)
            if value is _MISSING:
                continue
            if any(_get_path(d, field) == value for d in self.documents if d is not document):
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {field}_1")

    def _store(self, document: dict[str, Any]) -> Any:
        doc = copy.deepcopy(document)
        doc.setdefault("_id", self._next_id)
        self._next_id += 1
        self._check_unique(doc)
        self.documents.append(doc)
        return doc["_id"]

    async def find(self, filter, *, sort=None, limit=0, projection=None):
        self._enter("find")
        docs = [d for d in self.documents if matches(d, filter)]
        for field, direction in reversed(sort or []):
            docs.sort(key=lambda d: _sort_key(_get_path(d, field)), reverse=direction < 0)
        if limit:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def find_one(self, filter):
        self._enter("find_one")
        for doc in self.documents:
            if matches(doc, filter):
                return copy.deepcopy(doc)
        return None

    async def insert_one(self, document):
        self._enter("insert_one")
        self._store(document)

    async def insert_many(self, documents):
        self._enter("insert_many")
        for document in documents:
            self._store(document)

    async def update_one(self, filter, update, *, upsert=False):
        self._enter("update_one")
        for doc in self.documents:
            if matches(doc, filter):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return WriteResult(matched_count=1, modified_count=1 if "$set" in update else 0)

        if not upsert:
            return WriteResult()

        new_doc = {k: v for k, v in filter.items() if not k.startswith("$") and not isinstance(v, dict)}
        new_doc.update(update.get("$setOnInsert", {}))
        new_doc.update(update.get("$set", {}))
        upserted_id = self._store(new_doc)
        return WriteResult(upserted_id=upserted_id)

    async def delete_one(self, filter):
        self._enter("delete_one")
        for i, doc in enumerate(self.documents):
            if matches(doc, filter):
                del self.documents[i]
                return 1
        return 0

    async def delete_many(self, filter):
        self._enter("delete_many")
        before = len(self.documents)
        self.documents = [d for d in self.documents if not matches(d, filter)]
        return before - len(self.documents)

    async def count_documents(self, filter):
        self._enter("count_documents")
        return sum(1 for d in self.documents if matches(d, filter))

    async def aggregate(self, pipeline):
        self._enter("aggregate")
        self.pipelines.append(pipeline)
        return copy.deepcopy(self.aggregate_results)

    async def create_index(self, keys, **options):
        self._enter("create_index")
        name = "_".join(f"{field}_{direction}" for field, direction in keys)
        self.indexes.append({"name": name, "key": dict(keys), **options})
        if options.get("unique") and len(keys) == 1:
            self.unique_fields.add(keys[0][0])
        return name

    async def list_indexes(self):
        self._enter("list_indexes")
        return copy.deepcopy(self.indexes)

    async def ensure_vector_index(self, name, path, dimensions, similarity, filter_paths=()):
        self._enter("ensure_vector_index")
        self.vector_indexes.setdefault(
            name,
            {"path": path, "numDimensions": dimensions, "similarity": similarity, "filterPaths": list(filter_paths)},
        )


class FakeStore(DocumentStore):
    """In-memory DocumentStore; vector search unsupported unless configured."""

    def __init__(self, vector_search: bool = False, sharded: bool = False):
        self.collections: dict[str, FakeCollection] = {}
        self.status: dict[str, Any] = {"vectorSearch": {"supported": vector_search}}
        self.sharded = sharded
        self.connect_count = 0
        self.close_count = 0
        self.errors: dict[str, Exception] = {}

    def _enter(self, method: str) -> None:
        if method in self.errors:
            raise self.errors[method]

    async def connect(self):
        self._enter("connect")
        self.connect_count += 1

    async def close(self):
        self.close_count += 1

    def collection(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    async def create_collection(self, name):
        self._enter("create_collection")
        if name in self.collections:
            return False
        self.collections[name] = FakeCollection(name)
        return True

    async def server_status(self):
        self._enter("server_status")
        return self.status

    async def is_sharded(self, collection_name):
        self._enter("is_sharded")
        return self.sharded


def ms(year: int, month: int = 1, day: int = 1) -> int:
    """Epoch milliseconds for a UTC date."""
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def native_store():
    return FakeStore(vector_search=True)


@pytest.fixture
def search_settings():
    return SearchSettings()


@pytest.fixture
def test_settings():
    return Settings()

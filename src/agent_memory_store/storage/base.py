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
Document store interface consumed by the search engine.

The engine never talks to a driver directly. It needs a handful of collection
operations (find / insert / update / delete / aggregate / index management)
and some store-wide introspection (server status, topology). Backends
implement these two abstract classes.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any


class StorageError(Exception):
    """Storage-related errors."""

    pass


class DuplicateKeyError(StorageError):
    """A write violated a unique index."""

    pass


class SearchError(StorageError):
    """A search could not be served by any path."""

    pass


@dataclass
class WriteResult:
    """Outcome of an update/upsert."""

    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None

    @property
    def upserted(self) -> bool:
        return self.upserted_id is not None


class DocumentCollection(ABC):
    """A named collection of JSON-like documents."""

    name: str

    @abstractmethod
    async def find(
        self,
        filter: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        projection: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return documents matching *filter*; ``limit=0`` means unbounded."""

    @abstractmethod
    async def find_one(self, filter: dict[str, Any]) -> dict[str, Any] | None: ...

    @abstractmethod
    async def insert_one(self, document: dict[str, Any]) -> None: ...

    @abstractmethod
    async def insert_many(self, documents: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    async def update_one(self, filter: dict[str, Any], update: dict[str, Any], *, upsert: bool = False) -> WriteResult: ...

    @abstractmethod
    async def delete_one(self, filter: dict[str, Any]) -> int: ...

    @abstractmethod
    async def delete_many(self, filter: dict[str, Any]) -> int: ...

    @abstractmethod
    async def count_documents(self, filter: dict[str, Any]) -> int: ...

    @abstractmethod
    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def create_index(self, keys: list[tuple[str, Any]], **options: Any) -> str: ...

    @abstractmethod
    async def list_indexes(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def ensure_vector_index(
        self,
        name: str,
        path: str,
        dimensions: int,
        similarity: str,
        filter_paths: Sequence[str] = (),
    ) -> None:
        """Create the named vector-search index on *path* unless it exists.

        *filter_paths* are declared as pre-filter fields on the index.

        Raises:
            StorageError: If the store rejects the index definition
        """


class DocumentStore(ABC):
    """Store-wide operations and collection access."""

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def collection(self, name: str) -> DocumentCollection: ...

    @abstractmethod
    async def create_collection(self, name: str) -> bool:
        """Create *name*; returns False when it already exists."""

    @abstractmethod
    async def server_status(self) -> dict[str, Any]: ...

    @abstractmethod
    async def is_sharded(self, collection_name: str) -> bool:
        """Whether the collection is distributed across shards."""

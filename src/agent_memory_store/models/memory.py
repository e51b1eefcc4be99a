"""Searchable record models.

Pydantic v2 models for memory and knowledge records as the engine sees them,
plus the request-scoped scoring wrapper and the search query shape.

Stored documents use camelCase field names (``agentId``, ``roomId``,
``createdAt``); the models accept either spelling and dump with aliases so a
record can round-trip through the store unchanged.
"""

import json
import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Self

from dateutil import parser as dateutil_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Normalisation helpers (shared by the models and the search orchestrator)
# ---------------------------------------------------------------------------


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_timestamp(value: Any) -> int | None:
    """Convert a stored timestamp to epoch milliseconds.

    Accepts epoch numbers (already milliseconds), ``datetime`` objects
    (naive values are read as UTC, which is how the driver returns them) and
    ISO-8601 / RFC date strings.

    Raises:
        ValueError: If a string cannot be parsed as a date
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, int | float):
        if not math.isfinite(value):
            raise ValueError(f"Invalid timestamp: {value!r}")
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
        try:
            parsed = dateutil_parser.parse(stripped)
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Invalid timestamp string: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def normalize_content(value: Any) -> dict[str, Any]:
    """Return structured content, decoding string-encoded JSON.

    Raises:
        ValueError: If a string payload is not a JSON object
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        decoded = json.loads(value)
        if not isinstance(decoded, dict):
            raise ValueError(f"Content must decode to an object, got {type(decoded).__name__}")
        return decoded
    raise ValueError(f"Unsupported content type: {type(value).__name__}")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class SearchableRecord(BaseModel):
    """A memory or knowledge record with an optional embedding."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    agent_id: str | None = Field(default=None, alias="agentId")
    room_id: str | None = Field(default=None, alias="roomId")
    user_id: str | None = Field(default=None, alias="userId")
    # Table name the record was written under ("messages", "facts", ...)
    type: str | None = None
    content: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = None
    created_at: int | None = Field(default=None, alias="createdAt")
    unique: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def _decode_content(cls, v: Any) -> dict[str, Any]:
        return normalize_content(v)

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalize_created_at(cls, v: Any) -> int | None:
        return normalize_timestamp(v)

    @field_validator("embedding", mode="before")
    @classmethod
    def _coerce_embedding(cls, v: Any) -> list[float] | None:
        # Empty arrays are how some writers spell "no embedding"
        if v is None or len(v) == 0:
            return None
        return [float(x) for x in v]

    @property
    def text(self) -> str:
        """Primary text field used for lexical matching."""
        value = self.content.get("text")
        return value if isinstance(value, str) else ""

    @property
    def metadata(self) -> dict[str, Any]:
        value = self.content.get("metadata")
        return value if isinstance(value, dict) else {}

    def to_document(self) -> dict[str, Any]:
        """Serialize for the document store (camelCase, structured content)."""
        return self.model_dump(by_alias=True)


class KnowledgeItem(SearchableRecord):
    """A knowledge record; metadata flags are denormalized for filtering."""

    is_main: bool = Field(default=False, alias="isMain")
    is_shared: bool = Field(default=False, alias="isShared")
    original_id: str | None = Field(default=None, alias="originalId")
    chunk_index: int | None = Field(default=None, alias="chunkIndex")
    # Combined score on search results; absent on plain reads
    similarity: float | None = None

    @model_validator(mode="after")
    def sync_metadata_flags(self) -> Self:
        """Fill denormalized flags from content metadata when not set."""
        metadata = self.metadata
        if not self.is_main:
            self.is_main = bool(metadata.get("isMain", False))
        if not self.is_shared:
            self.is_shared = bool(metadata.get("isShared", False))
        if self.original_id is None and metadata.get("originalId") is not None:
            self.original_id = str(metadata["originalId"])
        if self.chunk_index is None and metadata.get("chunkIndex") is not None:
            self.chunk_index = int(metadata["chunkIndex"])
        return self

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"similarity"})


# ---------------------------------------------------------------------------
# Search shapes
# ---------------------------------------------------------------------------


class SearchQuery(BaseModel):
    """Parameters of one hybrid search call."""

    embedding: list[float] = Field(min_length=1)
    text: str | None = None
    filters: dict[str, Any] = Field(default_factory=dict)
    match_threshold: float = 0.0
    match_count: int = Field(default=10, ge=1)


class ScoredCandidate(BaseModel):
    """A record plus request-scoped scores. Never persisted."""

    record: SearchableRecord
    vector_score: float
    keyword_score: float = 1.0

    @property
    def combined_score(self) -> float:
        return self.vector_score * self.keyword_score


class InsertOutcome(str, Enum):
    """Result of an insert-if-absent write."""

    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"
    FAILED = "failed"

"""
Search orchestration across the native and fallback paths.

One call = one ranked, fully normalized result list. The capability flag
picks the path:

- NATIVE: ``$vectorSearch`` over the vector index with the structural
  filters pushed into its ``filter`` (``match_count x 2`` candidates for
  re-ranking headroom), hybrid scoring stages, ``$limit``. An execution
  failure here is recoverable: it is logged and the same query is served by
  the fallback path.
- FALLBACK: bounded filtered ``find``, cosine similarity in-process, the same
  hybrid scoring in-process.

Both paths score on cosine clamped at zero. Atlas reports cosine and
dotProduct matches as ``(1 + cos) / 2``, so the native path maps that back
with ``2s - 1`` before any threshold applies.

A failure on the fallback path has nowhere left to go and raises SearchError.
"""

import logging
import math
from typing import Any

from ..config import SearchSettings
from ..models.memory import ScoredCandidate, SearchableRecord, SearchQuery
from ..storage.base import DocumentCollection, DocumentStore, SearchError
from .capability import CapabilityState
from .scoring import HybridScorer
from .similarity import cosine_similarity

logger = logging.getLogger(__name__)

# Per-document failures: malformed content, bad timestamps, missing scores
_DOCUMENT_ERRORS = (ValueError, TypeError, KeyError)

# Index similarities whose vectorSearchScore is (1 + cos) / 2
NORMALIZED_SIMILARITIES = ("cosine", "dotProduct")


class SearchOrchestrator:
    """Runs hybrid searches against one store connection."""

    def __init__(
        self,
        store: DocumentStore,
        capability: CapabilityState,
        config: SearchSettings | None = None,
        scorer: HybridScorer | None = None,
    ):
        self.store = store
        self.capability = capability
        self.config = config or SearchSettings()
        self.scorer = scorer or HybridScorer(lexical_rescue_floor=self.config.lexical_rescue_floor)

    async def search(
        self,
        collection_name: str,
        query: SearchQuery,
        record_model: type[SearchableRecord] = SearchableRecord,
    ) -> list[ScoredCandidate]:
        """
        Search *collection_name* for records similar to the query.

        Args:
            collection_name: Collection to search
            query: Embedding, optional text, structural filters, threshold, count
            record_model: Model the stored documents are normalized into

        Returns:
            Accepted candidates ordered by combined score, at most match_count

        Raises:
            SearchError: If the fallback query itself fails
        """
        collection = self.store.collection(collection_name)

        if self.capability.native_available:
            try:
                return await self._native_search(collection, query, record_model)
            except Exception as e:
                logger.warning(f"Vector search failed on {collection_name}, falling back to standard search: {e}")
                if self.config.downgrade_on_native_failure:
                    self.capability.downgrade(f"native query failed: {e}")

        return await self._fallback_search(collection, query, record_model)

    # -- native ------------------------------------------------------------

    def native_score_expression(self) -> Any:
        """Aggregation expression putting ``vectorSearchScore`` on the fallback's scale."""
        score: Any = {"$meta": "vectorSearchScore"}
        if self.config.vector_similarity in NORMALIZED_SIMILARITIES:
            return {"$max": [0.0, {"$subtract": [{"$multiply": [2, score]}, 1]}]}
        # euclidean scores 1 / (1 + d); no cosine equivalent exists
        return score

    def build_native_pipeline(self, query: SearchQuery) -> list[dict[str, Any]]:
        headroom = query.match_count * 2
        vector_search: dict[str, Any] = {
            "index": self.config.vector_index_name,
            "path": "embedding",
            "queryVector": list(query.embedding),
            "numCandidates": headroom,
            "limit": headroom,
        }
        # Structural scope applies before the candidate limit
        if query.filters:
            vector_search["filter"] = query.filters

        pipeline: list[dict[str, Any]] = [
            {"$vectorSearch": vector_search},
            {"$addFields": {"vectorScore": self.native_score_expression()}},
        ]
        pipeline.extend(self.scorer.pipeline_stages(query.text, query.match_threshold))
        pipeline.append({"$limit": query.match_count})
        return pipeline

    async def _native_search(
        self,
        collection: DocumentCollection,
        query: SearchQuery,
        record_model: type[SearchableRecord],
    ) -> list[ScoredCandidate]:
        docs = await collection.aggregate(self.build_native_pipeline(query))

        results: list[ScoredCandidate] = []
        for doc in docs:
            try:
                record = record_model.model_validate(doc)
                results.append(
                    ScoredCandidate(
                        record=record,
                        vector_score=float(doc["vectorScore"]),
                        keyword_score=float(doc.get("keywordScore", 1.0)),
                    )
                )
            except _DOCUMENT_ERRORS as e:
                logger.warning(f"Dropping malformed document {doc.get('id')!r} from {collection.name} results: {e}")

        # Scoring stages already filtered and ordered the documents
        return results[: query.match_count]

    # -- fallback ----------------------------------------------------------

    async def _fallback_search(
        self,
        collection: DocumentCollection,
        query: SearchQuery,
        record_model: type[SearchableRecord],
    ) -> list[ScoredCandidate]:
        try:
            docs = await collection.find(
                query.filters,
                sort=[("createdAt", -1)],
                limit=self.config.fallback_candidate_limit,
            )
        except Exception as e:
            logger.error(f"Fallback search on {collection.name} failed: {e}")
            raise SearchError(f"Search on {collection.name} failed: {e}") from e

        candidates: list[ScoredCandidate] = []
        for doc in docs:
            try:
                record = record_model.model_validate(doc)
                if record.embedding is None:
                    continue
                similarity = cosine_similarity(query.embedding, record.embedding)
                if math.isnan(similarity):
                    continue
                # Negative cosine means "unrelated" on the [0, 1] score scale
                candidates.append(self.scorer.score(record, max(0.0, similarity), query.text))
            except _DOCUMENT_ERRORS as e:
                logger.warning(f"Dropping malformed document {doc.get('id')!r} from {collection.name} results: {e}")

        ranked = self.scorer.rank(candidates, query.match_threshold, query.match_count)
        logger.debug(
            f"Fallback search on {collection.name}: {len(docs)} candidates, {len(candidates)} scored, {len(ranked)} returned"
        )
        return ranked

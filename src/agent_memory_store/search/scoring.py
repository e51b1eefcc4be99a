"""
Hybrid vector + lexical scoring.

    keyword_score  = text_boost x structure_boost
        text_boost      = 3.0 if content.text contains the query text else 1.0
        structure_boost = 1.5 for chunks, else 1.2 for main documents, else 1.0
    combined_score = vector_score x keyword_score

A candidate is accepted when ``vector_score >= threshold``, or when it has a
lexical boost (``keyword_score > 1``) and ``vector_score >= rescue floor``.
Accepted candidates are ordered by combined score, descending.

The same rules are available in two forms: an in-process ranking used by the
fallback path, and aggregation stages appended after ``$vectorSearch`` on the
native path. Both must stay in lockstep.

Text matching folds ASCII letters only, since that is all ``$toLower`` folds
on the server: "ÉCOLE" does not match "école" on either path.
"""

import math
import re
import string
from collections.abc import Iterable
from typing import Any

from ..models.memory import ScoredCandidate, SearchableRecord

TEXT_MATCH_BOOST = 3.0
CHUNK_BOOST = 1.5
MAIN_BOOST = 1.2
DEFAULT_RESCUE_FLOOR = 0.3

_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def fold_case(text: str) -> str:
    """Lowercase ASCII letters, leaving everything else untouched (matches $toLower)."""
    return text.translate(_ASCII_LOWER)


class HybridScorer:
    """Scores, filters and orders candidates for one query."""

    def __init__(self, lexical_rescue_floor: float = DEFAULT_RESCUE_FLOOR):
        self.lexical_rescue_floor = lexical_rescue_floor

    # -- in-process form ---------------------------------------------------

    def keyword_score(self, record: SearchableRecord, text: str | None) -> float:
        score = 1.0
        if text and fold_case(text) in fold_case(record.text):
            score *= TEXT_MATCH_BOOST

        metadata = record.metadata
        if metadata.get("isChunk") is True:
            score *= CHUNK_BOOST
        elif metadata.get("isMain") is True:
            score *= MAIN_BOOST
        return score

    def accepts(self, vector_score: float, keyword_score: float, threshold: float) -> bool:
        if math.isnan(vector_score):
            return False
        if vector_score >= threshold:
            return True
        return keyword_score > 1.0 and vector_score >= self.lexical_rescue_floor

    def score(self, record: SearchableRecord, vector_score: float, text: str | None) -> ScoredCandidate:
        return ScoredCandidate(
            record=record,
            vector_score=vector_score,
            keyword_score=self.keyword_score(record, text),
        )

    def rank(self, candidates: Iterable[ScoredCandidate], threshold: float, limit: int | None = None) -> list[ScoredCandidate]:
        """Drop rejected candidates, sort by combined score, truncate."""
        accepted = [c for c in candidates if self.accepts(c.vector_score, c.keyword_score, threshold)]
        accepted.sort(key=lambda c: c.combined_score, reverse=True)
        if limit is not None:
            accepted = accepted[:limit]
        return accepted

    # -- aggregation form --------------------------------------------------

    def keyword_score_expression(self, text: str | None) -> dict[str, Any]:
        """Aggregation expression computing keyword_score for a document."""
        if text:
            text_match: Any = {
                "$regexMatch": {
                    "input": {"$toLower": {"$ifNull": ["$content.text", ""]}},
                    "regex": re.escape(fold_case(text)),
                }
            }
        else:
            text_match = False

        return {
            "$multiply": [
                {"$cond": [text_match, TEXT_MATCH_BOOST, 1.0]},
                {
                    "$cond": [
                        {"$eq": ["$content.metadata.isChunk", True]},
                        CHUNK_BOOST,
                        {"$cond": [{"$eq": ["$content.metadata.isMain", True]}, MAIN_BOOST, 1.0]},
                    ]
                },
            ]
        }

    def pipeline_stages(self, text: str | None, threshold: float) -> list[dict[str, Any]]:
        """Stages scoring documents that already carry a ``vectorScore`` field."""
        return [
            {"$addFields": {"keywordScore": self.keyword_score_expression(text)}},
            {"$addFields": {"combinedScore": {"$multiply": ["$vectorScore", "$keywordScore"]}}},
            {
                "$match": {
                    "$or": [
                        {"vectorScore": {"$gte": threshold}},
                        {
                            "$and": [
                                {"keywordScore": {"$gt": 1.0}},
                                {"vectorScore": {"$gte": self.lexical_rescue_floor}},
                            ]
                        },
                    ]
                }
            },
            {"$sort": {"combinedScore": -1}},
        ]

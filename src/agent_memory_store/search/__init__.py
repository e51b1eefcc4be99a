"""Hybrid similarity search and deduplication engine."""

from .capability import Capability, CapabilityDetector, CapabilityState
from .dedup import DedupGate
from .levenshtein import LevenshteinEngine, ScratchBufferError, levenshtein_distance
from .orchestrator import SearchOrchestrator
from .scoring import HybridScorer
from .similarity import cosine_similarity

__all__ = [
    "Capability",
    "CapabilityDetector",
    "CapabilityState",
    "DedupGate",
    "HybridScorer",
    "LevenshteinEngine",
    "ScratchBufferError",
    "SearchOrchestrator",
    "cosine_similarity",
    "levenshtein_distance",
]

"""
Application-level similarity for the fallback search path.

Used when the store has no usable vector index, or when a native vector query
fails at execution time. Candidates are pre-filtered by structural keys
(owner, room, type) in the store, so ranking is O(candidates x dimensions)
over a bounded working set rather than over the whole collection.
"""

import math
from collections.abc import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors, in [-1, 1].

    Returns NaN when either vector has zero magnitude or the dimensions
    differ. NaN never satisfies a threshold comparison; callers drop it.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.shape != vb.shape or va.size == 0:
        return math.nan

    mag_a = np.linalg.norm(va)
    mag_b = np.linalg.norm(vb)
    if mag_a == 0.0 or mag_b == 0.0:
        return math.nan

    sim = float(np.dot(va, vb) / (mag_a * mag_b))
    # Rounding can push identical vectors fractionally past 1.0
    return max(-1.0, min(1.0, sim))

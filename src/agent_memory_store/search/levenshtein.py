"""
Edit distance with a reusable scratch matrix.

Lexical ranking computes many distances per query, so the engine keeps one
dynamic-programming matrix and grows it to the largest (rows, cols) seen so
far instead of allocating a table per call. The matrix is never shrunk.

Concurrency: an engine serializes calls with a lock around the whole
computation. Callers that want parallel distance computation should use one
engine per worker.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class ScratchBufferError(RuntimeError):
    """The scratch matrix is smaller than the computation requires.

    This is a broken invariant in buffer management, not bad input, and must
    never be absorbed by callers.
    """


class LevenshteinEngine:
    """Unit-cost Levenshtein distance (insertion, deletion, substitution)."""

    def __init__(self) -> None:
        self._matrix: list[list[int]] = []
        self._lock = threading.Lock()

    @property
    def shape(self) -> tuple[int, int]:
        """Current scratch matrix dimensions (rows, cols)."""
        if not self._matrix:
            return 0, 0
        return len(self._matrix), len(self._matrix[0])

    def _reserve(self, rows: int, cols: int) -> list[list[int]]:
        """Grow the scratch matrix to at least rows x cols."""
        cur_rows, cur_cols = self.shape
        if cur_rows >= rows and cur_cols >= cols:
            return self._matrix

        new_rows = max(rows, cur_rows)
        new_cols = max(cols, cur_cols)
        self._matrix = [[0] * new_cols for _ in range(new_rows)]
        logger.debug(f"Levenshtein scratch matrix grown to {new_rows}x{new_cols}")
        return self._matrix

    def distance(self, a: str, b: str) -> int:
        if a == b:
            return 0
        if not a:
            return len(b)
        if not b:
            return len(a)

        # Shorter string indexes the rows
        if len(a) > len(b):
            a, b = b, a

        rows = len(a) + 1
        cols = len(b) + 1

        with self._lock:
            matrix = self._reserve(rows, cols)

            if len(matrix) < rows:
                raise ScratchBufferError(
                    f"Levenshtein matrix row dimension incorrect (expected {rows}, got {len(matrix)})"
                )
            if len(matrix[0]) < cols:
                raise ScratchBufferError(
                    f"Levenshtein matrix column dimension incorrect for row 0 (expected {cols}, got {len(matrix[0])})"
                )

            # Base column and row: distance against the empty string.
            # Rewritten every call since earlier calls leave stale values.
            for i in range(rows):
                matrix[i][0] = i
            first = matrix[0]
            for j in range(cols):
                first[j] = j

            for i in range(1, rows):
                prev = matrix[i - 1]
                row = matrix[i]
                ca = a[i - 1]
                for j in range(1, cols):
                    if ca == b[j - 1]:
                        row[j] = prev[j - 1]
                    else:
                        row[j] = min(
                            prev[j - 1] + 1,  # substitution
                            row[j - 1] + 1,  # insertion
                            prev[j] + 1,  # deletion
                        )

            return matrix[rows - 1][cols - 1]


_default_engine = LevenshteinEngine()


def levenshtein_distance(a: str, b: str) -> int:
    """Distance using the process-wide shared engine."""
    return _default_engine.distance(a, b)

"""
Distance and similarity functions shared by the neighbor index and the oracle.

Coarse metrics operate on stored coarse vectors (unit-normalized when the
cosine metric is configured). Precise similarities operate on token matrices.
"""

from __future__ import annotations

import math
from typing import Callable

import numpy as np

CoarseMetric = Callable[[np.ndarray, np.ndarray], float]
ScoreTransform = Callable[[float], float]


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine distance between two unit vectors."""
    return max(0.0, 1.0 - float(np.dot(a, b)))


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Euclidean distance between two vectors."""
    return float(np.linalg.norm(a - b))


COARSE_METRICS: dict[str, CoarseMetric] = {
    "cosine": cosine_distance,
    "euclidean": euclidean_distance,
}


def batch_coarse_distances(metric: str, query: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """Distances from query to each row of vectors under the named metric."""
    if vectors.size == 0:
        return np.zeros(0, dtype=np.float32)
    if metric == "cosine":
        return np.maximum(0.0, 1.0 - vectors @ query)
    return np.linalg.norm(vectors - query, axis=1)


def reciprocal_transform(similarity: float) -> float:
    """1 / (1 + s): identical content -> near 0, unrelated content -> 1."""
    return 1.0 / (1.0 + max(similarity, 0.0))


def neg_log_transform(similarity: float) -> float:
    """ln(1 + 1/s): unbounded above, near 0 for very large scores."""
    return math.log1p(1.0 / max(similarity, 1e-12))


SCORE_TRANSFORMS: dict[str, ScoreTransform] = {
    "reciprocal": reciprocal_transform,
    "neg_log": neg_log_transform,
}


def coarse_fallback(coarse: float) -> float:
    """Distance substituted when precise rescoring is unavailable, clipped to [0, 1]."""
    return min(max(coarse, 0.0), 1.0)


def _as_token_matrix(rep: np.ndarray) -> np.ndarray:
    matrix = np.asarray(rep, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        raise ValueError(f"Precise representation must be a non-empty token matrix, got shape {matrix.shape}")
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / np.clip(norms, 1e-8, None)


def maxsim_similarity(query_rep: np.ndarray, doc_rep: np.ndarray) -> float:
    """
    Late-interaction similarity between two token matrices.

    Sum over query tokens of the best cosine match among document tokens,
    clipped at zero so the score is non-negative. Symmetrized by averaging
    both directions so that distance(a, b) == distance(b, a).
    """
    q = _as_token_matrix(query_rep)
    d = _as_token_matrix(doc_rep)
    if q.shape[1] != d.shape[1]:
        raise ValueError(f"Token dimension mismatch: {q.shape[1]} vs {d.shape[1]}")
    sims = q @ d.T
    forward = float(np.clip(sims.max(axis=1), 0.0, None).sum())
    backward = float(np.clip(sims.max(axis=0), 0.0, None).sum())
    return 0.5 * (forward + backward)

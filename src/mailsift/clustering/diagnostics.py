"""
Offline diagnostics for the incremental engine.

- Exact coarse k-NN with FAISS, used to measure the recall of the approximate
  neighbor index.
- Agreement between two clusterings via the adjusted Rand index.
"""

import logging
from typing import Mapping, Optional

import faiss
import numpy as np
from sklearn.metrics import adjusted_rand_score

from mailsift.clustering.models import NOISE

logger = logging.getLogger(__name__)


class ExactNeighbors:
    """
    Brute-force coarse neighbor search.

    Cosine uses inner product on unit vectors (IndexFlatIP); euclidean uses
    IndexFlatL2 and reports square-rooted distances.
    """

    def __init__(self, dimension: int, metric: str = "cosine"):
        if metric not in ("cosine", "euclidean"):
            raise ValueError(f"Unknown coarse metric: {metric}")
        self.dimension = dimension
        self.metric = metric
        self.index = faiss.IndexFlatIP(dimension) if metric == "cosine" else faiss.IndexFlatL2(dimension)
        self._ids: list[str] = []

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, vectors: np.ndarray, ids: list[str]) -> None:
        if vectors.ndim != 2:
            raise ValueError(f"Vectors must be 2D array, got shape {vectors.shape}")
        if vectors.shape[1] != self.dimension:
            raise ValueError(
                f"Vector dimension {vectors.shape[1]} doesn't match index dimension {self.dimension}"
            )
        if len(ids) != vectors.shape[0]:
            raise ValueError(f"Number of ids ({len(ids)}) doesn't match number of vectors ({vectors.shape[0]})")
        self.index.add(np.ascontiguousarray(vectors, dtype=np.float32))
        self._ids.extend(ids)

    def search(self, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        if len(self._ids) == 0:
            raise ValueError("Index is empty, cannot search")
        k = min(k, len(self._ids))
        scores, positions = self.index.search(np.ascontiguousarray(query.reshape(1, -1), dtype=np.float32), k)
        out = []
        for score, pos in zip(scores[0], positions[0]):
            if pos < 0:
                continue
            if self.metric == "cosine":
                distance = max(0.0, 1.0 - float(score))
            else:
                distance = float(np.sqrt(max(score, 0.0)))
            out.append((self._ids[pos], distance))
        return out


def index_recall(engine, k: int = 10, sample: Optional[list[str]] = None) -> float:
    """
    Mean recall@k of the engine's published index snapshot against exact search.

    Args:
        engine: IncrementalClusterEngine
        k: Neighbors per query (the query point itself excluded)
        sample: Point ids to query (all points by default)

    Returns:
        Recall in [0, 1] (1.0 for fewer than two points)
    """
    ids = engine.point_ids()
    if len(ids) < 2:
        return 1.0
    vectors = np.stack([engine.points.coarse_vector(pid) for pid in ids])
    exact = ExactNeighbors(vectors.shape[1], engine.settings.coarse_metric)
    exact.add(vectors, ids)

    snapshot = engine.index.snapshot()
    queries = sample or ids
    k = min(k, len(ids) - 1)
    hits = 0
    for pid in queries:
        vector = engine.points.coarse_vector(pid)
        truth = set([i for i, _ in exact.search(vector, k + 1) if i != pid][:k])
        found = set([i for i, _ in snapshot.query(vector, k + 1) if i != pid][:k])
        hits += len(truth & found)
    recall = hits / (k * len(queries))
    logger.info(f"Index recall@{k} over {len(queries)} queries: {recall:.3f}")
    return recall


def clustering_agreement(
    first: Mapping[str, int], second: Mapping[str, int], noise_as_singletons: bool = True
) -> float:
    """
    Adjusted Rand index between two labelings over their shared point ids.

    With noise_as_singletons each NOISE point gets its own label so two noise
    points are not counted as co-clustered.
    """
    shared = sorted(set(first) & set(second))
    if not shared:
        return 1.0

    def labels(mapping: Mapping[str, int]) -> list[str]:
        out = []
        for pid in shared:
            label = mapping[pid]
            if label == NOISE and noise_as_singletons:
                out.append(f"noise:{pid}")
            else:
                out.append(f"cluster:{label}")
        return out

    return float(adjusted_rand_score(labels(first), labels(second)))

"""
Approximate neighbor index over coarse vectors.

A navigable small-world layered graph (HNSW). Nodes live in an arena addressed
by the same integer handles the engine uses for points. One writer inserts;
readers query an immutable ``IndexSnapshot`` published at the end of each
write cycle. Adjacency dicts are copied on first write after a publish, so a
published snapshot never observes a half-applied insert.
"""

from __future__ import annotations

import heapq
import logging
import math
import random
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from mailsift.clustering.metrics import COARSE_METRICS, CoarseMetric

logger = logging.getLogger(__name__)

Links = list[dict[int, float]]  # per layer: neighbor handle -> coarse distance


def _greedy_closest(
    metric: CoarseMetric,
    vectors: Sequence[np.ndarray],
    links: Sequence[Links],
    query: np.ndarray,
    current: int,
    current_dist: float,
    level: int,
) -> tuple[int, float]:
    """Greedy walk on one layer until no neighbor is closer."""
    changed = True
    while changed:
        changed = False
        for neighbor in links[current][level]:
            d = metric(query, vectors[neighbor])
            if d < current_dist or (d == current_dist and neighbor < current):
                current, current_dist = neighbor, d
                changed = True
    return current, current_dist


def _search_layer(
    metric: CoarseMetric,
    vectors: Sequence[np.ndarray],
    links: Sequence[Links],
    query: np.ndarray,
    entry_points: Sequence[tuple[float, int]],
    ef: int,
    level: int,
) -> list[tuple[float, int]]:
    """Best-first beam search on one layer; returns up to ef (distance, handle) ascending."""
    visited = {h for _, h in entry_points}
    candidates = list(entry_points)
    heapq.heapify(candidates)
    results = [(-d, -h) for d, h in entry_points]
    heapq.heapify(results)
    while len(results) > ef:
        heapq.heappop(results)

    while candidates:
        d, h = heapq.heappop(candidates)
        worst = -results[0][0]
        if d > worst and len(results) >= ef:
            break
        for neighbor in links[h][level]:
            if neighbor in visited:
                continue
            visited.add(neighbor)
            dn = metric(query, vectors[neighbor])
            if len(results) < ef or dn < -results[0][0]:
                heapq.heappush(candidates, (dn, neighbor))
                heapq.heappush(results, (-dn, -neighbor))
                if len(results) > ef:
                    heapq.heappop(results)

    return sorted((-nd, -nh) for nd, nh in results)


def _knn(
    metric: CoarseMetric,
    vectors: Sequence[np.ndarray],
    links: Sequence[Links],
    entry: Optional[int],
    max_level: int,
    query: np.ndarray,
    k: int,
    ef: int,
) -> list[tuple[float, int]]:
    if entry is None or k <= 0:
        return []
    current = entry
    current_dist = metric(query, vectors[current])
    for level in range(max_level, 0, -1):
        current, current_dist = _greedy_closest(metric, vectors, links, query, current, current_dist, level)
    found = _search_layer(metric, vectors, links, query, [(current_dist, current)], max(ef, k), 0)
    return found[:k]


@dataclass(frozen=True)
class IndexSnapshot:
    """Immutable view of the index as of the last committed write cycle."""

    metric_name: str
    vectors: tuple[np.ndarray, ...]
    links: tuple[Links, ...]
    ids: tuple[str, ...]
    entry: Optional[int]
    max_level: int
    ef_search: int
    version: int

    def __len__(self) -> int:
        return len(self.ids)

    def query(self, vector: np.ndarray, k: int, ef: Optional[int] = None) -> list[tuple[str, float]]:
        """Approximate k nearest ids with their coarse distances, nearest first."""
        metric = COARSE_METRICS[self.metric_name]
        query = np.asarray(vector, dtype=np.float32)
        found = _knn(
            metric, self.vectors, self.links, self.entry, self.max_level, query, k, ef or self.ef_search
        )
        return [(self.ids[h], d) for d, h in found]

    def neighbors_of(self, handle: int, level: int = 0) -> list[tuple[str, float]]:
        """Layer adjacency of one node, nearest first."""
        if handle >= len(self.links) or level >= len(self.links[handle]):
            return []
        return [(self.ids[h], d) for h, d in sorted(self.links[handle][level].items(), key=lambda x: (x[1], x[0]))]


class NeighborIndex:
    """
    HNSW graph with a single writer and snapshot readers.

    Args:
        metric: "cosine" (vectors must be unit-normalized) or "euclidean"
        degree: Max out-degree on upper layers; layer 0 allows 2x
        ef_construction: Beam width during insertion (also the candidate pool size)
        ef_search: Default beam width for queries
        seed: Seed for level assignment
    """

    def __init__(
        self,
        metric: str = "cosine",
        degree: int = 16,
        ef_construction: int = 64,
        ef_search: int = 32,
        seed: int = 42,
    ):
        if metric not in COARSE_METRICS:
            raise ValueError(f"Unknown coarse metric: {metric}")
        self.metric_name = metric
        self._metric = COARSE_METRICS[metric]
        self.degree = degree
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self._level_mult = 1.0 / math.log(max(degree, 2))
        self._rng = random.Random(seed)

        self._vectors: list[np.ndarray] = []
        self._ids: list[str] = []
        self._levels: list[int] = []
        self._links: list[Links] = []
        self._entry: Optional[int] = None
        self._max_level = -1

        self._dirty: set[int] = set()
        self._one_way: set[tuple[int, int, int]] = set()  # (level, src, dst) with src->dst but no dst->src
        self._version = 0
        self._snapshot = self._make_snapshot()

    # Properties

    def __len__(self) -> int:
        return len(self._vectors)

    @property
    def entry(self) -> Optional[int]:
        return self._entry

    @property
    def max_level(self) -> int:
        return self._max_level

    def level_of(self, handle: int) -> int:
        return self._levels[handle]

    def max_degree(self, level: int) -> int:
        return self.degree * 2 if level == 0 else self.degree

    def links_of(self, handle: int, level: int = 0) -> dict[int, float]:
        """Live adjacency (writer side); do not mutate."""
        return self._links[handle][level]

    # Write side

    def _random_level(self) -> int:
        u = 1.0 - self._rng.random()  # (0, 1]
        return int(-math.log(u) * self._level_mult)

    def _mutable(self, handle: int) -> Links:
        if handle not in self._dirty:
            self._links[handle] = [dict(layer) for layer in self._links[handle]]
            self._dirty.add(handle)
        return self._links[handle]

    def _distance(self, a: int, b: int) -> float:
        return self._metric(self._vectors[a], self._vectors[b])

    def _select_neighbors(self, candidates: Sequence[tuple[float, int]], m: int) -> list[tuple[float, int]]:
        """
        Neighbor selection heuristic: keep a candidate only if it is closer to
        the base than to every already kept neighbor, then top up with the
        closest pruned candidates.
        """
        selected: list[tuple[float, int]] = []
        pruned: list[tuple[float, int]] = []
        for d, h in candidates:
            if len(selected) >= m:
                break
            if all(self._distance(h, s) > d for _, s in selected):
                selected.append((d, h))
            else:
                pruned.append((d, h))
        for item in pruned:
            if len(selected) >= m:
                break
            selected.append(item)
        return selected

    def _connect(self, a: int, b: int, d: float, level: int) -> None:
        self._mutable(a)[level][b] = d
        self._mutable(b)[level][a] = d
        self._one_way.discard((level, a, b))
        self._one_way.discard((level, b, a))

    def _shrink(self, handle: int, level: int) -> None:
        m = self.max_degree(level)
        layer = self._links[handle][level]
        if len(layer) <= m:
            return
        ordered = sorted((d, h) for h, d in layer.items())
        keep = {h for _, h in self._select_neighbors(ordered, m)}
        mutable = self._mutable(handle)[level]
        for _, h in ordered:
            if h not in keep:
                del mutable[h]
                if handle in self._links[h][level]:
                    self._one_way.add((level, h, handle))

    def insert(self, handle: int, point_id: str, vector: np.ndarray) -> list[tuple[int, float]]:
        """
        Insert a new node or re-insert an existing handle with a new vector.

        Returns:
            Nearest existing nodes found on layer 0 as (handle, coarse_distance),
            nearest first, at most ef_construction of them
        """
        vector = np.asarray(vector, dtype=np.float32)
        if handle < len(self._vectors):
            level = self._levels[handle]
            self._unlink(handle)
        elif handle == len(self._vectors):
            level = self._random_level()
            self._vectors.append(vector)
            self._ids.append(point_id)
            self._levels.append(level)
            self._links.append([])
        else:
            raise ValueError(f"Handle {handle} is not the next arena slot ({len(self._vectors)})")

        self._vectors[handle] = vector
        self._ids[handle] = point_id
        self._links[handle] = [dict() for _ in range(level + 1)]
        self._dirty.add(handle)

        if self._entry is None:
            self._entry = handle
            self._max_level = level
            return []

        current = self._entry
        current_dist = self._metric(vector, self._vectors[current])
        for lc in range(self._max_level, level, -1):
            current, current_dist = _greedy_closest(
                self._metric, self._vectors, self._links, vector, current, current_dist, lc
            )

        entry_points = [(current_dist, current)]
        layer0: list[tuple[float, int]] = []
        for lc in range(min(level, self._max_level), -1, -1):
            found = _search_layer(
                self._metric, self._vectors, self._links, vector, entry_points, self.ef_construction, lc
            )
            found = [(d, h) for d, h in found if h != handle]
            for d, neighbor in self._select_neighbors(found, self.max_degree(lc)):
                self._connect(handle, neighbor, d, lc)
                self._shrink(neighbor, lc)
            entry_points = found or entry_points
            if lc == 0:
                layer0 = found

        if level > self._max_level:
            self._entry = handle
            self._max_level = level

        return [(h, d) for d, h in layer0]

    def update(self, handle: int, vector: np.ndarray) -> list[tuple[int, float]]:
        """Move an existing node to a new vector, keeping its id and level."""
        if not 0 <= handle < len(self._vectors):
            raise KeyError(f"Unknown handle {handle}")
        return self.insert(handle, self._ids[handle], vector)

    def _unlink(self, handle: int) -> None:
        """Remove every edge touching handle (best effort ahead of a re-insert)."""
        level = self._levels[handle]
        for lc in range(level + 1):
            for other in range(len(self._links)):
                if other != handle and lc < len(self._links[other]) and handle in self._links[other][lc]:
                    del self._mutable(other)[lc][handle]
        self._one_way = {edge for edge in self._one_way if handle not in (edge[1], edge[2])}
        self._links[handle] = [dict() for _ in range(level + 1)]
        self._dirty.add(handle)

        if self._entry == handle:
            others = [h for h in range(len(self._levels)) if h != handle]
            if others:
                self._entry = max(others, key=lambda h: (self._levels[h], -h))
                self._max_level = self._levels[self._entry]
            else:
                self._entry = None
                self._max_level = -1

    def search(self, vector: np.ndarray, k: int, ef: Optional[int] = None) -> list[tuple[int, float]]:
        """Writer-side k-NN over the live graph as (handle, coarse_distance)."""
        query = np.asarray(vector, dtype=np.float32)
        found = _knn(
            self._metric, self._vectors, self._links, self._entry, self._max_level, query, k,
            ef or max(self.ef_construction, k),
        )
        return [(h, d) for d, h in found]

    def symmetrize(self) -> int:
        """
        Resolve one-directional edges left by pruning.

        The reverse edge is added when the target has spare degree, otherwise
        the one-way edge is dropped unless that would isolate its source.
        Returns the number of edges changed.
        """
        changed = 0
        retained: set[tuple[int, int, int]] = set()
        for level, src, dst in sorted(self._one_way):
            src_layer = self._links[src][level]
            if dst not in src_layer or src in self._links[dst][level]:
                continue
            if len(self._links[dst][level]) < self.max_degree(level):
                self._mutable(dst)[level][src] = src_layer[dst]
                changed += 1
            elif len(src_layer) > 1:
                del self._mutable(src)[level][dst]
                changed += 1
            else:
                retained.add((level, src, dst))
        # Retained edges are checked again on the next publish
        self._one_way = retained
        if retained:
            logger.debug(f"Retained {len(retained)} one-way edges to avoid isolating nodes")
        return changed

    def _make_snapshot(self) -> IndexSnapshot:
        return IndexSnapshot(
            metric_name=self.metric_name,
            vectors=tuple(self._vectors),
            links=tuple(self._links),
            ids=tuple(self._ids),
            entry=self._entry,
            max_level=self._max_level,
            ef_search=self.ef_search,
            version=self._version,
        )

    def publish(self) -> IndexSnapshot:
        """Symmetrize and atomically swap in a new reader snapshot."""
        self.symmetrize()
        self._version += 1
        self._snapshot = self._make_snapshot()
        self._dirty.clear()
        return self._snapshot

    def snapshot(self) -> IndexSnapshot:
        """Last published snapshot (safe to use from any thread)."""
        return self._snapshot

    # Persistence

    def export_state(self) -> tuple[dict, np.ndarray]:
        """JSON-ready adjacency plus the stacked vector matrix."""
        dim = self._vectors[0].shape[0] if self._vectors else 0
        vectors = np.stack(self._vectors) if self._vectors else np.zeros((0, dim), dtype=np.float32)
        state = {
            "metric": self.metric_name,
            "degree": self.degree,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
            "entry": self._entry,
            "max_level": self._max_level,
            "ids": list(self._ids),
            "levels": list(self._levels),
            "links": [
                [[[int(h), float(d)] for h, d in layer.items()] for layer in node]
                for node in self._links
            ],
            "one_way": [list(edge) for edge in sorted(self._one_way)],
            "rng_state": [self._rng.getstate()[0], list(self._rng.getstate()[1]), self._rng.getstate()[2]],
        }
        return state, vectors

    @classmethod
    def from_state(cls, state: dict, vectors: np.ndarray) -> "NeighborIndex":
        index = cls(
            metric=state["metric"],
            degree=state["degree"],
            ef_construction=state["ef_construction"],
            ef_search=state["ef_search"],
        )
        if len(state["ids"]) != vectors.shape[0]:
            raise ValueError(
                f"Index/vector mismatch: {len(state['ids'])} ids but {vectors.shape[0]} vectors"
            )
        index._vectors = [np.asarray(v, dtype=np.float32) for v in vectors]
        index._ids = list(state["ids"])
        index._levels = [int(lv) for lv in state["levels"]]
        index._links = [
            [{int(h): float(d) for h, d in layer} for layer in node] for node in state["links"]
        ]
        index._entry = state["entry"]
        index._max_level = state["max_level"]
        index._one_way = {tuple(edge) for edge in state.get("one_way", [])}
        version, internal, gauss = state["rng_state"]
        index._rng.setstate((version, tuple(internal), gauss))
        index._snapshot = index._make_snapshot()
        return index

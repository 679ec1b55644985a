"""
Mutual reachability layer.

Every precise (or degraded fallback) distance computed during insertion is kept
as a candidate edge. Core distances are read off each point's candidate edges,
and candidate edges are re-weighted on demand as

    mreach(a, b) = max(core(a), core(b), d(a, b))
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from mailsift.clustering.oracle import PairDistance
from mailsift.clustering.union_find import UnionFind

logger = logging.getLogger(__name__)


class CandidateGraph:
    """Symmetric store of computed pair distances keyed by handle."""

    def __init__(self):
        self._adj: dict[int, dict[int, PairDistance]] = {}

    def __len__(self) -> int:
        return sum(len(nbrs) for nbrs in self._adj.values()) // 2

    def __contains__(self, handle: int) -> bool:
        return handle in self._adj

    def add_node(self, handle: int) -> None:
        self._adj.setdefault(handle, {})

    @property
    def nodes(self) -> list[int]:
        return sorted(self._adj)

    def record(self, a: int, b: int, pair: PairDistance) -> Optional[PairDistance]:
        """
        Store the distance for (a, b), returning the value it replaced.

        A degraded value never overwrites a precise one.
        """
        if a == b:
            raise ValueError(f"Self edge on handle {a}")
        self.add_node(a)
        self.add_node(b)
        previous = self._adj[a].get(b)
        if previous is not None and pair.degraded and not previous.degraded:
            return previous
        self._adj[a][b] = pair
        self._adj[b][a] = pair
        return previous

    def distance(self, a: int, b: int) -> Optional[PairDistance]:
        return self._adj.get(a, {}).get(b)

    def neighbors(self, handle: int) -> dict[int, PairDistance]:
        return self._adj.get(handle, {})

    def degree(self, handle: int) -> int:
        return len(self._adj.get(handle, {}))

    def nearest(self, handle: int) -> list[tuple[float, int, bool]]:
        """(distance, other, degraded) ascending, ties by handle."""
        return sorted((p.distance, other, p.degraded) for other, p in self.neighbors(handle).items())

    def remove_node(self, handle: int) -> list[int]:
        """Drop every edge touching handle; returns the former neighbors."""
        former = sorted(self._adj.get(handle, {}))
        for other in former:
            self._adj[other].pop(handle, None)
        self._adj[handle] = {}
        return former

    def edges(self) -> Iterator[tuple[int, int, PairDistance]]:
        for a in sorted(self._adj):
            for b, pair in self._adj[a].items():
                if a < b:
                    yield a, b, pair

    def degraded_edges(self) -> list[tuple[int, int]]:
        return [(a, b) for a, b, pair in self.edges() if pair.degraded]

    def component_count(self, handles: Optional[list[int]] = None) -> int:
        uf = UnionFind(handles if handles is not None else self._adj)
        for a, b, _ in self.edges():
            if a in uf and b in uf:
                uf.union(a, b)
        return uf.component_count()


class CoreDistanceTable:
    """
    Core distance per handle: the distance to the (k-1)-th nearest other point,
    k counting the point itself. With fewer known neighbors the largest known
    distance stands in (0 with none) until more edges arrive.
    """

    def __init__(self, graph: CandidateGraph, k: int):
        self.graph = graph
        self.k = k
        self.core: dict[int, float] = {}
        self.degraded: dict[int, bool] = {}

    @property
    def needed(self) -> int:
        return max(self.k - 1, 0)

    def short_of_neighbors(self, handle: int) -> bool:
        return self.graph.degree(handle) < self.needed

    def compute(self, handle: int) -> tuple[float, bool]:
        if self.needed == 0:
            return 0.0, False
        nearest = self.graph.nearest(handle)
        if not nearest:
            return 0.0, False
        used = nearest[: self.needed]
        return used[-1][0], any(flag for _, _, flag in used)

    def refresh(self, handle: int) -> tuple[Optional[float], float]:
        """Recompute one core distance; returns (old, new)."""
        old = self.core.get(handle)
        value, degraded = self.compute(handle)
        self.core[handle] = value
        self.degraded[handle] = degraded
        return old, value

    def forget(self, handle: int) -> None:
        self.core.pop(handle, None)
        self.degraded.pop(handle, None)

    def get(self, handle: int) -> float:
        return self.core.get(handle, 0.0)

    def mutual_reachability(self, a: int, b: int) -> tuple[float, bool]:
        """(weight, degraded) of the candidate edge (a, b)."""
        pair = self.graph.distance(a, b)
        if pair is None:
            raise KeyError(f"No candidate edge between {a} and {b}")
        weight = max(self.get(a), self.get(b), pair.distance)
        degraded = pair.degraded or self.degraded.get(a, False) or self.degraded.get(b, False)
        return weight, degraded

    def weighted_edges(self) -> list[tuple[float, int, int]]:
        """All candidate edges as (mreach, lo, hi) in total order."""
        return sorted(
            (max(self.get(a), self.get(b), pair.distance), a, b) for a, b, pair in self.graph.edges()
        )

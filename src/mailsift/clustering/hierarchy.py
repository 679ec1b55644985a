"""
Hierarchy builder: minimum spanning forest under mutual reachability and the
single-linkage dendrogram derived from it.

Edges are totally ordered by ``(weight, low_handle, high_handle)``. Under a
total order the minimum spanning forest is unique, so local cycle-property
repair and a full Kruskal pass always agree edge for edge.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

from mailsift.clustering.errors import InvariantViolation
from mailsift.clustering.union_find import UnionFind

logger = logging.getLogger(__name__)

EdgeKey = tuple[float, int, int]


def edge_key(a: int, b: int, weight: float) -> EdgeKey:
    lo, hi = (a, b) if a < b else (b, a)
    return (float(weight), lo, hi)


class SpanningForest:
    """Minimum spanning forest over point handles with local repair."""

    def __init__(self):
        self.nodes: set[int] = set()
        self._weights: dict[tuple[int, int], float] = {}
        self._adj: dict[int, set[int]] = {}
        self.changed: set[int] = set()  # endpoints of edges added, removed or reweighted

    def __len__(self) -> int:
        return len(self._weights)

    def add_node(self, handle: int) -> None:
        self.nodes.add(handle)
        self._adj.setdefault(handle, set())

    def weight(self, a: int, b: int) -> Optional[float]:
        lo, hi = (a, b) if a < b else (b, a)
        return self._weights.get((lo, hi))

    def edges(self) -> list[EdgeKey]:
        """Forest edges in total order."""
        return sorted((w, lo, hi) for (lo, hi), w in self._weights.items())

    def _add(self, key: EdgeKey) -> None:
        w, lo, hi = key
        self.changed.update((lo, hi))
        self._weights[(lo, hi)] = w
        self._adj[lo].add(hi)
        self._adj[hi].add(lo)

    def _remove(self, lo: int, hi: int) -> None:
        self.changed.update((lo, hi))
        del self._weights[(lo, hi)]
        self._adj[lo].discard(hi)
        self._adj[hi].discard(lo)

    def _tree_path(self, source: int, target: int) -> Optional[list[tuple[int, int]]]:
        """Edges (lo, hi) on the tree path between source and target, None if disconnected."""
        parents: dict[int, int] = {source: source}
        queue = deque([source])
        while queue:
            node = queue.popleft()
            if node == target:
                break
            for nxt in self._adj[node]:
                if nxt not in parents:
                    parents[nxt] = node
                    queue.append(nxt)
        if target not in parents:
            return None
        path = []
        node = target
        while node != source:
            prev = parents[node]
            path.append((prev, node) if prev < node else (node, prev))
            node = prev
        return path

    def propose(self, a: int, b: int, weight: float) -> bool:
        """
        Offer a candidate edge for local repair.

        Args:
            a: First endpoint handle
            b: Second endpoint handle
            weight: Current mutual reachability weight (must not exceed a
                previously proposed weight for the same pair)

        Returns:
            True when the forest changed
        """
        self.add_node(a)
        self.add_node(b)
        key = edge_key(a, b, weight)
        _, lo, hi = key

        current = self._weights.get((lo, hi))
        if current is not None:
            if weight < current:
                self.changed.update((lo, hi))
                self._weights[(lo, hi)] = float(weight)
                return True
            return False

        path = self._tree_path(lo, hi)
        if path is None:
            self._add(key)
            return True

        heaviest = max((self._weights[e], e[0], e[1]) for e in path)
        if key < heaviest:
            self._remove(heaviest[1], heaviest[2])
            self._add(key)
            return True
        return False

    def remove_node(self, handle: int) -> int:
        """Drop every forest edge touching handle; returns the count removed."""
        removed = 0
        for other in sorted(self._adj.get(handle, ())):
            lo, hi = (handle, other) if handle < other else (other, handle)
            self._remove(lo, hi)
            removed += 1
        return removed

    def rebuild(self, handles: Iterable[int], weighted_edges: Iterable[EdgeKey]) -> None:
        """Replace the forest with a Kruskal pass over the full candidate edge set."""
        self.nodes = set(handles)
        self._weights = {}
        self._adj = {h: set() for h in self.nodes}
        uf = UnionFind(self.nodes)
        for key in sorted(weighted_edges):
            _, lo, hi = key
            if lo not in uf or hi not in uf:
                continue
            _, merged = uf.union(lo, hi)
            if merged:
                self._add(key)

    # Invariants

    def component_count(self) -> int:
        uf = UnionFind(self.nodes)
        for (lo, hi) in self._weights:
            uf.union(lo, hi)
        return uf.component_count()

    def check_acyclic(self) -> None:
        uf = UnionFind(self.nodes)
        for (lo, hi) in sorted(self._weights):
            if lo not in uf or hi not in uf:
                raise InvariantViolation(f"Forest edge ({lo}, {hi}) references an unknown node")
            _, merged = uf.union(lo, hi)
            if not merged:
                raise InvariantViolation(f"Cycle detected in spanning forest at edge ({lo}, {hi})")

    def check_components(self, expected: int) -> None:
        actual = self.component_count()
        if actual != expected:
            raise InvariantViolation(
                f"Spanning forest has {actual} components but the candidate graph has {expected}"
            )

    # Persistence

    def to_array(self) -> np.ndarray:
        edges = self.edges()
        out = np.zeros((len(edges), 3), dtype=np.float64)
        for i, (w, lo, hi) in enumerate(edges):
            out[i] = (lo, hi, w)
        return out

    @classmethod
    def from_array(cls, handles: Iterable[int], edges: np.ndarray) -> "SpanningForest":
        forest = cls()
        for h in handles:
            forest.add_node(h)
        for lo, hi, w in edges:
            forest.add_node(int(lo))
            forest.add_node(int(hi))
            forest._add(edge_key(int(lo), int(hi), float(w)))
        return forest


@dataclass(frozen=True)
class Merge:
    """One merge event; its node id is ``Dendrogram.offset + position``."""

    left: int
    right: int
    distance: float
    size: int


@dataclass
class Dendrogram:
    """
    Single-linkage merge tree. Node ids below ``offset`` are point handles
    (leaves); ids at or above it are merges in increasing distance order.
    """

    leaves: list[int] = field(default_factory=list)
    merges: list[Merge] = field(default_factory=list)
    offset: int = 0
    roots: list[int] = field(default_factory=list)

    def is_leaf(self, node: int) -> bool:
        return node < self.offset

    def merge(self, node: int) -> Merge:
        return self.merges[node - self.offset]

    def size(self, node: int) -> int:
        return 1 if self.is_leaf(node) else self.merge(node).size

    def distance(self, node: int) -> float:
        return 0.0 if self.is_leaf(node) else self.merge(node).distance

    def children(self, node: int) -> tuple[int, int]:
        m = self.merge(node)
        return m.left, m.right

    def members(self, node: int) -> list[int]:
        """Leaf handles under node, ascending."""
        out: list[int] = []
        stack = [node]
        while stack:
            current = stack.pop()
            if self.is_leaf(current):
                out.append(current)
            else:
                m = self.merge(current)
                stack.append(m.left)
                stack.append(m.right)
        return sorted(out)

    def structure(self) -> list[tuple[int, int, float, int]]:
        """Plain tuples for equality checks and persistence."""
        return [(m.left, m.right, m.distance, m.size) for m in self.merges]

    def to_array(self) -> np.ndarray:
        out = np.zeros((len(self.merges), 4), dtype=np.float64)
        for i, m in enumerate(self.merges):
            out[i] = (m.left, m.right, m.distance, m.size)
        return out


def build_dendrogram(handles: Iterable[int], forest_edges: Iterable[EdgeKey]) -> Dendrogram:
    """
    Kruskal-order merge of forest edges into a dendrogram.

    Args:
        handles: All point handles (isolated points become single-leaf roots)
        forest_edges: (weight, lo, hi) forest edges

    Returns:
        Dendrogram with one root per connected component, roots ordered by
        their smallest member handle
    """
    leaves = sorted(set(handles))
    offset = (leaves[-1] + 1) if leaves else 0
    dendrogram = Dendrogram(leaves=leaves, offset=offset)

    uf = UnionFind(leaves)
    top: dict[int, int] = {h: h for h in leaves}  # union-find root -> current dendrogram node
    for weight, lo, hi in sorted(forest_edges):
        ra, rb = uf.find(lo), uf.find(hi)
        if ra == rb:
            raise InvariantViolation(f"Forest edge ({lo}, {hi}) closes a cycle while building the dendrogram")
        left, right = top.pop(ra), top.pop(rb)
        node = offset + len(dendrogram.merges)
        root, _ = uf.union(ra, rb)
        dendrogram.merges.append(Merge(left=left, right=right, distance=float(weight), size=uf.size[root]))
        top[root] = node

    dendrogram.roots = sorted(top.values(), key=lambda n: dendrogram.members(n)[0])
    return dendrogram


def dendrogram_from_array(leaves: list[int], merges: np.ndarray) -> Dendrogram:
    """Rebuild a persisted dendrogram."""
    offset = (max(leaves) + 1) if leaves else 0
    dendrogram = Dendrogram(leaves=sorted(leaves), offset=offset)
    referenced: set[int] = set()
    for left, right, distance, size in merges:
        dendrogram.merges.append(Merge(int(left), int(right), float(distance), int(size)))
        referenced.update((int(left), int(right)))
    all_nodes = set(dendrogram.leaves) | {offset + i for i in range(len(dendrogram.merges))}
    dendrogram.roots = sorted(all_nodes - referenced, key=lambda n: dendrogram.members(n)[0])
    return dendrogram

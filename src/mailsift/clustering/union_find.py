"""
Disjoint-set forest over integer handles with path compression and union by rank.
"""

from __future__ import annotations

from typing import Iterable


class UnionFind:
    def __init__(self, handles: Iterable[int] = ()):
        self.parent: dict[int, int] = {}
        self.rank: dict[int, int] = {}
        self.size: dict[int, int] = {}
        for h in handles:
            self.add(h)

    def __contains__(self, handle: int) -> bool:
        return handle in self.parent

    def add(self, handle: int) -> None:
        if handle not in self.parent:
            self.parent[handle] = handle
            self.rank[handle] = 0
            self.size[handle] = 1

    def find(self, handle: int) -> int:
        root = handle
        while self.parent[root] != root:
            root = self.parent[root]
        # Compress
        while self.parent[handle] != root:
            self.parent[handle], handle = root, self.parent[handle]
        return root

    def union(self, a: int, b: int) -> tuple[int, bool]:
        """Merge the sets of a and b; returns (root, merged)."""
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra, False
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        self.size[ra] += self.size[rb]
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1
        return ra, True

    def connected(self, a: int, b: int) -> bool:
        return self.find(a) == self.find(b)

    def component_count(self) -> int:
        return sum(1 for h in self.parent if self.parent[h] == h)

    def components(self) -> dict[int, list[int]]:
        """Root -> sorted member handles."""
        groups: dict[int, list[int]] = {}
        for h in sorted(self.parent):
            groups.setdefault(self.find(h), []).append(h)
        return groups

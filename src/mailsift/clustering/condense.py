"""
Condensation and stability-based cluster selection.

Each dendrogram tree is walked top-down with an explicit stack. The tree root
is the unbounded universe: its large children become candidate clusters and
its small children are noise. Inside a candidate a merge either splits it into
two new candidates, sheds a small child's points, or dissolves it.

Selection is excess-of-mass over ``lambda = 1 / distance``. Points shed by a
candidate stay members of whichever selected cluster contains that candidate,
with a membership probability proportional to how long they persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from mailsift.clustering.hierarchy import Dendrogram
from mailsift.clustering.models import NOISE

logger = logging.getLogger(__name__)

MIN_DISTANCE = 1e-6


def to_lambda(distance: float) -> float:
    return 1.0 / max(distance, MIN_DISTANCE)


@dataclass
class Candidate:
    """A candidate cluster in the condensed tree of one component."""

    index: int
    parent: Optional[int]
    birth_distance: float
    death_distance: float = 0.0
    stability: float = 0.0
    children: list[int] = field(default_factory=list)
    shed: dict[int, float] = field(default_factory=dict)  # handle -> lambda at which it left
    selected: bool = False

    @property
    def lambda_birth(self) -> float:
        return to_lambda(self.birth_distance)

    def release(self, handles: list[int], lam: float) -> None:
        for h in handles:
            self.shed[h] = lam
        self.stability += len(handles) * (lam - self.lambda_birth)


@dataclass
class ComponentClustering:
    """Condensed tree and flat clustering of one dendrogram tree."""

    members: tuple[int, ...]
    candidates: list[Candidate] = field(default_factory=list)
    labels: dict[int, int] = field(default_factory=dict)  # handle -> candidate index or NOISE
    probabilities: dict[int, float] = field(default_factory=dict)

    @property
    def selected(self) -> list[Candidate]:
        return [c for c in self.candidates if c.selected]

    def members_of(self, index: int) -> list[int]:
        return sorted(h for h, label in self.labels.items() if label == index)

    def subtree(self, index: int) -> list[int]:
        """Candidate indices under index, itself included."""
        out = []
        stack = [index]
        while stack:
            current = stack.pop()
            out.append(current)
            stack.extend(self.candidates[current].children)
        return out


def condense_component(dendrogram: Dendrogram, root: int, min_cluster_size: int) -> ComponentClustering:
    """
    Condense one dendrogram tree and select its flat clusters.

    Args:
        dendrogram: Full dendrogram
        root: Root node id of the tree to condense
        min_cluster_size: Smallest subtree that can be a candidate

    Returns:
        ComponentClustering with labels and probabilities for every member
    """
    members = tuple(dendrogram.members(root))
    result = ComponentClustering(members=members)
    for h in members:
        result.labels[h] = NOISE
        result.probabilities[h] = 0.0

    if dendrogram.is_leaf(root):
        return result

    def new_candidate(parent: Optional[int], birth: float) -> int:
        index = len(result.candidates)
        result.candidates.append(Candidate(index=index, parent=parent, birth_distance=birth))
        if parent is not None:
            result.candidates[parent].children.append(index)
        return index

    stack: list[tuple[int, int]] = []
    root_distance = dendrogram.distance(root)
    for child in dendrogram.children(root):
        if dendrogram.size(child) >= min_cluster_size:
            stack.append((child, new_candidate(None, root_distance)))

    while stack:
        node, index = stack.pop()
        candidate = result.candidates[index]
        if dendrogram.is_leaf(node):
            candidate.release([node], to_lambda(0.0))
            continue

        distance = dendrogram.distance(node)
        lam = to_lambda(distance)
        left, right = dendrogram.children(node)
        large = [c for c in (left, right) if dendrogram.size(c) >= min_cluster_size]

        if len(large) == 2:
            # Every remaining point leaves; the children own them from here
            candidate.stability += dendrogram.size(node) * (lam - candidate.lambda_birth)
            candidate.death_distance = distance
            for child in (right, left):
                stack.append((child, new_candidate(index, distance)))
        elif len(large) == 1:
            small = right if large[0] == left else left
            candidate.release(dendrogram.members(small), lam)
            stack.append((large[0], index))
        else:
            candidate.release(dendrogram.members(node), lam)
            candidate.death_distance = distance

    _select(result)
    _label(result)
    return result


def _select(result: ComponentClustering) -> None:
    """Bottom-up excess of mass; children always have larger indices than parents."""
    best: dict[int, float] = {}
    for candidate in reversed(result.candidates):
        children_total = sum(best[c] for c in candidate.children)
        if candidate.stability > children_total:
            candidate.selected = True
            best[candidate.index] = candidate.stability
        else:
            best[candidate.index] = children_total

    # Keep only the top-most selections
    for candidate in result.candidates:
        if candidate.selected:
            for descendant in result.subtree(candidate.index)[1:]:
                result.candidates[descendant].selected = False


def _label(result: ComponentClustering) -> None:
    for candidate in result.selected:
        lambdas: dict[int, float] = {}
        for index in result.subtree(candidate.index):
            lambdas.update(result.candidates[index].shed)
        if not lambdas:
            continue

        lam_birth = candidate.lambda_birth
        lam_max = max(lambdas.values())
        span = lam_max - lam_birth
        for h, lam in lambdas.items():
            result.labels[h] = candidate.index
            if span <= 0:
                result.probabilities[h] = 1.0
            else:
                result.probabilities[h] = min(1.0, max(0.0, (min(lam, lam_max) - lam_birth) / span))


@dataclass
class FlatCluster:
    """A selected cluster with its stable id."""

    cluster_id: int
    members: list[int]
    stability: float
    birth_distance: float
    death_distance: float


class ClusterIdRegistry:
    """
    Keeps cluster ids stable across re-derivations.

    A new cluster inherits the id of the previous cluster it shares the most
    members with (each previous id used at most once); otherwise it gets a
    fresh id from a monotonic counter.
    """

    def __init__(self, next_cluster_id: int = 0):
        self.next_cluster_id = next_cluster_id
        self._members: dict[int, frozenset[int]] = {}

    def __len__(self) -> int:
        return len(self._members)

    def assign(self, clusters: list[tuple[list[int], object]]) -> list[tuple[int, list[int], object]]:
        """
        Args:
            clusters: (member handles, payload) per newly derived cluster

        Returns:
            (cluster_id, members, payload) in the input order
        """
        owner: dict[int, int] = {}
        for cid, members in self._members.items():
            for h in members:
                owner[h] = cid

        order = sorted(range(len(clusters)), key=lambda i: (-len(clusters[i][0]), min(clusters[i][0])))
        taken: set[int] = set()
        ids: dict[int, int] = {}
        for i in order:
            overlap: dict[int, int] = {}
            for h in clusters[i][0]:
                cid = owner.get(h)
                if cid is not None and cid not in taken:
                    overlap[cid] = overlap.get(cid, 0) + 1
            if overlap:
                cid = max(overlap, key=lambda c: (overlap[c], -c))
            else:
                cid = self.next_cluster_id
                self.next_cluster_id += 1
            taken.add(cid)
            ids[i] = cid

        self._members = {ids[i]: frozenset(clusters[i][0]) for i in range(len(clusters))}
        return [(ids[i], clusters[i][0], clusters[i][1]) for i in range(len(clusters))]

    def to_dict(self) -> dict:
        return {
            "next_cluster_id": self.next_cluster_id,
            "clusters": {str(cid): sorted(members) for cid, members in self._members.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClusterIdRegistry":
        registry = cls(next_cluster_id=int(data.get("next_cluster_id", 0)))
        registry._members = {int(cid): frozenset(m) for cid, m in data.get("clusters", {}).items()}
        return registry

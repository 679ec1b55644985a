"""
Tests for candidate edges, core distances and mutual reachability.
"""

import pytest

from mailsift.clustering.oracle import PairDistance
from mailsift.clustering.reachability import CandidateGraph, CoreDistanceTable


@pytest.fixture
def graph():
    g = CandidateGraph()
    g.record(0, 1, PairDistance(0.1))
    g.record(0, 2, PairDistance(0.2))
    g.record(0, 3, PairDistance(0.4))
    g.record(1, 2, PairDistance(0.15))
    g.add_node(4)
    return g


class TestCandidateGraph:
    """Test candidate edge storage"""

    def test_symmetric_storage(self, graph):
        assert graph.distance(2, 0) == graph.distance(0, 2) == PairDistance(0.2)
        assert len(graph) == 4
        assert graph.degree(0) == 3
        assert graph.nearest(0) == [(0.1, 1, False), (0.2, 2, False), (0.4, 3, False)]

    def test_degraded_never_overwrites_precise(self, graph):
        previous = graph.record(0, 1, PairDistance(0.9, degraded=True))
        assert previous == PairDistance(0.1)
        assert graph.distance(0, 1) == PairDistance(0.1)

    def test_precise_replaces_degraded(self, graph):
        graph.record(2, 3, PairDistance(0.7, degraded=True))
        assert graph.degraded_edges() == [(2, 3)]

        previous = graph.record(3, 2, PairDistance(0.3))
        assert previous.degraded
        assert graph.degraded_edges() == []
        assert graph.distance(2, 3) == PairDistance(0.3)

    def test_self_edge_rejected(self, graph):
        with pytest.raises(ValueError):
            graph.record(1, 1, PairDistance(0.0))

    def test_remove_node(self, graph):
        former = graph.remove_node(0)
        assert former == [1, 2, 3]
        assert graph.degree(0) == 0
        assert graph.distance(1, 0) is None
        assert 0 in graph
        assert len(graph) == 1

    def test_component_count(self, graph):
        assert graph.component_count() == 2
        assert graph.component_count([0, 1, 2, 3, 4, 5]) == 3


class TestCoreDistances:
    """Test core distances and mutual reachability"""

    def test_core_is_k_minus_first_neighbor(self, graph):
        cores = CoreDistanceTable(graph, k=3)
        for h in graph.nodes:
            cores.refresh(h)

        assert cores.get(0) == 0.2
        assert cores.get(1) == 0.15
        assert cores.get(2) == 0.2
        # Too few neighbors: the largest known distance stands in
        assert cores.get(3) == 0.4
        assert cores.short_of_neighbors(3)
        assert cores.get(4) == 0.0

    def test_k_of_one_means_zero_core(self, graph):
        cores = CoreDistanceTable(graph, k=1)
        cores.refresh(0)
        assert cores.needed == 0
        assert cores.get(0) == 0.0

    def test_mutual_reachability(self, graph):
        cores = CoreDistanceTable(graph, k=3)
        for h in graph.nodes:
            cores.refresh(h)

        assert cores.mutual_reachability(0, 1) == (0.2, False)
        assert cores.mutual_reachability(0, 3) == (0.4, False)
        with pytest.raises(KeyError):
            cores.mutual_reachability(3, 4)

        weighted = cores.weighted_edges()
        assert weighted == sorted(weighted)
        assert (0.2, 0, 1) in weighted

    def test_refresh_reports_old_and_new(self, graph):
        cores = CoreDistanceTable(graph, k=3)
        assert cores.refresh(3) == (None, 0.4)
        graph.record(3, 4, PairDistance(0.05))
        assert cores.refresh(3) == (0.4, 0.4)
        graph.record(3, 1, PairDistance(0.01))
        assert cores.refresh(3) == (0.4, 0.05)

    def test_degraded_core(self, graph):
        graph.record(1, 3, PairDistance(0.12, degraded=True))
        cores = CoreDistanceTable(graph, k=3)
        for h in graph.nodes:
            cores.refresh(h)

        # 1's two nearest are 0.1 (precise) and 0.12 (degraded)
        assert cores.get(1) == 0.12
        assert cores.degraded[1]
        assert not cores.degraded[0]
        assert cores.mutual_reachability(0, 1) == (0.2, True)

        cores.forget(1)
        assert cores.get(1) == 0.0

"""
Tests for the incremental update manager.

Covers the end-to-end clustering scenarios, idempotent and changed
re-insertion, determinism, noise monotonicity, rebuild decisions and
concurrent readers.
"""

import threading

import numpy as np
import pytest

from clustering_helpers import (
    euclid_similarity,
    gaussian_blobs,
    make_corpus,
    make_settings,
    triangle_plus_outlier,
    two_groups,
)
from mailsift.clustering import engine as engine_module
from mailsift.clustering.diagnostics import clustering_agreement
from mailsift.clustering.engine import build_engine
from mailsift.clustering.errors import InvariantViolation
from mailsift.clustering.hierarchy import SpanningForest
from mailsift.clustering.models import NOISE, PointState


def add_cycle(engine):
    """Replace the engine's forest with a copy holding one extra edge that closes a cycle."""
    forest = engine.forest
    w, _, hi = forest.edges()[0]
    other = next(h for h in sorted(forest.nodes) if h != hi and forest.weight(hi, h) is None)
    corrupted = np.vstack([forest.to_array(), [[min(hi, other), max(hi, other), w]]])
    engine.forest = SpanningForest.from_array(sorted(forest.nodes), corrupted)
    with pytest.raises(InvariantViolation):
        engine.forest.check_acyclic()


class TestClusteringScenarios:
    """End-to-end scenarios on small, hand-built corpora."""

    def test_three_close_points_and_one_outlier(self):
        """Three tight points form one cluster; the distant point is noise."""
        c = make_corpus(min_cluster_size=3)
        c.insert_many(triangle_plus_outlier())

        labels = {pid: c.label(pid) for pid in "abcd"}
        assert labels["a"] != NOISE
        assert labels["a"] == labels["b"] == labels["c"]
        for pid in "abc":
            assert c.engine.assignment_for(pid).membership_probability == pytest.approx(1.0, abs=1e-6)

        outlier = c.engine.assignment_for("d")
        assert outlier.cluster_id == NOISE
        assert outlier.membership_probability == 0.0
        assert len(c.engine.clusters()) == 1
        c.engine.close()

    def test_two_separated_groups(self):
        """Two groups of 25 give exactly two clusters with positive stability."""
        c = make_corpus(min_cluster_size=5)
        c.insert_many(two_groups(25), batch_size=10)

        clusters = c.engine.clusters()
        assert len(clusters) == 2
        for cluster in clusters:
            assert cluster.stability > 0
            assert cluster.size == 25
            prefixes = {member[0] for member in cluster.members}
            assert len(prefixes) == 1
        assert all(not a.is_noise for a in c.engine.assignments().values())
        c.engine.close()

    def test_every_point_has_one_assignment(self):
        c = make_corpus(min_cluster_size=5)
        items = gaussian_blobs(15)
        c.insert_many(items, batch_size=6)

        assignments = c.engine.assignments()
        assert set(assignments) == {pid for pid, _ in items}
        for a in assignments.values():
            assert 0.0 <= a.membership_probability <= 1.0
            if a.is_noise:
                assert a.membership_probability == 0.0
        assert all(p.state is PointState.ASSIGNED for p in c.engine.points)
        c.engine.close()

    def test_insertion_sequence_is_strictly_increasing(self):
        c = make_corpus()
        c.insert_many(gaussian_blobs(5), batch_size=3)
        sequences = [c.engine.assignment_for(pid).insertion_sequence for pid in c.engine.point_ids()]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)
        c.engine.close()


class TestReinsertion:
    """Duplicate and changed re-insertion of known ids."""

    def test_identical_reinsert_is_idempotent(self):
        once = make_corpus()
        once.insert_many(triangle_plus_outlier())

        twice = make_corpus()
        twice.insert_many(triangle_plus_outlier())
        result = twice.insert("b", np.array([0.01, 0.0]))

        assert result.unchanged == ["b"]
        assert result.accepted == []
        # The current assignment is re-emitted for at-least-once delivery
        assert [a.point_id for a in result.emitted] == ["b"]

        for pid in "abcd":
            first, second = once.engine.assignment_for(pid), twice.engine.assignment_for(pid)
            assert first.cluster_id == second.cluster_id
            assert first.membership_probability == pytest.approx(second.membership_probability)
        once.engine.close()
        twice.engine.close()

    def test_changed_vector_moves_point_to_new_neighborhood(self):
        c = make_corpus(min_cluster_size=5)
        c.insert_many(two_groups(25), batch_size=10)
        assert c.label("a0") == c.label("a1")
        group_a, group_b = c.label("a1"), c.label("b1")

        moved = np.zeros(26)
        moved[0] = 0.01
        moved[25] = 5.0
        result = c.insert("a0", moved)

        assert result.rebuilt
        assert c.label("a0") == group_b
        assert c.label("a1") == group_a
        # Stale edges to the old neighborhood are gone
        for a, b, _ in c.engine.candidate_edges():
            if "a0" in (a, b):
                other = b if a == "a0" else a
                assert other.startswith("b")
        c.engine.close()

    def test_duplicate_id_in_batch_keeps_later_record(self):
        c = make_corpus()
        first = c.record("x", np.array([0.0, 0.0]))
        c.resolver.add("ref-x2", np.array([0.5, 0.5], dtype=np.float32))
        second = {"id": "x", "coarse_vector": [0.5, 0.5], "precise_ref": "ref-x2"}

        result = c.engine.insert_batch([first, second])

        assert result.accepted == ["x"]
        assert c.engine.points.precise_ref("x") == "ref-x2"
        np.testing.assert_allclose(c.engine.points.coarse_vector("x"), [0.5, 0.5])
        c.engine.close()


class TestDeterminism:
    def test_same_stream_same_result(self):
        """Two independent runs agree on assignments and dendrogram."""
        items = gaussian_blobs(12)
        runs = []
        for _ in range(2):
            c = make_corpus(min_cluster_size=4)
            c.insert_many(items, batch_size=5)
            runs.append(c)

        first, second = runs
        assert first.engine.labels() == second.engine.labels()
        assert first.engine.dendrogram.structure() == second.engine.dendrogram.structure()
        for pid in first.engine.point_ids():
            assert first.engine.assignment_for(pid).membership_probability == pytest.approx(
                second.engine.assignment_for(pid).membership_probability
            )
        for c in runs:
            c.engine.close()


class TestNoiseMonotonicity:
    """Test that far-away points stay noise"""

    def test_point_beyond_every_cluster_radius_is_noise(self):
        c = make_corpus(min_cluster_size=3)
        c.insert_many(triangle_plus_outlier())
        radius = max(cluster.birth_distance for cluster in c.engine.clusters())

        far = np.array([-0.98, 0.0])
        nearest = min(float(np.linalg.norm(far - v)) for _, v in triangle_plus_outlier())
        assert nearest > radius

        c.insert("z", far)
        assignment = c.engine.assignment_for("z")
        assert assignment.cluster_id == NOISE
        assert assignment.membership_probability == 0.0
        c.engine.close()


class TestRebuildDecisions:
    """Local repair versus full rebuild."""

    def test_local_repair_matches_kruskal(self):
        """A small insert is repaired locally and the forest equals a full Kruskal pass."""
        c = make_corpus(min_cluster_size=5, k_rescale=4, rebuild_threshold=0.3)
        items = gaussian_blobs(25)
        c.insert_many(items[:-1], batch_size=49)

        generation = c.engine.rebuild_generation
        result = c.insert(*items[-1])

        assert not result.rebuilt
        assert c.engine.rebuild_generation == generation
        handles = [p.handle for p in c.engine.points]
        reference = SpanningForest()
        reference.rebuild(handles, c.engine.cores.weighted_edges())
        assert c.engine.forest.edges() == reference.edges()
        c.engine.close()

    def test_threshold_rebuild_matches_restored_full_rebuild(self, tmp_path):
        """After touching >30% of points the cluster count equals a from-scratch rebuild."""
        c = make_corpus(min_cluster_size=5, rebuild_threshold=0.3, snapshot_dir=tmp_path / "snap")
        items = two_groups(15)
        c.insert_many(items[:10] + items[15:25], batch_size=20)

        generation = c.engine.rebuild_generation
        results = c.insert_many(items[10:15] + items[25:30])
        assert results[0].rebuilt
        assert c.engine.rebuild_generation == generation + 1
        assert c.engine.health()["touched_fraction"] == 0.0

        c.engine.save_snapshot()

        restored = build_engine(
            make_settings(min_cluster_size=5, rebuild_threshold=0.3, snapshot_dir=tmp_path / "snap"),
            resolver=c.resolver,
            similarity=euclid_similarity,
        )
        restored.restore()
        restored.rebuild()

        assert len(restored.clusters()) == len(c.engine.clusters()) == 2
        assert clustering_agreement(c.engine.labels(), restored.labels()) == pytest.approx(1.0)
        c.engine.close()
        restored.close()

    def test_invariant_violation_recovers_by_rebuild(self):
        c = make_corpus(min_cluster_size=3, rebuild_threshold=1.0)
        c.insert_many(triangle_plus_outlier())
        assert c.engine.forest.component_count() == 1
        add_cycle(c.engine)

        c.insert("e", np.array([0.0, 0.9]))
        assert c.engine.health()["last_recovery"] == "rebuild"
        assert c.engine._replay_log == []
        c.engine.forest.check_acyclic()
        handles = [p.handle for p in c.engine.points]
        reference = SpanningForest()
        reference.rebuild(handles, c.engine.cores.weighted_edges())
        assert c.engine.forest.edges() == reference.edges()
        c.engine.close()

    def test_invariant_violation_restores_snapshot_and_replays(self, tmp_path):
        c = make_corpus(min_cluster_size=3, rebuild_threshold=1.0, snapshot_dir=tmp_path / "snap")
        c.insert_many(triangle_plus_outlier())
        c.engine.save_snapshot()
        c.insert("e", np.array([0.0, 0.9]))
        c.insert("f", np.array([0.005, 0.004]))
        add_cycle(c.engine)

        c.insert("g", np.array([0.9, 0.9]))

        assert c.engine.health()["last_recovery"] == "replay"
        c.engine.forest.check_acyclic()
        c.engine.forest.check_components(c.engine.graph.component_count([p.handle for p in c.engine.points]))
        assert sorted(c.engine.point_ids()) == ["a", "b", "c", "d", "e", "f", "g"]
        assert all(p.state is PointState.ASSIGNED for p in c.engine.points)
        assert all(c.engine.assignment_for(pid) is not None for pid in c.engine.point_ids())
        assert c.label("f") == c.label("a") != NOISE
        c.engine.close()

    def test_overflowing_replay_log_recovers_by_rebuild(self, tmp_path, monkeypatch):
        monkeypatch.setattr(engine_module, "REPLAY_LIMIT", 2)
        c = make_corpus(min_cluster_size=3, rebuild_threshold=1.0, snapshot_dir=tmp_path / "snap")
        c.insert_many(triangle_plus_outlier())
        c.engine.save_snapshot()
        for pid, x in (("e", 0.3), ("f", 0.5), ("g", 0.7)):
            c.insert(pid, np.array([x, 0.9]))
        assert c.engine._replay_log == []
        add_cycle(c.engine)

        c.insert("h", np.array([0.9, 0.9]))

        assert c.engine.health()["last_recovery"] == "rebuild"
        c.engine.forest.check_acyclic()
        assert len(c.engine.point_ids()) == 8
        c.engine.close()



class TestMalformedInput:
    """Test record validation"""

    def test_bad_records_are_rejected_and_batch_proceeds(self, corpus):
        good = corpus.record("ok", np.array([0.0, 0.0]))
        corpus.engine.insert(good)

        result = corpus.engine.insert_batch(
            [
                {"id": "wrong-dim", "coarse_vector": [1.0, 2.0, 3.0], "precise_ref": "ref-ok"},
                {"id": "nan", "coarse_vector": [float("nan"), 0.0], "precise_ref": "ref-ok"},
                {"id": "bad-ref", "coarse_vector": [0.1, 0.1], "precise_ref": "../etc/passwd"},
                {"coarse_vector": [0.1, 0.1], "precise_ref": "ref-ok"},
                corpus.record("fine", np.array([0.2, 0.0])),
            ]
        )

        assert result.accepted == ["fine"]
        rejected = [pid for pid, _ in result.rejected]
        assert rejected == ["wrong-dim", "nan", "bad-ref", None]
        assert "wrong-dim" not in corpus.engine.points
        assert corpus.engine.assignment_for("fine") is not None


class TestConcurrentReaders:
    """Test readers running alongside the writer"""

    def test_snapshot_queries_during_writes(self):
        c = make_corpus(min_cluster_size=4)
        items = gaussian_blobs(20)
        c.insert_many(items[:5])
        errors: list[Exception] = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                try:
                    snapshot = c.engine.index.snapshot()
                    found = snapshot.query(items[0][1].astype(np.float32), 5)
                    assert all(pid in snapshot.ids for pid, _ in found)
                    c.engine.neighbors("g0-0", k=3)
                    c.engine.assignment_for("g0-0")
                except Exception as e:  # collected for the assertion below
                    errors.append(e)
                    return

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        try:
            c.insert_many(items[5:], batch_size=5)
        finally:
            stop.set()
            for t in threads:
                t.join()

        assert errors == []
        assert len(c.engine.index.snapshot()) == len(items)
        c.engine.close()

    def test_health_and_clusters_during_writes(self):
        c = make_corpus(min_cluster_size=4)
        items = gaussian_blobs(30)
        errors: list[Exception] = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                try:
                    health = c.engine.health()
                    assert health["degraded_points"] <= health["points"]
                    c.engine.clusters()
                except Exception as e:  # collected for the assertion below
                    errors.append(e)
                    return

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        try:
            c.insert_many(items, batch_size=3)
        finally:
            stop.set()
            for t in threads:
                t.join()

        assert errors == []
        health = c.engine.health()
        assert health["points"] == len(items)
        assert health["batches_committed"] == 20
        assert health["index_version"] == c.engine.index.snapshot().version
        c.engine.close()

"""
Tests for assignment emission and the downstream sinks.
"""

import numpy as np
import pytest

from clustering_helpers import euclid_similarity, make_settings, triangle_plus_outlier
from mailsift.clustering.emitter import AssignmentEmitter, InMemorySink, JsonlSink, SqliteSink
from mailsift.clustering.engine import build_engine
from mailsift.clustering.models import NOISE, ClusterAssignment
from mailsift.clustering.oracle import InMemoryResolver


def assignment(pid, cluster_id=0, probability=1.0, degraded=False, sequence=0):
    return ClusterAssignment(
        point_id=pid,
        cluster_id=cluster_id,
        membership_probability=probability,
        degraded=degraded,
        insertion_sequence=sequence,
    )


class FlakySink:
    """Fails the first ``failures`` writes."""

    def __init__(self, failures=1, name="flaky"):
        self.name = name
        self.failures = failures
        self.writes = []

    def write(self, assignments):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("downstream offline")
        self.writes.append([a.point_id for a in assignments])


class TestAssignmentEmitter:
    """Test changed-only emission and sink retry"""

    def test_only_changed_assignments_are_emitted(self):
        sink = InMemorySink()
        emitter = AssignmentEmitter([sink])

        assert [a.point_id for a in emitter.emit([assignment("a"), assignment("b")])] == ["a", "b"]
        assert emitter.emit([assignment("a"), assignment("b")]) == []

        changed = emitter.emit([assignment("a", cluster_id=3), assignment("b", degraded=True)])
        assert [a.point_id for a in changed] == ["a", "b"]
        assert len(sink.deliveries) == 2
        assert sink.latest["a"].cluster_id == 3
        assert emitter.get("b").degraded

    def test_probability_change_is_emitted(self):
        emitter = AssignmentEmitter()
        emitter.emit([assignment("a", probability=1.0)])
        assert emitter.emit([assignment("a", probability=1.0 - 1e-12)]) == []
        assert len(emitter.emit([assignment("a", probability=0.5)])) == 1

    def test_forced_ids_are_re_emitted(self):
        emitter = AssignmentEmitter()
        emitter.emit([assignment("a"), assignment("b")])
        forced = emitter.emit([assignment("a"), assignment("b")], force=["b"])
        assert [a.point_id for a in forced] == ["b"]

    def test_failed_sink_is_retried_with_merged_batch(self):
        flaky = FlakySink(failures=1)
        healthy = InMemorySink()
        emitter = AssignmentEmitter([flaky, healthy])

        emitter.emit([assignment("a"), assignment("b")])
        assert emitter.pending_count("flaky") == 2
        assert emitter.pending_count("memory") == 0

        emitter.emit([assignment("b", cluster_id=NOISE, probability=0.0), assignment("c")])
        assert emitter.pending_count("flaky") == 0
        assert flaky.writes == [["a", "b", "c"]]
        assert healthy.latest["b"].cluster_id == NOISE

    def test_flush_delivers_pending(self):
        flaky = FlakySink(failures=1)
        emitter = AssignmentEmitter([flaky])
        emitter.emit([assignment("a")])
        assert emitter.flush() == 0
        assert flaky.writes == [["a"]]

    def test_add_sink(self):
        emitter = AssignmentEmitter()
        sink = InMemorySink()
        emitter.add_sink(sink)
        emitter.emit([assignment("a")])
        assert "a" in sink.latest


class TestSinks:
    def test_jsonl_sink_keeps_last_line_per_point(self, tmp_path):
        sink = JsonlSink(tmp_path / "out" / "assignments.jsonl")
        sink.write([assignment("a"), assignment("b")])
        sink.write([assignment("a", cluster_id=NOISE, probability=0.0, sequence=5)])

        latest = sink.read_latest()
        assert set(latest) == {"a", "b"}
        assert latest["a"].is_noise
        assert latest["a"].insertion_sequence == 5
        assert len(sink.path.read_text().splitlines()) == 3

    def test_jsonl_sink_missing_file(self, tmp_path):
        assert JsonlSink(tmp_path / "none.jsonl").read_latest() == {}

    def test_sqlite_sink_upserts(self, tmp_path):
        sink = SqliteSink(tmp_path / "db" / "assignments.db")
        sink.write([assignment("a"), assignment("b", degraded=True)])
        sink.write([assignment("a", cluster_id=7, probability=0.25)])

        assert sink.count() == 2
        stored = sink.get("a")
        assert stored.cluster_id == 7
        assert stored.membership_probability == pytest.approx(0.25)
        assert sink.get("b").degraded
        assert sink.get("missing") is None


class TestEngineEmission:
    """Test engine to sink wiring"""

    def test_engine_publishes_to_sinks(self, tmp_path):
        memory = InMemorySink()
        sqlite = SqliteSink(tmp_path / "assignments.db")
        resolver = InMemoryResolver()
        engine = build_engine(make_settings(), resolver=resolver, similarity=euclid_similarity, sinks=[memory, sqlite])

        records = []
        for pid, vec in triangle_plus_outlier():
            resolver.add(f"ref-{pid}", vec)
            records.append({"id": pid, "coarse_vector": vec.tolist(), "precise_ref": f"ref-{pid}"})
        engine.insert_batch(records)

        assert set(memory.latest) == {"a", "b", "c", "d"}
        assert sqlite.count() == 4
        assert sqlite.get("d").cluster_id == NOISE

        # Nothing changed: nothing new is delivered
        deliveries = len(memory.deliveries)
        engine.insert_batch([])
        assert len(memory.deliveries) == deliveries

        resolver.add("ref-e", np.array([0.9, 0.001]))
        engine.insert({"id": "e", "coarse_vector": [0.9, 0.001], "precise_ref": "ref-e"})
        assert "e" in memory.latest
        engine.close()

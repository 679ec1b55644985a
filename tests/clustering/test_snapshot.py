"""
Tests for snapshot persistence and engine restore.
"""

import json

import numpy as np
import pytest

from clustering_helpers import euclid_similarity, gaussian_blobs, make_corpus, make_settings
from mailsift.clustering.engine import build_engine
from mailsift.clustering.errors import SnapshotCorruption
from mailsift.clustering.snapshot import MANIFEST, SnapshotStore


@pytest.fixture
def store(tmp_path):
    s = SnapshotStore(tmp_path / "snapshots")
    s.save({"matrix": np.arange(6, dtype=np.float64).reshape(2, 3)}, {"meta": {"points": 2}})
    return s


class TestSnapshotStore:
    """Test checksummed snapshot files"""

    def test_round_trip(self, store):
        arrays, documents = store.load()
        np.testing.assert_array_equal(arrays["matrix"], np.arange(6).reshape(2, 3))
        assert documents["meta"] == {"points": 2}

    def test_save_replaces_current(self, store):
        store.save({"matrix": np.zeros((1, 1))}, {"meta": {"points": 1}})
        _, documents = store.load()
        assert documents["meta"] == {"points": 1}
        assert not (store.root / "staging").exists()
        assert not (store.root / "previous").exists()

    def test_tampered_file_is_rejected(self, store):
        path = store.current / "matrix.npy"
        payload = bytearray(path.read_bytes())
        payload[-1] ^= 0xFF
        path.write_bytes(bytes(payload))
        with pytest.raises(SnapshotCorruption):
            store.load()

    def test_missing_file_is_rejected(self, store):
        (store.current / "meta.json").unlink()
        with pytest.raises(SnapshotCorruption):
            store.load()

    def test_missing_manifest_is_rejected(self, store):
        (store.current / MANIFEST).unlink()
        assert not store.exists()
        with pytest.raises(SnapshotCorruption):
            store.load()

    def test_unknown_format_is_rejected(self, store):
        manifest = json.loads((store.current / MANIFEST).read_text())
        manifest["format"] = 99
        (store.current / MANIFEST).write_text(json.dumps(manifest))
        with pytest.raises(SnapshotCorruption):
            store.load()


class TestEngineRestore:
    """Test engine snapshot and restore"""

    def test_restore_resumes_identical_state(self, tmp_path):
        c = make_corpus(min_cluster_size=4, snapshot_dir=tmp_path / "snap")
        items = gaussian_blobs(10)
        c.insert_many(items[:15])
        c.engine.save_snapshot()

        restored = build_engine(
            make_settings(min_cluster_size=4, snapshot_dir=tmp_path / "snap"),
            resolver=c.resolver,
            similarity=euclid_similarity,
        )
        restored.restore()

        assert restored.point_ids() == c.engine.point_ids()
        assert restored.labels() == c.engine.labels()
        assert restored.forest.edges() == c.engine.forest.edges()
        assert restored.dendrogram.structure() == c.engine.dendrogram.structure()
        assert restored.rebuild_generation == c.engine.rebuild_generation

        # Both continue identically from the same point
        for pid, vec in items[15:]:
            record = c.record(pid, vec)
            c.engine.insert(record)
            restored.insert(record)
        assert restored.labels() == c.engine.labels()
        assert restored.dendrogram.structure() == c.engine.dendrogram.structure()
        c.engine.close()
        restored.close()

    def test_periodic_snapshots(self, tmp_path):
        c = make_corpus(snapshot_dir=tmp_path / "snap", snapshot_every=2)
        items = gaussian_blobs(3)
        c.insert_many(items[:2])
        assert not c.engine.snapshots.exists()
        c.insert_many(items[2:4])
        assert c.engine.snapshots.exists()
        c.engine.close()

    def test_restore_from_corrupt_snapshot_fails_closed(self, tmp_path):
        c = make_corpus(snapshot_dir=tmp_path / "snap")
        c.insert_many(gaussian_blobs(3))
        c.engine.save_snapshot()
        (c.engine.snapshots.current / "candidate_edges.npy").write_bytes(b"garbage")

        fresh = make_corpus(snapshot_dir=tmp_path / "snap")
        with pytest.raises(SnapshotCorruption):
            fresh.engine.restore()
        assert fresh.engine.point_ids() == []
        c.engine.close()
        fresh.engine.close()

    def test_save_without_snapshot_dir(self, corpus):
        with pytest.raises(ValueError):
            corpus.engine.save_snapshot()

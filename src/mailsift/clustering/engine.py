"""
Incremental update manager.

Owns every mutable structure of the clustering core and sequences each batch:

1. Validate and de-duplicate records (PENDING)
2. Insert into the neighbor index, one point at a time (INDEXED)
3. Rescore candidate shortlists in parallel
4. Commit candidate edges and core distances serially (REACHABILITY_CURRENT)
5. Repair the spanning forest locally, or rebuild it
6. Check forest invariants, recovering on violation
7. Condense, select clusters and assign (ASSIGNED)
8. Emit changed assignments and publish the index snapshot

Writers serialize on one lock; readers use the published index snapshot and
the last committed assignment map.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np

from mailsift.clustering.condense import ClusterIdRegistry, ComponentClustering, FlatCluster, condense_component
from mailsift.clustering.emitter import AssignmentEmitter, AssignmentSink
from mailsift.clustering.errors import InvariantViolation, MalformedInput, SnapshotCorruption
from mailsift.clustering.hierarchy import Dendrogram, SpanningForest, build_dendrogram, dendrogram_from_array
from mailsift.clustering.hnsw import NeighborIndex
from mailsift.clustering.models import (
    NOISE,
    ClusterAssignment,
    ClusterSummary,
    Point,
    PointRecord,
    PointRegistry,
    PointState,
)
from mailsift.clustering.oracle import (
    DistanceOracle,
    NpyDirectoryResolver,
    PairDistance,
    RescoreOutcome,
    RescoringService,
    Resolver,
    Similarity,
    TokenRescoringOracle,
)
from mailsift.clustering.metrics import maxsim_similarity
from mailsift.clustering.reachability import CandidateGraph, CoreDistanceTable
from mailsift.clustering.snapshot import SnapshotStore
from mailsift.common.config import ClusteringSettings, load_settings

logger = logging.getLogger(__name__)

# Records kept for replay after the last snapshot; past this, recovery rebuilds instead
REPLAY_LIMIT = 10_000


@dataclass
class BatchResult:
    """Outcome of one insertion batch."""

    accepted: list[str] = field(default_factory=list)
    rejected: list[tuple[Optional[str], str]] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    emitted: list[ClusterAssignment] = field(default_factory=list)
    rebuilt: bool = False
    degraded_edges: int = 0


@dataclass
class _RescoreJob:
    point: Point
    candidates: list[str]
    coarse: dict[str, float]
    coarse_only: bool = False


class IncrementalClusterEngine:
    """
    Incremental density-based clustering over a stream of point records.

    Args:
        settings: Clustering settings
        oracle: Distance oracle over the same point registry
        points: Point registry shared with the oracle (a new one if omitted)
        sinks: Assignment sinks to publish to
    """

    def __init__(
        self,
        settings: ClusteringSettings,
        oracle: DistanceOracle,
        points: Optional[PointRegistry] = None,
        sinks: Optional[Iterable[AssignmentSink]] = None,
    ):
        self.settings = settings
        self.points = points if points is not None else PointRegistry()
        self.oracle = oracle
        self.rescorer = RescoringService(
            oracle,
            timeout_s=settings.rescore_timeout_s,
            unavailable_after=settings.unavailable_after,
            max_workers=settings.rescore_workers,
        )
        self.index = NeighborIndex(
            metric=settings.coarse_metric,
            degree=settings.index_degree,
            ef_construction=settings.ef_construction,
            ef_search=settings.ef_search,
            seed=settings.random_seed,
        )
        self.graph = CandidateGraph()
        self.cores = CoreDistanceTable(self.graph, settings.core_k)
        self.forest = SpanningForest()
        self.dendrogram = Dendrogram()
        self.cluster_ids = ClusterIdRegistry()
        self.emitter = AssignmentEmitter(sinks)
        self.snapshots = SnapshotStore(settings.snapshot_dir) if settings.snapshot_dir else None

        self.rebuild_generation = 0
        self.batches_committed = 0
        self.last_recovery: Optional[str] = None
        self._touched: set[int] = set()
        self._structural_dirty = False
        self._dirty: set[int] = set()
        self._retry: set[int] = set()
        self._since_probe = 0
        self._replay_log: list[PointRecord] = []
        # True while the replay log holds every record since the last saved or loaded snapshot
        self._replay_valid = False
        self._recovering = False

        self._components: dict[tuple[int, ...], ComponentClustering] = {}
        self._clusters: list[FlatCluster] = []
        self._assignments: dict[str, ClusterAssignment] = {}

        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=settings.rescore_workers, thread_name_prefix="rescore-batch")
        self._stats = self._collect_stats()

    # Writer operations

    def insert(self, record: PointRecord | Mapping[str, Any]) -> BatchResult:
        """Insert or update one point."""
        return self.insert_batch([record])

    def insert_batch(self, records: Sequence[PointRecord | Mapping[str, Any]]) -> BatchResult:
        """
        Insert or update a batch of points.

        Malformed records are rejected and logged; the rest of the batch
        proceeds. A duplicate id later in the batch supersedes earlier ones.

        Returns:
            BatchResult with accepted/rejected ids and the assignments emitted
        """
        with self._lock:
            return self._process_batch(records)

    def _validate(self, records: Sequence[PointRecord | Mapping[str, Any]], result: BatchResult):
        valid: dict[str, tuple[PointRecord, np.ndarray]] = {}
        normalize = self.settings.coarse_metric == "cosine"
        for raw in records:
            try:
                record = PointRecord.parse(raw)
                vector = self.points.check_vector(record, normalize=normalize)
            except MalformedInput as e:
                logger.warning(f"Rejected point {e.point_id!r}: {e}")
                result.rejected.append((e.point_id, str(e)))
                continue
            if self.points.dimension is None:
                self.points.dimension = int(vector.shape[0])
            if record.id in valid:
                logger.info(f"Point {record.id} appears again in the batch; keeping the later record")
                del valid[record.id]
            valid[record.id] = (record, vector)
        return list(valid.values())

    def _process_batch(self, records: Sequence[PointRecord | Mapping[str, Any]]) -> BatchResult:
        result = BatchResult()
        unchanged: list[str] = []
        fresh: list[tuple[PointRecord, np.ndarray]] = []
        for record, vector in self._validate(records, result):
            existing = self.points.get(record.id)
            if existing is not None and existing.state is PointState.ASSIGNED and existing.matches(
                vector, record.precise_ref
            ):
                unchanged.append(record.id)
            else:
                fresh.append((record, vector))

        # Upsert and index, strictly in arrival order
        batch: list[Point] = []
        for record, vector in fresh:
            old_ref = self.points.precise_ref(record.id) if record.id in self.points else None
            point, is_new = self.points.upsert(record, vector)
            if not is_new:
                self._unlink(point, old_ref)
            self.graph.add_node(point.handle)
            self.forest.add_node(point.handle)
            batch.append(point)
            if not self._recovering:
                self._log_for_replay(record)

        jobs = [self._index_point(point) for point in batch]
        outcomes = self._rescore_all(jobs)

        # A superseded record never gets a job: _validate keeps only the last
        # occurrence of an id and batches run one at a time under the writer lock
        for job, outcome in zip(jobs, outcomes):
            self._commit(job.point, outcome)
            result.degraded_edges += outcome.degraded_count

        if self.rescorer.consume_restored():
            self._recompute_degraded()

        result.rebuilt = self._repair_or_rebuild()

        assignments = self._derive_assignments()
        result.emitted = self.emitter.emit(assignments.values(), force=unchanged)
        self.batches_committed += 1
        self._publish()

        result.accepted = [p.id for p in batch]
        result.unchanged = unchanged
        logger.info(
            f"Committed batch {self.batches_committed}: {len(batch)} inserted, {len(unchanged)} unchanged, "
            f"{len(result.rejected)} rejected, {len(result.emitted)} assignments emitted"
        )

        every = self.settings.snapshot_every
        if self.snapshots is not None and every and self.batches_committed % every == 0 and not self._recovering:
            self._save_snapshot()
        return result

    def _log_for_replay(self, record: PointRecord) -> None:
        if not self._replay_valid:
            return
        if len(self._replay_log) >= REPLAY_LIMIT:
            logger.warning(f"Replay log passed {REPLAY_LIMIT} records; recovery will rebuild instead of replaying")
            self._replay_log = []
            self._replay_valid = False
            return
        self._replay_log.append(record)

    def _unlink(self, point: Point, old_ref: Optional[str]) -> None:
        """Drop stale state of a re-inserted point ahead of processing it as new."""
        invalidate = getattr(self.oracle, "invalidate", None)
        if old_ref is not None and callable(invalidate):
            invalidate(old_ref)
        former = self.graph.remove_node(point.handle)
        self.forest.remove_node(point.handle)
        self._retry.discard(point.handle)
        for other in former:
            self.cores.refresh(other)
        self._touched.update(former)
        self._dirty.update(former)
        self._structural_dirty = True
        logger.info(f"Re-inserting {point.id}: removed {len(former)} candidate edges")

    def _index_point(self, point: Point) -> _RescoreJob:
        if point.handle < len(self.index):
            found = self.index.update(point.handle, point.coarse_vector)
        else:
            found = self.index.insert(point.handle, point.id, point.coarse_vector)
        point.advance(PointState.INDEXED)
        shortlist = found[: self.settings.k_rescale]
        job = _RescoreJob(
            point=point,
            candidates=[self.points.by_handle(h).id for h, _ in shortlist],
            coarse={self.points.by_handle(h).id: d for h, d in shortlist},
        )
        if not self.rescorer.available:
            self._since_probe += 1
            if self._since_probe >= self.settings.probe_interval:
                logger.info(f"Probing precise rescorer with {point.id}")
                self._since_probe = 0
            else:
                job.coarse_only = True
        return job

    def _rescore(self, job: _RescoreJob) -> RescoreOutcome:
        if job.coarse_only:
            return self.rescorer.coarse_only(job.point.id, job.candidates, job.coarse)
        return self.rescorer.rescore(job.point.id, job.candidates, job.coarse)

    def _rescore_all(self, jobs: list[_RescoreJob]) -> list[RescoreOutcome]:
        futures = [self._pool.submit(self._rescore, job) for job in jobs]
        # Collected in batch order
        return [f.result() for f in futures]

    def _record_edges(self, handle: int, outcome: RescoreOutcome) -> set[int]:
        """Store rescored distances; returns handles whose edges changed."""
        changed: set[int] = set()
        for cid, pair in outcome.distances.items():
            other = self.points.handle_of(cid)
            if other == handle:
                continue
            previous = self.graph.record(handle, other, pair)
            current = self.graph.distance(handle, other)
            if previous is not None and current.distance > previous.distance:
                self._structural_dirty = True
            if previous != current:
                changed.add(other)
        return changed

    def _top_up(self, point: Point) -> RescoreOutcome:
        """Query the index for more neighbors when too few are known."""
        known = self.graph.neighbors(point.handle)
        want = self.cores.needed - len(known)
        found = self.index.search(point.coarse_vector, k=self.cores.needed + len(known) + 1)
        extra = [(h, d) for h, d in found if h != point.handle and h not in known][:want]
        if not extra:
            return RescoreOutcome()
        ids = [self.points.by_handle(h).id for h, _ in extra]
        coarse = {self.points.by_handle(h).id: d for h, d in extra}
        if self.rescorer.available:
            return self.rescorer.rescore(point.id, ids, coarse)
        return self.rescorer.coarse_only(point.id, ids, coarse)

    def _commit(self, point: Point, outcome: RescoreOutcome) -> None:
        handle = point.handle
        affected = self._record_edges(handle, outcome)
        if outcome.degraded_count and not outcome.coarse_only:
            self._retry.add(handle)

        if self.cores.short_of_neighbors(handle) and len(self.points) - 1 > self.graph.degree(handle):
            extra = self._top_up(point)
            affected |= self._record_edges(handle, extra)
            if extra.degraded_count and not extra.coarse_only:
                self._retry.add(handle)

        reweighted = {handle}
        for other in sorted(affected):
            old, new = self.cores.refresh(other)
            if old is not None and new > old:
                self._structural_dirty = True
            if old is None or new != old:
                reweighted.add(other)
        self.cores.refresh(handle)

        touched = affected | {handle}
        self._touched.update(touched)
        self._dirty.update(touched)
        point.advance(PointState.REACHABILITY_CURRENT)

        if self._structural_dirty:
            return
        for h in sorted(reweighted):
            for other in sorted(self.graph.neighbors(h)):
                weight, _ = self.cores.mutual_reachability(h, other)
                self.forest.propose(h, other, weight)

    def _recompute_degraded(self, handles: Optional[set[int]] = None) -> int:
        """Rescore degraded candidate edges with the precise metric."""
        by_source: dict[int, list[int]] = {}
        for a, b in self.graph.degraded_edges():
            if handles is None or a in handles or b in handles:
                by_source.setdefault(a, []).append(b)
        if not by_source:
            return 0

        recomputed = 0
        affected: set[int] = set()
        for a, others in sorted(by_source.items()):
            point = self.points.by_handle(a)
            outcome = self.rescorer.rescore(point.id, [self.points.by_handle(b).id for b in others])
            for cid, pair in outcome.distances.items():
                if pair.degraded:
                    continue
                b = self.points.handle_of(cid)
                self.graph.record(a, b, pair)
                affected.update((a, b))
                recomputed += 1

        for h in sorted(affected):
            self.cores.refresh(h)
        self._touched.update(affected)
        self._dirty.update(affected)
        self._retry -= affected
        self._structural_dirty = True
        logger.info(f"Precise recompute replaced {recomputed} degraded edges over {len(by_source)} points")
        return recomputed

    def recompute_degraded(self) -> int:
        """Public precise recompute pass followed by a full rebuild."""
        with self._lock:
            count = self._recompute_degraded()
            if count:
                self._rebuild("precise recompute")
                self.emitter.emit(self._derive_assignments().values())
                self._publish()
            return count

    def _repair_or_rebuild(self) -> bool:
        total = len(self.points)
        fraction = len(self._touched) / total if total else 0.0
        if self._structural_dirty:
            self._rebuild("structural change")
            return True
        if fraction > self.settings.rebuild_threshold:
            self._rebuild(f"touched fraction {fraction:.2f} > {self.settings.rebuild_threshold:.2f}")
            return True
        try:
            self._check_invariants()
        except InvariantViolation as e:
            logger.error(f"Invariant violation after local repair: {e}")
            self._recover()
            return True
        return False

    def _check_invariants(self) -> None:
        self.forest.check_acyclic()
        self.forest.check_components(self.graph.component_count([p.handle for p in self.points]))

    def _rebuild(self, reason: str) -> None:
        if self._retry and self.rescorer.available:
            self._recompute_degraded(set(self._retry))
            self._retry &= {h for edge in self.graph.degraded_edges() for h in edge}
        for point in self.points:
            self.cores.refresh(point.handle)
        handles = [p.handle for p in self.points]
        self.forest.rebuild(handles, self.cores.weighted_edges())
        self._check_invariants()

        self.rebuild_generation += 1
        self._touched.clear()
        self._structural_dirty = False
        self._components.clear()
        logger.info(
            f"Full rebuild #{self.rebuild_generation} ({reason}): {len(handles)} points, "
            f"{len(self.graph)} candidate edges, {len(self.forest)} forest edges"
        )

    def _recover(self) -> None:
        """Restore the last snapshot and replay, or rebuild from candidate edges."""
        if self._replay_valid and self.snapshots.exists() and not self._recovering:
            replay = list(self._replay_log)
            logger.error(f"Recovering from last snapshot and replaying {len(replay)} records")
            self.last_recovery = "replay"
            self._load_snapshot()
            self._recovering = True
            try:
                if replay:
                    self._process_batch(replay)
            finally:
                self._recovering = False
            self._replay_log = replay
            return
        logger.error("Recovering by full rebuild from candidate edges")
        self.last_recovery = "rebuild"
        self._rebuild("invariant violation")

    def rebuild(self) -> list[ClusterAssignment]:
        """Force a full rebuild; returns the assignments it changed."""
        with self._lock:
            self._rebuild("requested")
            emitted = self.emitter.emit(self._derive_assignments().values())
            self._publish()
            return emitted

    # Condensation and assignment

    def _derive_assignments(self) -> dict[str, ClusterAssignment]:
        handles = [p.handle for p in self.points]
        self.dendrogram = build_dendrogram(handles, self.forest.edges())
        dirty = self._dirty | self.forest.changed

        components: dict[tuple[int, ...], ComponentClustering] = {}
        recomputed = 0
        for root in self.dendrogram.roots:
            members = tuple(self.dendrogram.members(root))
            cached = self._components.get(members)
            if cached is None or any(h in dirty for h in members):
                cached = condense_component(self.dendrogram, root, self.settings.min_cluster_size)
                recomputed += 1
            components[members] = cached
        self._components = components
        self._dirty.clear()
        self.forest.changed.clear()

        derived: list[tuple[list[int], tuple[ComponentClustering, int]]] = []
        for component in components.values():
            for candidate in component.selected:
                members = component.members_of(candidate.index)
                if members:
                    derived.append((members, (component, candidate.index)))

        clusters: list[FlatCluster] = []
        labels: dict[int, tuple[int, float]] = {}
        for cluster_id, members, (component, index) in self.cluster_ids.assign(derived):
            candidate = component.candidates[index]
            clusters.append(
                FlatCluster(
                    cluster_id=cluster_id,
                    members=members,
                    stability=candidate.stability,
                    birth_distance=candidate.birth_distance,
                    death_distance=candidate.death_distance,
                )
            )
            for h in members:
                labels[h] = (cluster_id, component.probabilities[h])

        degraded_points = self._degraded_handles()
        assignments: dict[str, ClusterAssignment] = {}
        for point in self.points:
            cluster_id, probability = labels.get(point.handle, (NOISE, 0.0))
            if point.state is PointState.REACHABILITY_CURRENT:
                point.advance(PointState.ASSIGNED)
            assignments[point.id] = ClusterAssignment(
                point_id=point.id,
                cluster_id=cluster_id,
                membership_probability=probability,
                degraded=point.handle in degraded_points,
                insertion_sequence=point.insertion_sequence,
                rebuild_generation=self.rebuild_generation,
            )

        self._clusters = sorted(clusters, key=lambda c: c.cluster_id)
        self._assignments = assignments
        logger.debug(
            f"Derived {len(clusters)} clusters from {len(components)} components ({recomputed} recondensed)"
        )
        return assignments

    def _publish(self) -> None:
        """Swap in the index snapshot and counters that readers see."""
        self.index.publish()
        self._stats = self._collect_stats()

    def _degraded_handles(self) -> set[int]:
        out = {h for h, flag in self.cores.degraded.items() if flag}
        for a, b in self.graph.degraded_edges():
            out.update((a, b))
        return out

    # Reader operations

    def assignment_for(self, point_id: str) -> Optional[ClusterAssignment]:
        return self._assignments.get(point_id)

    def assignments(self) -> dict[str, ClusterAssignment]:
        return dict(self._assignments)

    def labels(self) -> dict[str, int]:
        return {pid: a.cluster_id for pid, a in self._assignments.items()}

    def clusters(self) -> list[ClusterSummary]:
        return [
            ClusterSummary(
                cluster_id=c.cluster_id,
                members=[self.points.by_handle(h).id for h in c.members],
                stability=c.stability,
                birth_distance=c.birth_distance,
                death_distance=c.death_distance,
            )
            for c in self._clusters
        ]

    def neighbors(self, point_id: str, k: int = 10) -> list[tuple[str, float]]:
        """Approximate coarse neighbors from the published snapshot (point itself excluded)."""
        vector = self.points.coarse_vector(point_id)
        found = self.index.snapshot().query(vector, k + 1)
        return [(pid, d) for pid, d in found if pid != point_id][:k]

    def point_ids(self) -> list[str]:
        return [p.id for p in self.points]

    def core_distance(self, point_id: str) -> float:
        return self.cores.get(self.points.handle_of(point_id))

    def candidate_edges(self) -> list[tuple[str, str, PairDistance]]:
        return [
            (self.points.by_handle(a).id, self.points.by_handle(b).id, pair) for a, b, pair in self.graph.edges()
        ]

    def degraded_edges(self) -> list[tuple[str, str]]:
        return [(self.points.by_handle(a).id, self.points.by_handle(b).id) for a, b in self.graph.degraded_edges()]

    def health(self) -> dict:
        """Counters published by the last write cycle plus live oracle health."""
        return {
            **self._stats,
            "oracle": self.rescorer.health_snapshot(),
            "degraded_mode": not self.rescorer.available,
        }

    def _collect_stats(self) -> dict:
        total = len(self.points)
        return {
            "points": total,
            "candidate_edges": len(self.graph),
            "forest_edges": len(self.forest),
            "degraded_edges": len(self.graph.degraded_edges()),
            "degraded_points": len(self._degraded_handles()),
            "clusters": len(self._clusters),
            "rebuild_generation": self.rebuild_generation,
            "batches_committed": self.batches_committed,
            "touched_fraction": (len(self._touched) / total) if total else 0.0,
            "index_version": self.index.snapshot().version,
            "last_recovery": self.last_recovery,
        }

    # Persistence

    def save_snapshot(self) -> None:
        """Persist a snapshot now (requires snapshot_dir)."""
        with self._lock:
            self._save_snapshot()

    def _save_snapshot(self) -> None:
        if self.snapshots is None:
            raise ValueError("snapshot_dir is not configured")
        index_state, vectors = self.index.export_state()
        edges = np.array(
            [(a, b, pair.distance, float(pair.degraded)) for a, b, pair in self.graph.edges()],
            dtype=np.float64,
        ).reshape(-1, 4)
        arrays = {
            "vectors": vectors,
            "candidate_edges": edges,
            "forest": self.forest.to_array(),
            "dendrogram": self.dendrogram.to_array(),
        }
        documents = {
            "points": {
                "dimension": self.points.dimension,
                "next_sequence": self.points.next_sequence,
                "points": [
                    {
                        "id": p.id,
                        "precise_ref": p.precise_ref,
                        "insertion_sequence": p.insertion_sequence,
                        "generation": p.generation,
                    }
                    for p in self.points
                ],
            },
            "index": index_state,
            "engine": {
                "rebuild_generation": self.rebuild_generation,
                "batches_committed": self.batches_committed,
                "leaves": self.dendrogram.leaves,
                "touched": sorted(self._touched),
                "retry": sorted(self._retry),
                "cluster_ids": self.cluster_ids.to_dict(),
            },
            "assignments": {pid: a.model_dump() for pid, a in self.emitter.current.items()},
        }
        self.snapshots.save(arrays, documents)
        self._replay_log = []
        self._replay_valid = True

    def restore(self) -> None:
        """
        Resume from the persisted snapshot.

        Raises:
            SnapshotCorruption: the snapshot is missing or fails verification
        """
        with self._lock:
            if self.snapshots is None:
                raise ValueError("snapshot_dir is not configured")
            self._load_snapshot()
            self._publish()

    def _load_snapshot(self) -> None:
        arrays, documents = self.snapshots.load()
        try:
            points_doc = documents["points"]
            engine_doc = documents["engine"]
            vectors = arrays["vectors"]
            edges = arrays["candidate_edges"]
            records = points_doc["points"]
            if vectors.shape[0] != len(records):
                raise SnapshotCorruption(f"Snapshot has {len(records)} points but {vectors.shape[0]} vectors")

            self.points.points = [
                Point(
                    handle=i,
                    id=r["id"],
                    coarse_vector=np.asarray(vectors[i], dtype=np.float32),
                    precise_ref=r["precise_ref"],
                    insertion_sequence=r["insertion_sequence"],
                    state=PointState.ASSIGNED,
                    generation=r["generation"],
                )
                for i, r in enumerate(records)
            ]
            self.points.handles = {p.id: p.handle for p in self.points.points}
            self.points.dimension = points_doc["dimension"]
            self.points.next_sequence = points_doc["next_sequence"]

            self.index = NeighborIndex.from_state(documents["index"], vectors)

            self.graph = CandidateGraph()
            for p in self.points:
                self.graph.add_node(p.handle)
            for a, b, distance, degraded in edges:
                self.graph.record(int(a), int(b), PairDistance(float(distance), bool(degraded)))
            self.cores = CoreDistanceTable(self.graph, self.settings.core_k)
            for p in self.points:
                self.cores.refresh(p.handle)

            handles = [p.handle for p in self.points]
            self.forest = SpanningForest.from_array(handles, arrays["forest"])
            self.dendrogram = dendrogram_from_array(engine_doc["leaves"], arrays["dendrogram"])
            self.cluster_ids = ClusterIdRegistry.from_dict(engine_doc["cluster_ids"])
            self.rebuild_generation = engine_doc["rebuild_generation"]
            self.batches_committed = engine_doc["batches_committed"]
            self._touched = set(engine_doc["touched"])
            self._retry = set(engine_doc["retry"])
            self.emitter.current = {
                pid: ClusterAssignment.model_validate(a) for pid, a in documents["assignments"].items()
            }
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise SnapshotCorruption(f"Inconsistent snapshot contents: {e}") from e

        self._structural_dirty = False
        self._components.clear()
        self._dirty = set(handles)
        self.forest.changed.clear()
        self._replay_log = []
        self._replay_valid = True
        self._check_invariants()
        self._derive_assignments()
        logger.info(f"Restored {len(self.points)} points at rebuild generation {self.rebuild_generation}")

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        self.rescorer.close()


def build_engine(
    settings: Optional[ClusteringSettings] = None,
    resolver: Optional[Resolver] = None,
    similarity: Similarity = maxsim_similarity,
    sinks: Optional[Iterable[AssignmentSink]] = None,
) -> IncrementalClusterEngine:
    """
    Wire an engine with the default token-rescoring oracle.

    Args:
        settings: Settings (read from the environment when omitted)
        resolver: precise_ref -> token matrix; defaults to ``.npy`` files under
            ``settings.precise_root``
        similarity: Precise similarity between two token matrices
        sinks: Assignment sinks

    Raises:
        ValueError: no resolver given and no precise_root configured
    """
    settings = settings or load_settings()
    if resolver is None:
        if settings.precise_root is None:
            raise ValueError("Either a resolver or MAILSIFT_PRECISE_ROOT is required")
        resolver = NpyDirectoryResolver(settings.precise_root)

    points = PointRegistry()
    oracle = TokenRescoringOracle(
        points,
        resolver,
        similarity=similarity,
        transform=settings.score_transform,
        coarse_metric=settings.coarse_metric,
        timeout_s=settings.rescore_timeout_s,
        max_workers=settings.rescore_workers,
    )
    return IncrementalClusterEngine(settings, oracle, points=points, sinks=sinks)

"""
Assignment emission to downstream collaborators.

Assignments are keyed by ``point_id`` so every sink is an idempotent upsert.
Delivery is at-least-once: a sink that raises keeps its undelivered batch and
gets it again, merged with newer assignments, on the next emission.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol

from mailsift.clustering.models import ClusterAssignment

logger = logging.getLogger(__name__)


class AssignmentSink(Protocol):
    name: str

    def write(self, assignments: list[ClusterAssignment]) -> None: ...


class InMemorySink:
    """Latest assignment per point id, plus the raw delivery log."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self.latest: dict[str, ClusterAssignment] = {}
        self.deliveries: list[list[ClusterAssignment]] = []

    def write(self, assignments: list[ClusterAssignment]) -> None:
        self.deliveries.append(list(assignments))
        for a in assignments:
            self.latest[a.point_id] = a


class JsonlSink:
    """Append one JSON object per assignment; consumers keep the last line per point_id."""

    def __init__(self, path: Path, name: str = "jsonl"):
        self.name = name
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, assignments: list[ClusterAssignment]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            for a in assignments:
                f.write(json.dumps(a.model_dump()) + "\n")

    def read_latest(self) -> dict[str, ClusterAssignment]:
        latest: dict[str, ClusterAssignment] = {}
        if not self.path.exists():
            return latest
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    a = ClusterAssignment.model_validate_json(line)
                    latest[a.point_id] = a
        return latest


class SqliteSink:
    """Upsert assignments into a SQLite table keyed by point_id."""

    def __init__(self, db_path: Path, name: str = "sqlite"):
        self.name = name
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cluster_assignments (
                    point_id TEXT PRIMARY KEY,
                    cluster_id INTEGER NOT NULL,
                    membership_probability REAL NOT NULL,
                    degraded INTEGER NOT NULL DEFAULT 0,
                    insertion_sequence INTEGER NOT NULL,
                    rebuild_generation INTEGER NOT NULL
                )
            """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_cluster_assignments_cluster
                ON cluster_assignments(cluster_id)
            """
            )
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
        finally:
            conn.close()

    def write(self, assignments: list[ClusterAssignment]) -> None:
        with self.get_connection() as conn:
            conn.executemany(
                """
                INSERT INTO cluster_assignments
                (point_id, cluster_id, membership_probability, degraded, insertion_sequence, rebuild_generation)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(point_id) DO UPDATE SET
                    cluster_id = excluded.cluster_id,
                    membership_probability = excluded.membership_probability,
                    degraded = excluded.degraded,
                    insertion_sequence = excluded.insertion_sequence,
                    rebuild_generation = excluded.rebuild_generation
            """,
                [
                    (
                        a.point_id,
                        a.cluster_id,
                        a.membership_probability,
                        int(a.degraded),
                        a.insertion_sequence,
                        a.rebuild_generation,
                    )
                    for a in assignments
                ],
            )
            conn.commit()

    def get(self, point_id: str) -> Optional[ClusterAssignment]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM cluster_assignments WHERE point_id = ?", (point_id,)
            ).fetchone()
        if row is None:
            return None
        return ClusterAssignment(
            point_id=row["point_id"],
            cluster_id=row["cluster_id"],
            membership_probability=row["membership_probability"],
            degraded=bool(row["degraded"]),
            insertion_sequence=row["insertion_sequence"],
            rebuild_generation=row["rebuild_generation"],
        )

    def count(self) -> int:
        with self.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM cluster_assignments").fetchone()[0]


class AssignmentEmitter:
    """
    Tracks the last assignment per point and fans changed ones out to sinks.
    """

    def __init__(self, sinks: Optional[Iterable[AssignmentSink]] = None):
        self.sinks: list[AssignmentSink] = list(sinks or [])
        self.current: dict[str, ClusterAssignment] = {}
        self._pending: dict[str, dict[str, ClusterAssignment]] = {}
        self._lock = threading.Lock()
        self.emitted_total = 0

    def add_sink(self, sink: AssignmentSink) -> None:
        with self._lock:
            self.sinks.append(sink)

    def get(self, point_id: str) -> Optional[ClusterAssignment]:
        return self.current.get(point_id)

    def pending_count(self, sink_name: str) -> int:
        return len(self._pending.get(sink_name, {}))

    def emit(self, assignments: Iterable[ClusterAssignment], force: Iterable[str] = ()) -> list[ClusterAssignment]:
        """
        Publish assignments whose label, probability or degraded flag changed.

        Args:
            assignments: Candidate assignments from the latest derivation
            force: Point ids to publish even if unchanged (duplicate inserts)

        Returns:
            The assignments that were published
        """
        force = set(force)
        changed: list[ClusterAssignment] = []
        with self._lock:
            for a in assignments:
                if a.point_id in force or not a.same_result(self.current.get(a.point_id)):
                    changed.append(a)
                self.current[a.point_id] = a

            for sink in self.sinks:
                batch = self._pending.pop(sink.name, {})
                for a in changed:
                    batch[a.point_id] = a
                if not batch:
                    continue
                try:
                    sink.write(list(batch.values()))
                except Exception as e:
                    logger.warning(
                        f"Sink '{sink.name}' failed to accept {len(batch)} assignments, will retry: {e}"
                    )
                    self._pending[sink.name] = batch

            self.emitted_total += len(changed)
        return changed

    def flush(self) -> int:
        """Retry pending deliveries without new assignments; returns how many remain pending."""
        self.emit([])
        return sum(len(batch) for batch in self._pending.values())

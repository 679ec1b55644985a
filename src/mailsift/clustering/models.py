"""
Data models for incremental clustering.

Wire-facing records (input points, emitted assignments, cluster summaries) are
Pydantic models; mutable engine state uses dataclasses keyed by integer handles.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, Optional

import numpy as np
from pydantic import BaseModel, Field, ValidationError, field_validator

from mailsift.clustering.errors import MalformedInput

NOISE = -1

_PRECISE_REF_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/@+-]*$")


class PointRecord(BaseModel):
    """One record from the embedding producer."""

    id: str = Field(..., min_length=1)
    coarse_vector: list[float] = Field(..., min_length=1)
    precise_ref: str = Field(..., description="Opaque reference resolvable by the distance oracle")

    @field_validator("precise_ref")
    @classmethod
    def _check_precise_ref(cls, value: str) -> str:
        if not _PRECISE_REF_PATTERN.match(value) or ".." in value:
            raise ValueError(f"Unresolvable precise_ref format: {value!r}")
        return value

    @classmethod
    def parse(cls, raw: "PointRecord | Mapping[str, Any]") -> "PointRecord":
        """Coerce a mapping into a record, raising MalformedInput on failure."""
        if isinstance(raw, PointRecord):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            point_id = raw.get("id") if isinstance(raw, Mapping) else None
            raise MalformedInput(f"Invalid point record: {e.errors()[0]['msg']}", point_id=point_id) from e


class ClusterAssignment(BaseModel):
    """Assignment emitted downstream, keyed by point_id for idempotent upsert."""

    point_id: str
    cluster_id: int  # NOISE (-1) or a selected cluster id
    membership_probability: float = Field(..., ge=0.0, le=1.0)
    degraded: bool = False
    insertion_sequence: int
    rebuild_generation: int = 0

    @property
    def is_noise(self) -> bool:
        return self.cluster_id == NOISE

    def same_result(self, other: Optional["ClusterAssignment"]) -> bool:
        """True when other carries the same label, probability and flag."""
        if other is None:
            return False
        return (
            self.cluster_id == other.cluster_id
            and abs(self.membership_probability - other.membership_probability) < 1e-9
            and self.degraded == other.degraded
        )


class ClusterSummary(BaseModel):
    """A selected flat cluster."""

    cluster_id: int
    members: list[str]
    stability: float
    birth_distance: float
    death_distance: float

    @property
    def size(self) -> int:
        return len(self.members)


class PointState(str, Enum):
    PENDING = "pending"
    INDEXED = "indexed"
    REACHABILITY_CURRENT = "reachability_current"
    ASSIGNED = "assigned"


# Allowed forward transitions; a re-insert restarts at PENDING
_TRANSITIONS = {
    PointState.PENDING: {PointState.INDEXED},
    PointState.INDEXED: {PointState.REACHABILITY_CURRENT},
    PointState.REACHABILITY_CURRENT: {PointState.ASSIGNED},
    PointState.ASSIGNED: {PointState.PENDING, PointState.ASSIGNED},
}


@dataclass
class Point:
    """Engine-side point state, addressed by its stable handle."""

    handle: int
    id: str
    coarse_vector: np.ndarray
    precise_ref: str
    insertion_sequence: int
    state: PointState = PointState.PENDING
    generation: int = 0

    def advance(self, new_state: PointState) -> None:
        if new_state is not PointState.PENDING and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Point {self.id}: illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def matches(self, vector: np.ndarray, precise_ref: str) -> bool:
        """True when the (validated) payload is exactly this point's payload."""
        return self.precise_ref == precise_ref and np.array_equal(self.coarse_vector, vector)


@dataclass
class PointRegistry:
    """Arena of points: id -> handle and handle -> Point."""

    dimension: Optional[int] = None
    points: list[Point] = field(default_factory=list)
    handles: dict[str, int] = field(default_factory=dict)
    next_sequence: int = 0

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Point]:
        return iter(self.points)

    def __contains__(self, point_id: str) -> bool:
        return point_id in self.handles

    def get(self, point_id: str) -> Optional[Point]:
        handle = self.handles.get(point_id)
        return None if handle is None else self.points[handle]

    def by_handle(self, handle: int) -> Point:
        return self.points[handle]

    def handle_of(self, point_id: str) -> int:
        try:
            return self.handles[point_id]
        except KeyError:
            raise KeyError(f"Unknown point id: {point_id}") from None

    def coarse_vector(self, point_id: str) -> np.ndarray:
        return self.points[self.handle_of(point_id)].coarse_vector

    def precise_ref(self, point_id: str) -> str:
        return self.points[self.handle_of(point_id)].precise_ref

    def check_vector(self, record: PointRecord, normalize: bool) -> np.ndarray:
        """Validate dimensionality and values; returns the stored float32 vector."""
        vector = np.asarray(record.coarse_vector, dtype=np.float32)
        if self.dimension is not None and vector.shape[0] != self.dimension:
            raise MalformedInput(
                f"Vector dimension {vector.shape[0]} doesn't match index dimension {self.dimension}",
                point_id=record.id,
            )
        if not np.all(np.isfinite(vector)):
            raise MalformedInput("Vector contains non-finite values", point_id=record.id)
        if normalize:
            norm = float(np.linalg.norm(vector))
            if norm < 1e-10:
                raise MalformedInput("Zero-norm vector cannot be compared by cosine", point_id=record.id)
            vector = vector / norm
        return vector

    def upsert(self, record: PointRecord, vector: np.ndarray) -> tuple[Point, bool]:
        """
        Register a record, returning (point, is_new).

        A known id keeps its handle; its payload is replaced and its generation bumped.
        """
        if self.dimension is None:
            self.dimension = int(vector.shape[0])

        sequence = self.next_sequence
        self.next_sequence += 1

        existing = self.get(record.id)
        if existing is not None:
            existing.coarse_vector = vector
            existing.precise_ref = record.precise_ref
            existing.insertion_sequence = sequence
            existing.generation += 1
            existing.advance(PointState.PENDING)
            return existing, False

        point = Point(
            handle=len(self.points),
            id=record.id,
            coarse_vector=vector,
            precise_ref=record.precise_ref,
            insertion_sequence=sequence,
        )
        self.points.append(point)
        self.handles[record.id] = point.handle
        return point, True

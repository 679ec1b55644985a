"""
API request/response schemas for the clustering diagnostics server.
"""

from typing import Optional

from pydantic import BaseModel, Field

from mailsift.clustering.models import ClusterAssignment, ClusterSummary


# Request schemas


class IngestRequest(BaseModel):
    """A batch of point records from the embedding producer."""

    points: list[dict] = Field(..., description="Records with id, coarse_vector and precise_ref")


# Response schemas


class RejectedPoint(BaseModel):
    point_id: Optional[str] = None
    reason: str


class IngestResponse(BaseModel):
    """Result of one insertion batch."""

    accepted: list[str]
    unchanged: list[str] = Field(default_factory=list, description="Identical re-inserts (re-emitted only)")
    rejected: list[RejectedPoint] = Field(default_factory=list)
    emitted: list[ClusterAssignment] = Field(default_factory=list)
    rebuilt: bool = False
    degraded_edges: int = 0


class NeighborInfo(BaseModel):
    point_id: str
    coarse_distance: float


class NeighborsResponse(BaseModel):
    point_id: str
    neighbors: list[NeighborInfo]


class ClustersResponse(BaseModel):
    clusters: list[ClusterSummary]
    noise_points: int


class OracleHealthInfo(BaseModel):
    available: bool
    consecutive_failures: int
    total_calls: int
    failed_calls: int
    timeouts: int
    degraded_pairs: int
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    """Engine and precise rescorer health."""

    oracle: OracleHealthInfo
    degraded_mode: bool
    points: int
    candidate_edges: int
    forest_edges: int
    degraded_edges: int
    degraded_points: int
    clusters: int
    rebuild_generation: int
    batches_committed: int
    touched_fraction: float
    index_version: int
    last_recovery: Optional[str] = None


class RebuildResponse(BaseModel):
    rebuild_generation: int
    clusters: int
    changed_assignments: int


class SuccessResponse(BaseModel):
    success: bool
    message: str

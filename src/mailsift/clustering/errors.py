"""
Error taxonomy for the clustering core.

Only the update manager decides how to recover from these; lower layers raise
and let it handle them.
"""

from __future__ import annotations

from typing import Optional


class ClusteringError(Exception):
    """Base class for clustering core errors."""


class MalformedInput(ClusteringError, ValueError):
    """A point record that cannot be inserted (bad vector or precise_ref)."""

    def __init__(self, message: str, point_id: Optional[str] = None):
        super().__init__(message)
        self.point_id = point_id


class OracleTimeout(ClusteringError, TimeoutError):
    """Precise rescoring did not finish before its deadline."""


class OracleUnavailable(ClusteringError):
    """The precise rescorer has failed repeatedly and is treated as down."""


class InvariantViolation(ClusteringError):
    """A structural invariant of the spanning forest no longer holds."""


class SnapshotCorruption(ClusteringError):
    """A persisted snapshot is missing, truncated or fails its checksum."""

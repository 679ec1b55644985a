"""
Settings for the clustering core.

The surrounding pipeline owns configuration loading; this module gives the core
a typed, validated settings model plus an environment loader so the engine and
the diagnostics server can run standalone. Every variable is prefixed with
``MAILSIFT_`` (e.g. ``MAILSIFT_MIN_CLUSTER_SIZE=5``).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "MAILSIFT_"


class ClusteringSettings(BaseModel):
    """Tunable parameters consumed by the incremental clustering engine."""

    # Neighbor index
    coarse_metric: Literal["cosine", "euclidean"] = Field(
        default="cosine", description="Metric used on coarse vectors for shortlisting"
    )
    index_degree: int = Field(default=16, ge=2, description="Max out-degree on upper layers (2x on layer 0)")
    ef_construction: int = Field(default=64, ge=1, description="Beam width while inserting")
    ef_search: int = Field(default=32, ge=1, description="Beam width for read queries")

    # Rescoring
    k_rescale: int = Field(default=24, ge=1, description="Candidates sent to the precise rescorer per insert")
    rescore_timeout_s: float = Field(default=2.0, gt=0, description="Deadline for one rescoring call")
    rescore_workers: int = Field(default=4, ge=1, description="Thread pool size for rescoring")
    score_transform: Literal["reciprocal", "neg_log"] = Field(
        default="reciprocal", description="Similarity -> distance transform"
    )
    unavailable_after: int = Field(default=3, ge=1, description="Consecutive failed calls before degraded mode")
    probe_interval: int = Field(default=10, ge=1, description="Inserts between probes while degraded")

    # Clustering
    min_cluster_size: int = Field(default=5, ge=2)
    min_samples: Optional[int] = Field(default=None, ge=1, description="Core distance k (defaults to min_cluster_size)")
    rebuild_threshold: float = Field(default=0.3, gt=0, le=1, description="Touched fraction that forces a rebuild")

    # Precise representations (`<precise_root>/<precise_ref>.npy`)
    precise_root: Optional[Path] = None

    # Persistence
    snapshot_dir: Optional[Path] = None
    snapshot_every: int = Field(default=0, ge=0, description="Batches between snapshots (0 disables)")

    random_seed: int = 42

    @model_validator(mode="after")
    def _check_beam_widths(self) -> "ClusteringSettings":
        if self.ef_construction < self.k_rescale:
            # The layer-0 beam is the candidate pool, it must hold k_rescale entries
            self.ef_construction = self.k_rescale
        return self

    @property
    def core_k(self) -> int:
        """k used for core distances, counting the point itself."""
        return self.min_samples or self.min_cluster_size


def _coerce(raw: str) -> object:
    value = raw.strip()
    if value.lower() in {"none", "null", ""}:
        return None
    return value


def load_settings(env: Optional[Mapping[str, str]] = None, **overrides) -> ClusteringSettings:
    """
    Build settings from ``MAILSIFT_*`` environment variables.

    Args:
        env: Mapping to read instead of ``os.environ`` (a ``.env`` file is only
            loaded when reading the real environment)
        **overrides: Explicit values that win over the environment

    Returns:
        Validated ClusteringSettings
    """
    if env is None:
        load_dotenv()
        env = os.environ

    values: dict[str, object] = {}
    for name in ClusteringSettings.model_fields:
        key = f"{ENV_PREFIX}{name.upper()}"
        if key in env:
            values[name] = _coerce(env[key])

    values.update(overrides)
    return ClusteringSettings(**values)

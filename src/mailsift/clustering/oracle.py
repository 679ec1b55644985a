"""
Two-tier distance oracle.

The clustering core only knows the ``DistanceOracle`` capability: a cheap
coarse distance and a batch precise rescoring. ``TokenRescoringOracle`` is the
default implementation over token-embedding matrices; ``RescoringService``
wraps any oracle with deadlines, coarse fallback and health tracking.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol, Sequence

import numpy as np

from mailsift.clustering.errors import MalformedInput, OracleTimeout, OracleUnavailable
from mailsift.clustering.metrics import (
    COARSE_METRICS,
    SCORE_TRANSFORMS,
    ScoreTransform,
    coarse_fallback,
    maxsim_similarity,
)
from mailsift.clustering.models import PointRegistry

logger = logging.getLogger(__name__)

Resolver = Callable[[str], np.ndarray]
Similarity = Callable[[np.ndarray, np.ndarray], float]


class DistanceOracle(Protocol):
    """Capability the clustering core is generic over."""

    def coarse_distance(self, a_id: str, b_id: str) -> float: ...

    def rescore_candidates(self, query_id: str, candidate_ids: Sequence[str]) -> Mapping[str, float]:
        """Precise distances for candidates; may omit candidates it could not score.

        A response may carry a ``deadline_missed`` count of candidates dropped
        because the scoring deadline passed.
        """
        ...


class ScoredCandidates(dict):
    """Partial rescoring response that also reports candidates lost to the deadline."""

    def __init__(self, scored=(), deadline_missed: int = 0):
        super().__init__(scored)
        self.deadline_missed = deadline_missed


def oracle_distance(oracle: DistanceOracle, a_id: str, b_id: str) -> float:
    """Single-pair distance: precise when available, coarse fallback otherwise."""
    scored = oracle.rescore_candidates(a_id, [b_id])
    if b_id in scored:
        return float(scored[b_id])
    return coarse_fallback(oracle.coarse_distance(a_id, b_id))


# Resolvers


class InMemoryResolver:
    """Resolve precise references from a mapping (tests, small corpora)."""

    def __init__(self, representations: Optional[Mapping[str, np.ndarray]] = None):
        self._reps: dict[str, np.ndarray] = dict(representations or {})

    def add(self, precise_ref: str, representation: np.ndarray) -> None:
        self._reps[precise_ref] = np.asarray(representation, dtype=np.float32)

    def __call__(self, precise_ref: str) -> np.ndarray:
        try:
            return self._reps[precise_ref]
        except KeyError:
            raise LookupError(f"No precise representation for {precise_ref!r}") from None


class NpyDirectoryResolver:
    """Resolve ``<root>/<precise_ref>.npy`` token matrices written by the embedding producer."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def __call__(self, precise_ref: str) -> np.ndarray:
        path = (self.root / f"{precise_ref}.npy").resolve()
        if self.root not in path.parents:
            raise MalformedInput(f"precise_ref escapes resolver root: {precise_ref!r}")
        if not path.exists():
            raise LookupError(f"Precise representation not found: {path}")
        return np.load(path, allow_pickle=False)


class _LRUCache:
    """Small thread-safe LRU for resolved representations."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._data: OrderedDict[str, np.ndarray] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
            return value

    def put(self, key: str, value: np.ndarray) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class TokenRescoringOracle:
    """
    Oracle over registered points: coarse metric on coarse vectors, precise
    similarity on resolved token matrices.

    Pairs of one rescoring call are scored on a thread pool. Pairs that raise
    or miss the deadline are left out of the returned mapping; the number lost
    to the deadline is reported as ``deadline_missed``.
    """

    def __init__(
        self,
        points: PointRegistry,
        resolver: Resolver,
        similarity: Similarity = maxsim_similarity,
        transform: str | ScoreTransform = "reciprocal",
        coarse_metric: str = "cosine",
        timeout_s: float = 2.0,
        max_workers: int = 4,
        cache_size: int = 4096,
    ):
        self.points = points
        self.resolver = resolver
        self.similarity = similarity
        self.transform = SCORE_TRANSFORMS[transform] if isinstance(transform, str) else transform
        self._coarse = COARSE_METRICS[coarse_metric]
        self.timeout_s = timeout_s
        self._cache = _LRUCache(cache_size)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rescore-pair")

    def coarse_distance(self, a_id: str, b_id: str) -> float:
        return self._coarse(self.points.coarse_vector(a_id), self.points.coarse_vector(b_id))

    def resolve(self, precise_ref: str) -> np.ndarray:
        cached = self._cache.get(precise_ref)
        if cached is not None:
            return cached
        rep = np.asarray(self.resolver(precise_ref), dtype=np.float32)
        self._cache.put(precise_ref, rep)
        return rep

    def invalidate(self, precise_ref: str) -> None:
        """Drop a cached representation (its point was re-inserted)."""
        self._cache.discard(precise_ref)

    def _score_pair(self, query_rep: np.ndarray, candidate_id: str) -> float:
        candidate_rep = self.resolve(self.points.precise_ref(candidate_id))
        return float(self.transform(self.similarity(query_rep, candidate_rep)))

    def rescore_candidates(self, query_id: str, candidate_ids: Sequence[str]) -> ScoredCandidates:
        if not candidate_ids:
            return ScoredCandidates()

        # Failing to resolve the query fails the whole call
        query_rep = self.resolve(self.points.precise_ref(query_id))

        futures = {
            self._executor.submit(self._score_pair, query_rep, cid): cid for cid in candidate_ids
        }
        done, not_done = wait(futures, timeout=self.timeout_s)
        for future in not_done:
            future.cancel()

        scored: dict[str, float] = {}
        for future, cid in futures.items():
            if future not in done:
                continue
            try:
                scored[cid] = future.result()
            except Exception as e:
                logger.warning(f"Precise rescoring failed for pair ({query_id}, {cid}): {e}")

        if not_done:
            logger.warning(
                f"Precise rescoring for {query_id} hit its {self.timeout_s:.2f}s deadline: "
                f"{len(not_done)}/{len(candidate_ids)} candidates unscored"
            )
        # Preserve the caller's candidate order
        return ScoredCandidates(
            ((cid, scored[cid]) for cid in candidate_ids if cid in scored), deadline_missed=len(not_done)
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


# Service layer


@dataclass
class PairDistance:
    """Final distance for one pair plus whether it came from the coarse fallback."""

    distance: float
    degraded: bool = False


@dataclass
class RescoreOutcome:
    distances: dict[str, PairDistance] = field(default_factory=dict)
    timed_out: bool = False
    coarse_only: bool = False
    failed: bool = False
    error: Optional[str] = None

    @property
    def degraded_count(self) -> int:
        return sum(1 for d in self.distances.values() if d.degraded)


@dataclass
class OracleHealth:
    """Rolling health of the precise rescorer."""

    available: bool = True
    consecutive_failures: int = 0
    total_calls: int = 0
    failed_calls: int = 0
    timeouts: int = 0
    degraded_pairs: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "consecutive_failures": self.consecutive_failures,
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "timeouts": self.timeouts,
            "degraded_pairs": self.degraded_pairs,
            "last_error": self.last_error,
        }


class RescoringService:
    """
    Deadline, fallback and health wrapper around a DistanceOracle.

    Missing candidates in a (partial) oracle response are filled with the
    coarse fallback and flagged degraded. After ``unavailable_after``
    consecutive failed calls the oracle is marked unavailable; the next
    successful call marks it restored.
    """

    def __init__(
        self,
        oracle: DistanceOracle,
        timeout_s: float = 2.0,
        unavailable_after: int = 3,
        max_workers: int = 4,
        fallback: Callable[[float], float] = coarse_fallback,
    ):
        self.oracle = oracle
        self.timeout_s = timeout_s
        self.unavailable_after = unavailable_after
        self.fallback = fallback
        self.health = OracleHealth()
        self._restored_pending = False
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rescore-call")

    @property
    def available(self) -> bool:
        return self.health.available

    def _record(self, success: bool, error: Optional[str] = None, timed_out: bool = False) -> None:
        with self._lock:
            self.health.total_calls += 1
            if timed_out:
                self.health.timeouts += 1
            if success:
                if not self.health.available:
                    logger.info("Precise rescorer restored; scheduling precise recompute of degraded points")
                    self._restored_pending = True
                self.health.available = True
                self.health.consecutive_failures = 0
                return
            self.health.failed_calls += 1
            self.health.consecutive_failures += 1
            self.health.last_error = error
            if self.health.available and self.health.consecutive_failures >= self.unavailable_after:
                self.health.available = False
                logger.error(
                    f"Precise rescorer unavailable after {self.health.consecutive_failures} "
                    f"consecutive failures (last error: {error}); entering coarse-only mode"
                )

    def health_snapshot(self) -> dict:
        with self._lock:
            return self.health.to_dict()

    def consume_restored(self) -> bool:
        """True once after the oracle transitions from unavailable to available."""
        with self._lock:
            restored, self._restored_pending = self._restored_pending, False
            return restored

    def coarse_only(self, query_id: str, candidate_ids: Sequence[str], coarse: Mapping[str, float]) -> RescoreOutcome:
        """Fallback distances for every candidate, all flagged degraded."""
        outcome = RescoreOutcome(coarse_only=True)
        for cid in candidate_ids:
            outcome.distances[cid] = PairDistance(self._fallback_for(query_id, cid, coarse), degraded=True)
        with self._lock:
            self.health.degraded_pairs += len(candidate_ids)
        return outcome

    def _fallback_for(self, query_id: str, cid: str, coarse: Mapping[str, float]) -> float:
        if cid in coarse:
            return self.fallback(coarse[cid])
        return self.fallback(self.oracle.coarse_distance(query_id, cid))

    def call_oracle(self, query_id: str, candidate_ids: Sequence[str]) -> Mapping[str, float]:
        """
        Call the oracle under the service deadline.

        Raises:
            OracleTimeout: the call did not return in time
            OracleUnavailable: the call raised
        """
        future = self._executor.submit(self.oracle.rescore_candidates, query_id, list(candidate_ids))
        try:
            return future.result(timeout=self.timeout_s * 1.5)
        except FutureTimeout:
            future.cancel()
            raise OracleTimeout(f"Rescoring {query_id} exceeded {self.timeout_s:.2f}s") from None
        except Exception as e:
            raise OracleUnavailable(f"Rescoring {query_id} failed: {e}") from e

    def rescore(
        self,
        query_id: str,
        candidate_ids: Sequence[str],
        coarse: Optional[Mapping[str, float]] = None,
    ) -> RescoreOutcome:
        """Precise distances for candidates, with degraded coarse fallback for gaps."""
        coarse = coarse or {}
        if not candidate_ids:
            return RescoreOutcome()

        outcome = RescoreOutcome()
        scored: Mapping[str, float] = {}
        try:
            scored = self.call_oracle(query_id, candidate_ids)
        except OracleTimeout as e:
            outcome.timed_out = True
            outcome.failed = True
            outcome.error = str(e)
            logger.warning(f"{e}; substituting coarse distances")
        except OracleUnavailable as e:
            outcome.failed = True
            outcome.error = str(e)
            logger.warning(f"{e}; substituting coarse distances")

        missed = getattr(scored, "deadline_missed", 0)
        if missed:
            outcome.timed_out = True
            outcome.error = f"{missed}/{len(candidate_ids)} candidates of {query_id} missed the rescoring deadline"

        for cid in candidate_ids:
            value = scored.get(cid)
            if value is not None and np.isfinite(value) and value >= 0:
                outcome.distances[cid] = PairDistance(float(value))
            else:
                outcome.distances[cid] = PairDistance(self._fallback_for(query_id, cid, coarse), degraded=True)

        degraded = outcome.degraded_count
        if degraded == len(candidate_ids):
            # Nothing scored at all counts against availability
            outcome.failed = True
        if degraded and not outcome.failed:
            logger.warning(f"Rescoring {query_id}: {degraded}/{len(candidate_ids)} pairs degraded to coarse")

        self._record(not outcome.failed, error=outcome.error, timed_out=outcome.timed_out)
        with self._lock:
            self.health.degraded_pairs += degraded
        return outcome

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        close = getattr(self.oracle, "close", None)
        if callable(close):
            close()

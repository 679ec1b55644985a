"""
Clustering diagnostics server - FastAPI application over one incremental engine.

Endpoints:
- GET /clustering/health - Oracle availability and engine counters
- POST /clustering/points - Ingest a batch of point records
- GET /clustering/points/{point_id} - Current assignment of a point
- GET /clustering/points/{point_id}/neighbors - Snapshot neighbor query
- GET /clustering/clusters - Selected clusters
- POST /clustering/rebuild - Force a full rebuild
- POST /clustering/snapshot - Persist a snapshot now
"""

import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from mailsift import __version__
from mailsift.clustering.engine import IncrementalClusterEngine, build_engine
from mailsift.clustering.models import ClusterAssignment
from mailsift.common.config import load_settings
from mailsift.common.logging_setup import configure_logging
from mailsift.servers.clustering.schemas import (
    ClustersResponse,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    NeighborInfo,
    NeighborsResponse,
    RebuildResponse,
    RejectedPoint,
    SuccessResponse,
)

logger = logging.getLogger(__name__)


def create_app(engine: Optional[IncrementalClusterEngine] = None) -> FastAPI:
    app = FastAPI(title="Mailsift Clustering Server", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine if engine is not None else build_engine(load_settings())

    @app.on_event("shutdown")
    def _shutdown() -> None:
        engine_obj = getattr(app.state, "engine", None)
        if engine_obj is not None:
            engine_obj.close()

    def get_engine(request: Request) -> IncrementalClusterEngine:
        return request.app.state.engine

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "Mailsift Clustering Server", "version": __version__}

    @app.get("/clustering/health", response_model=HealthResponse)
    def health(engine: IncrementalClusterEngine = Depends(get_engine)):
        return engine.health()

    @app.post("/clustering/points", response_model=IngestResponse)
    def ingest(payload: IngestRequest, engine: IncrementalClusterEngine = Depends(get_engine)):
        """
        Ingest a batch of point records.

        Malformed records are reported in ``rejected``; the request fails with
        422 only when nothing in the batch was usable.
        """
        result = engine.insert_batch(payload.points)
        if result.rejected and not result.accepted and not result.unchanged:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=[{"point_id": pid, "reason": reason} for pid, reason in result.rejected],
            )
        return IngestResponse(
            accepted=result.accepted,
            unchanged=result.unchanged,
            rejected=[RejectedPoint(point_id=pid, reason=reason) for pid, reason in result.rejected],
            emitted=result.emitted,
            rebuilt=result.rebuilt,
            degraded_edges=result.degraded_edges,
        )

    @app.get("/clustering/points/{point_id}", response_model=ClusterAssignment)
    def get_point(point_id: str, engine: IncrementalClusterEngine = Depends(get_engine)):
        assignment = engine.assignment_for(point_id)
        if assignment is None:
            raise HTTPException(status_code=404, detail=f"Point {point_id} not found")
        return assignment

    @app.get("/clustering/points/{point_id}/neighbors", response_model=NeighborsResponse)
    def get_neighbors(
        point_id: str,
        k: int = Query(default=10, ge=1, le=1000),
        engine: IncrementalClusterEngine = Depends(get_engine),
    ):
        if engine.assignment_for(point_id) is None:
            raise HTTPException(status_code=404, detail=f"Point {point_id} not found")
        neighbors = engine.neighbors(point_id, k)
        return NeighborsResponse(
            point_id=point_id,
            neighbors=[NeighborInfo(point_id=pid, coarse_distance=d) for pid, d in neighbors],
        )

    @app.get("/clustering/clusters", response_model=ClustersResponse)
    def list_clusters(engine: IncrementalClusterEngine = Depends(get_engine)):
        noise = sum(1 for a in engine.assignments().values() if a.is_noise)
        return ClustersResponse(clusters=engine.clusters(), noise_points=noise)

    @app.post("/clustering/rebuild", response_model=RebuildResponse)
    def rebuild(engine: IncrementalClusterEngine = Depends(get_engine)):
        changed = engine.rebuild()
        return RebuildResponse(
            rebuild_generation=engine.rebuild_generation,
            clusters=len(engine.clusters()),
            changed_assignments=len(changed),
        )

    @app.post("/clustering/snapshot", response_model=SuccessResponse)
    def snapshot(engine: IncrementalClusterEngine = Depends(get_engine)):
        if engine.snapshots is None:
            raise HTTPException(status_code=409, detail="Snapshots are not configured (set MAILSIFT_SNAPSHOT_DIR)")
        engine.save_snapshot()
        return SuccessResponse(success=True, message=f"Snapshot saved to {engine.snapshots.current}")

    return app


def main() -> None:
    import uvicorn

    configure_logging(log_file=os.getenv("MAILSIFT_LOG_FILE"))
    settings = load_settings()
    engine = build_engine(settings)
    if engine.snapshots is not None and engine.snapshots.exists():
        engine.restore()
    app = create_app(engine)
    host = os.getenv("MAILSIFT_HOST", "127.0.0.1")
    port = int(os.getenv("MAILSIFT_PORT", "8016"))
    logger.info(f"Starting clustering server on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()

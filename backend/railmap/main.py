from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .compute_errors import ComputeError, http_status_for, normalize_reason_code
from .diagnostics import DEFAULT_PAGE_SIZE
from .logging_utils import log_event
from .snapshot_service import RailwaySnapshotService
from .stores import JsonFileSnapshotStore, JsonFileSourceStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.snapshots = RailwaySnapshotService(JsonFileSourceStore(), JsonFileSnapshotStore())
    yield


app = FastAPI(title="Railway Snapshot Compute", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def snapshot_service(request: Request) -> RailwaySnapshotService:
    service: RailwaySnapshotService | None = getattr(request.app.state, "snapshots", None)  # type: ignore[attr-defined]
    if service is None:
        raise HTTPException(status_code=503, detail="snapshot service not initialised")
    return service


SnapshotServiceDep = Annotated[RailwaySnapshotService, Depends(snapshot_service)]


def _http_error(e: ComputeError) -> HTTPException:
    reason_code = normalize_reason_code(e.reason_code)
    return HTTPException(
        status_code=http_status_for(reason_code),
        detail={"reason_code": reason_code, "message": e.message, "details": e.details},
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/servers/{server_id}/{network_variant}/compute")
async def compute_server(server_id: str, network_variant: str, service: SnapshotServiceDep) -> dict[str, Any]:
    t0 = time.perf_counter()
    try:
        summary = await service.compute_all_for_server(server_id, network_variant)
    except ComputeError as e:
        raise _http_error(e) from e
    log_event(
        "compute_server_request",
        server_id=server_id,
        network_variant=network_variant,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return summary


@app.post("/servers/{server_id}/{network_variant}/routes/{route_id}/compute")
async def compute_route(
    server_id: str,
    network_variant: str,
    route_id: str,
    service: SnapshotServiceDep,
    dimension: str | None = None,
) -> dict[str, Any]:
    try:
        return await service.compute_route(server_id, network_variant, route_id, dimension=dimension)
    except ComputeError as e:
        raise _http_error(e) from e


@app.get("/diagnostics/rails/{job_id}")
async def rail_diagnostics(
    job_id: str,
    service: SnapshotServiceDep,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
    only_errors: bool = False,
) -> dict[str, Any]:
    try:
        return service.rail_diagnostics_page(
            job_id,
            page=page,
            page_size=page_size,
            search=search,
            only_errors=only_errors,
        )
    except ComputeError as e:
        raise _http_error(e) from e

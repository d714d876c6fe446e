from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .campus_router import CampusRouter
from .hybrid_router import HybridRouter, route_summary
from .logging_utils import log_event
from .models import PathStatusResponse, RouteRequest, RouteResponse
from .path_store import PathStore, build_path_store
from .routing_errors import RoutingError
from .routing_osrm import OSRMClient
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.osrm = OSRMClient(base_url=settings.osrm_base_url, profile=settings.osrm_profile)
    app.state.path_store = None
    try:
        app.state.path_store = build_path_store()
        log_event(
            "app_started",
            osrm_base_url=settings.osrm_base_url,
            osrm_profile=settings.osrm_profile,
            path_store=settings.path_store,
        )
        yield
    finally:
        await app.state.osrm.aclose()
        if app.state.path_store is not None:
            await app.state.path_store.aclose()


app = FastAPI(title="Campus Router", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def osrm_client(request: Request) -> OSRMClient:
    osrm: OSRMClient | None = getattr(request.app.state, "osrm", None)  # type: ignore[attr-defined]
    if osrm is None:
        raise HTTPException(status_code=503, detail="OSRM client not initialised")
    return osrm


def path_store(request: Request) -> PathStore:
    store: PathStore | None = getattr(request.app.state, "path_store", None)  # type: ignore[attr-defined]
    if store is None:
        raise HTTPException(status_code=503, detail="path store not initialised")
    return store


OSRMDep = Annotated[OSRMClient, Depends(osrm_client)]
PathStoreDep = Annotated[PathStore, Depends(path_store)]


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Campus router is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/route", response_model=RouteResponse)
async def compute_route(req: RouteRequest, osrm: OSRMDep, store: PathStoreDep) -> RouteResponse:
    router = HybridRouter(path_store=store, external=osrm)
    route = await router.route(req.start, req.end, deadline_ms=req.deadline_ms)
    return RouteResponse.from_route(route, route_summary(route))


@app.get("/paths/status", response_model=PathStatusResponse)
async def paths_status(store: PathStoreDep) -> PathStatusResponse:
    try:
        paths = await store.list_active_paths()
    except RoutingError as e:
        log_event("path_store_failed", level=logging.WARNING, reason_code=e.reason_code, error=e.message)
        paths = []
    graph = CampusRouter().build_graph(paths)
    return PathStatusResponse(has_campus_paths=bool(paths), graph=graph.stats())

"""FastAPI app: serve package, dependency and build-simulation queries over HTTP."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from crategraph import PackageGraph, load_graph, package_ids_by_name, simulate_build
from crategraph.core.ids import DependencyDirection
from crategraph.core.query import LinkFilter
from crategraph.errors import CrateGraphError, UnknownFeatureIdError, UnknownPackageIdError
from crategraph.logging_config import setup_logging

logger = logging.getLogger(__name__)

METADATA_ENV = "CRATEGRAPH_METADATA"


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("web")
    yield


app = FastAPI(
    lifespan=lifespan,
    title="crategraph API",
    description="Cargo package graph queries and build simulation",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_graph() -> PackageGraph:
    """The package graph for the metadata file named by CRATEGRAPH_METADATA."""
    path = os.environ.get(METADATA_ENV, "metadata.json")
    logger.info("Loading metadata from %s", path)
    return load_graph(path)


@app.exception_handler(CrateGraphError)
async def crategraph_error_handler(request: Request, exc: CrateGraphError) -> JSONResponse:
    status = 404 if isinstance(exc, (UnknownPackageIdError, UnknownFeatureIdError)) else 400
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.code})


class BuildRequest(BaseModel):
    packages: list[str]
    features: str | list[str] = "default"
    resolver: Literal["1", "1-install", "2"] = "1"
    include_dev: bool = False
    target: str | None = None
    host: str | None = None
    omitted: list[str] = Field(default_factory=list)


@app.get("/api/packages")
def get_packages(
    workspace: bool = False,
    graph: PackageGraph = Depends(get_graph),
) -> dict:
    """List packages (optionally only workspace members)."""
    packages = graph.workspace().members() if workspace else graph.packages()
    return {
        "packages": [
            {"id": str(p.id), "name": p.name, "version": p.version, "workspace": p.in_workspace}
            for p in packages
        ]
    }


@app.get("/api/packages/{name}")
def get_package(name: str, graph: PackageGraph = Depends(get_graph)) -> dict:
    """Metadata for one package, looked up by name or id."""
    try:
        (package_id,) = package_ids_by_name(graph, [name])
    except UnknownPackageIdError as e:
        raise HTTPException(status_code=404, detail=f"Package not found: {name}") from e
    return graph.metadata(package_id).to_dict()


@app.get("/api/deps/{name}")
def get_deps(
    name: str,
    direction: str = Query("forward", pattern="^(forward|reverse)$"),
    no_dev: bool = False,
    graph: PackageGraph = Depends(get_graph),
) -> dict:
    """Transitive dependencies (or dependents) of a package."""
    (package_id,) = package_ids_by_name(graph, [name])
    dep_direction = DependencyDirection(direction)
    link_filter = LinkFilter.NO_DEV if no_dev else LinkFilter.ALL
    result = graph.resolve_with(graph.query([package_id], dep_direction), link_filter)
    return {"root": str(package_id), "direction": direction, **result.to_dict()}


@app.post("/api/build")
def post_build(request: BuildRequest, graph: PackageGraph = Depends(get_graph)) -> dict:
    """Simulate a cargo build and return the per-platform summary."""
    cargo_set = simulate_build(
        graph,
        request.packages,
        features=request.features,
        resolver=request.resolver,
        include_dev=request.include_dev,
        target=request.target,
        host=request.host,
        omitted=request.omitted,
    )
    return cargo_set.to_dict()


@app.get("/api/cycles")
def get_cycles(graph: PackageGraph = Depends(get_graph)) -> dict:
    return {"cycles": [[str(p) for p in cycle] for cycle in graph.cycles().all_cycles()]}


@app.get("/api/warnings")
def get_warnings(graph: PackageGraph = Depends(get_graph)) -> dict:
    return {"warnings": [w.to_dict() for w in graph.feature_graph().build_warnings()]}

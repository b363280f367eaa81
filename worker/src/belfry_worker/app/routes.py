from __future__ import annotations

from typing import cast

from fastapi import APIRouter, HTTPException, Request

from ..services.exceptions import ConfigurationError
from ..services.library import get_library
from .jobs import JobManager, UnknownJobError
from .models import JobState, SearchRequest, SearchResult, SearchStatus
from .settings import Settings

router = APIRouter()


def get_job_manager(request: Request) -> JobManager:
    return cast(JobManager, request.app.state.job_manager)


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    settings = cast(Settings, request.app.state.settings)
    library = get_library()
    return {
        "status": "ok",
        "artifact_root": str(settings.artifact_root),
        "default_num_comps": settings.default_num_comps,
        "default_thread_count": settings.default_thread_count,
        "graph_size_limit": settings.graph_size_limit,
        "method_library_version": library.version,
        "methods": library.names(),
    }


@router.post("/search", response_model=SearchStatus)
async def search(payload: SearchRequest, request: Request) -> SearchStatus:
    manager = get_job_manager(request)
    try:
        return await manager.enqueue(payload)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/status/{job_id}", response_model=SearchStatus)
async def status(job_id: str, request: Request) -> SearchStatus:
    manager = get_job_manager(request)
    status = await manager.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="job not found")
    return status


@router.get("/result/{job_id}", response_model=SearchResult)
async def result(job_id: str, request: Request) -> SearchResult:
    manager = get_job_manager(request)
    status = await manager.get_status(job_id)
    if status is None or status.state not in (JobState.SUCCEEDED, JobState.CANCELLED):
        raise HTTPException(status_code=404, detail="result not available")
    search_result = await manager.get_result(job_id)
    if search_result is None:
        raise HTTPException(status_code=404, detail="result not available")
    return search_result


@router.post("/cancel/{job_id}", response_model=SearchStatus)
async def cancel(job_id: str, request: Request) -> SearchStatus:
    manager = get_job_manager(request)
    try:
        return await manager.cancel(job_id)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=f"job {exc.job_id} not found") from exc

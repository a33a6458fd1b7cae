from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from consult_dispatch.core.errors import ProviderNotFoundError, dashboard_error
from consult_dispatch.dependencies import JobsContext, get_jobs_context
from consult_dispatch.modules.jobs.schemas import (
    JobStatusCountsResponse,
    ReclaimStaleRequest,
    ReclaimStaleResponse,
    ReleaseHeldRequest,
    ReleaseHeldResponse,
)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _provider_not_found(provider: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content=dashboard_error("provider_not_found", f"Unknown provider: {provider}"),
    )


@router.get("/{provider}/counts", response_model=JobStatusCountsResponse)
async def job_status_counts(
    provider: str,
    context: JobsContext = Depends(get_jobs_context),
) -> JobStatusCountsResponse | JSONResponse:
    try:
        profile = context.registry.profile(provider)
    except ProviderNotFoundError:
        return _provider_not_found(provider)
    counts = await context.service.status_counts(profile.name)
    return JobStatusCountsResponse(provider=profile.name, counts=counts)


@router.post("/{provider}/release-held", response_model=ReleaseHeldResponse)
async def release_held(
    provider: str,
    payload: ReleaseHeldRequest = Body(...),
    context: JobsContext = Depends(get_jobs_context),
) -> ReleaseHeldResponse | JSONResponse:
    try:
        profile = context.registry.profile(provider)
    except ProviderNotFoundError:
        return _provider_not_found(provider)
    try:
        released = await context.service.release_held(
            profile.name,
            ids=payload.ids,
            batch_label=payload.batch_label,
            user_id=payload.user_id,
            team_id=payload.team_id,
        )
    except ValueError as exc:
        return JSONResponse(status_code=400, content=dashboard_error("invalid_scope", str(exc)))
    return ReleaseHeldResponse(provider=profile.name, released=released)


@router.post("/{provider}/reclaim-stale", response_model=ReclaimStaleResponse)
async def reclaim_stale(
    provider: str,
    payload: ReclaimStaleRequest = Body(...),
    context: JobsContext = Depends(get_jobs_context),
) -> ReclaimStaleResponse | JSONResponse:
    try:
        profile = context.registry.profile(provider)
    except ProviderNotFoundError:
        return _provider_not_found(provider)
    reclaimed = await context.service.reclaim_stale(profile.name, minutes=payload.minutes)
    return ReclaimStaleResponse(provider=profile.name, reclaimed=reclaimed)

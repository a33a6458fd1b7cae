from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from consult_dispatch.core.errors import (
    LockBusyError,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
    dashboard_error,
)
from consult_dispatch.dependencies import RunsContext, get_runs_context
from consult_dispatch.modules.runs.schemas import RunBusyResponse, RunSummary

router = APIRouter(prefix="/api/runs", tags=["runs"])


@router.post("/{provider}", response_model=RunSummary)
async def run_provider(
    provider: str,
    context: RunsContext = Depends(get_runs_context),
) -> RunSummary | JSONResponse:
    try:
        summary = await context.service.run(provider)
    except ProviderNotFoundError:
        return JSONResponse(
            status_code=404,
            content=dashboard_error("provider_not_found", f"Unknown provider: {provider}"),
        )
    except ProviderNotConfiguredError as exc:
        return JSONResponse(
            status_code=503,
            content=dashboard_error("provider_not_configured", str(exc)),
        )
    except LockBusyError:
        busy = RunBusyResponse(message="Another run is already in progress", provider=provider.lower())
        return JSONResponse(status_code=409, content=busy.model_dump(mode="json"))

    if not summary.ok:
        return JSONResponse(status_code=500, content=summary.model_dump(mode="json"))
    return summary

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from consult_dispatch.core.errors import ProviderNotFoundError, dashboard_error
from consult_dispatch.dependencies import AccountsContext, get_accounts_context
from consult_dispatch.modules.accounts.schemas import AccountsStatusResponse

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


@router.get("/{provider}", response_model=AccountsStatusResponse)
async def list_accounts_status(
    provider: str,
    context: AccountsContext = Depends(get_accounts_context),
) -> AccountsStatusResponse | JSONResponse:
    try:
        profile = context.registry.profile(provider)
    except ProviderNotFoundError:
        return JSONResponse(
            status_code=404,
            content=dashboard_error("provider_not_found", f"Unknown provider: {provider}"),
        )
    return await context.service.list_accounts_status(profile)

from __future__ import annotations

from consult_dispatch.core.quota import effective_daily_limit, has_credential, remaining_capacity, reset_due
from consult_dispatch.core.utils.time import Clock, SystemClock
from consult_dispatch.modules.accounts.repository import AccountsRepository
from consult_dispatch.modules.accounts.schemas import AccountQuotaStatus, AccountsStatusResponse
from consult_dispatch.modules.providers.profiles import ProviderProfile


class AccountsService:
    def __init__(self, repository: AccountsRepository, *, clock: Clock | None = None) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()

    async def list_accounts_status(self, profile: ProviderProfile) -> AccountsStatusResponse:
        """Quota view for monitoring. Read-only: a due reset is reported, not applied."""
        now = self._clock.now()
        accounts = await self._repository.list_accounts(profile.name)
        statuses: list[AccountQuotaStatus] = []
        for account in accounts:
            limit = effective_daily_limit(account.daily_limit, profile.default_daily_limit)
            consumed = max(0, int(account.consumed or 0))
            due = reset_due(
                daily_limit=limit,
                consumed=consumed,
                last_reset_at=account.last_reset_at,
                now=now,
                window=profile.reset_window,
            )
            remaining = limit if due else remaining_capacity(limit, consumed)
            next_reset_at = account.last_reset_at + profile.reset_window if account.last_reset_at else None
            statuses.append(
                AccountQuotaStatus(
                    account_id=account.id,
                    label=account.label or "",
                    daily_limit=limit,
                    consumed=consumed,
                    remaining=remaining,
                    last_reset_at=account.last_reset_at,
                    next_reset_at=next_reset_at,
                    reset_due=due,
                    has_credential=has_credential(account.credential),
                )
            )
        return AccountsStatusResponse(
            provider=profile.name,
            total_remaining=sum(status.remaining for status in statuses if status.has_credential),
            accounts=statuses,
        )

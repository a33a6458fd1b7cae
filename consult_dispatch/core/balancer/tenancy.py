from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from consult_dispatch.core.config.settings import Settings


@dataclass(frozen=True, slots=True)
class TenantPolicy:
    """Which accounts a job may use, based on the job owner's user and team ids.

    Precedence: superusers may use any account; users with an exclusive mapping may use only
    their mapped accounts; members of a whitelisted team share the team pool; everybody else gets
    the general pool, i.e. every account except the reserved ones.
    """

    superuser_ids: frozenset[int] = frozenset()
    user_accounts: Mapping[int, frozenset[int]] = field(default_factory=dict)
    team_ids: frozenset[int] = frozenset()
    team_accounts: frozenset[int] = frozenset()
    reserved_accounts: frozenset[int] = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings) -> TenantPolicy:
        return cls(
            superuser_ids=frozenset(settings.tenant_superuser_ids),
            user_accounts={
                user_id: frozenset(accounts) for user_id, accounts in settings.tenant_user_accounts.items()
            },
            team_ids=frozenset(settings.tenant_team_ids),
            team_accounts=frozenset(settings.tenant_team_accounts),
            reserved_accounts=frozenset(settings.tenant_reserved_accounts),
        )

    def allows(self, account_id: int, user_id: int | None, team_id: int | None) -> bool:
        user = user_id if user_id is not None and user_id > 0 else None
        team = team_id if team_id is not None and team_id > 0 else None

        if user is not None and user in self.superuser_ids:
            return True
        if user is not None and user in self.user_accounts:
            return account_id in self.user_accounts[user]
        if team is not None and team in self.team_ids:
            return account_id in self.team_accounts
        return account_id not in self.reserved_accounts

    def allowed_accounts(self, account_ids: Iterable[int], user_id: int | None, team_id: int | None) -> list[int]:
        return [account_id for account_id in account_ids if self.allows(account_id, user_id, team_id)]

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consult_dispatch.db.models import Account


class AccountsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_account(self, account_id: int) -> Account | None:
        return await self._session.get(Account, account_id)

    async def list_accounts(self, provider: str) -> list[Account]:
        # Ascending id keeps the round-robin rotation stable between runs.
        stmt = (
            select(Account)
            .where(Account.provider == provider)
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, account: Account) -> Account:
        self._session.add(account)
        await self._session.commit()
        await self._session.refresh(account)
        return account

    async def reset_counter(self, account_id: int, *, now: datetime) -> bool:
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(consumed=0, last_reset_at=now, updated_at=now)
            .returning(Account.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def increment_counter(self, account_id: int, *, clamp: bool, now: datetime) -> bool:
        incremented = Account.consumed + 1
        if clamp:
            # Accounts without a limit of their own are never clamped.
            incremented = case(
                ((Account.daily_limit > 0) & (Account.consumed + 1 > Account.daily_limit), Account.daily_limit),
                else_=Account.consumed + 1,
            )
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(consumed=incremented, updated_at=now)
            .returning(Account.id)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from consult_dispatch.core.quota import QuotaLedger
from consult_dispatch.db.models import Account
from consult_dispatch.db.session import SessionLocal
from consult_dispatch.modules.accounts.repository import AccountsRepository
from consult_dispatch.modules.providers.profiles import PRESENCA_PROFILE, V8_PROFILE

pytestmark = pytest.mark.integration

NOW = datetime(2025, 1, 15, 12, 0, 0)


class FixedClock:
    def now(self) -> datetime:
        return NOW


async def _add_account(**kwargs) -> int:
    values = {
        "provider": "presenca",
        "label": "primary",
        "credential": {"login": "operator", "password": "secret"},
        "daily_limit": 2,
        "consumed": 0,
    }
    values.update(kwargs)
    async with SessionLocal() as session:
        account = await AccountsRepository(session).add(Account(**values))
        return account.id


async def _consumed(account_id: int) -> int:
    async with SessionLocal() as session:
        account = await AccountsRepository(session).get_account(account_id)
        assert account is not None
        return account.consumed


@pytest.mark.asyncio
async def test_increment_with_clamp_never_exceeds_daily_limit(db_setup):
    account_id = await _add_account(daily_limit=2, consumed=1)

    async with SessionLocal() as session:
        repository = AccountsRepository(session)
        for _ in range(3):
            await repository.increment_counter(account_id, clamp=True, now=NOW)

    assert await _consumed(account_id) == 2


@pytest.mark.asyncio
async def test_increment_without_clamp_may_overshoot(db_setup):
    account_id = await _add_account(daily_limit=2, consumed=2)

    async with SessionLocal() as session:
        await AccountsRepository(session).increment_counter(account_id, clamp=False, now=NOW)

    assert await _consumed(account_id) == 3


@pytest.mark.asyncio
async def test_clamp_ignores_accounts_without_a_limit(db_setup):
    account_id = await _add_account(daily_limit=0, consumed=7)

    async with SessionLocal() as session:
        await AccountsRepository(session).increment_counter(account_id, clamp=True, now=NOW)

    assert await _consumed(account_id) == 8


@pytest.mark.asyncio
async def test_ledger_resets_exhausted_account_after_window(db_setup):
    due_id = await _add_account(consumed=2, last_reset_at=NOW - timedelta(hours=25))
    recent_id = await _add_account(consumed=2, last_reset_at=NOW - timedelta(hours=3))
    await _add_account(provider="v8", consumed=0)

    async with SessionLocal() as session:
        ledger = QuotaLedger(AccountsRepository(session), PRESENCA_PROFILE.quota_policy(), clock=FixedClock())
        snapshot = await ledger.load_accounts("presenca")

    assert snapshot.total_accounts == 2
    assert [slot.account_id for slot in snapshot.slots] == [due_id]
    assert snapshot.slots[0].remaining == 2
    assert await _consumed(due_id) == 0
    assert await _consumed(recent_id) == 2


@pytest.mark.asyncio
async def test_hourly_window_resets_sooner(db_setup):
    account_id = await _add_account(provider="v8", consumed=2, last_reset_at=NOW - timedelta(hours=3))

    async with SessionLocal() as session:
        ledger = QuotaLedger(AccountsRepository(session), V8_PROFILE.quota_policy(), clock=FixedClock())
        snapshot = await ledger.load_accounts("v8")

    assert [slot.account_id for slot in snapshot.slots] == [account_id]
    async with SessionLocal() as session:
        account = await AccountsRepository(session).get_account(account_id)
    assert account is not None
    assert account.last_reset_at == NOW

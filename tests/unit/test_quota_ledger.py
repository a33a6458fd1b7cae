from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pytest

from consult_dispatch.core.quota import (
    QuotaLedger,
    QuotaPolicy,
    effective_daily_limit,
    has_credential,
    remaining_capacity,
    reset_due,
)

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 15, 12, 0, 0)


@dataclass
class AccountRow:
    id: int
    label: str = ""
    daily_limit: int = 10
    consumed: int = 0
    last_reset_at: datetime | None = None
    credential: dict[str, Any] | None = field(default_factory=lambda: {"login": "user", "password": "secret"})


class InMemoryAccountStore:
    def __init__(self, accounts: list[AccountRow]) -> None:
        self.accounts = {account.id: account for account in accounts}
        self.resets: list[int] = []
        self.increments: list[tuple[int, bool]] = []

    async def list_accounts(self, provider: str) -> list[AccountRow]:
        return [self.accounts[account_id] for account_id in sorted(self.accounts)]

    async def reset_counter(self, account_id: int, *, now: datetime) -> bool:
        account = self.accounts[account_id]
        account.consumed = 0
        account.last_reset_at = now
        self.resets.append(account_id)
        return True

    async def increment_counter(self, account_id: int, *, clamp: bool, now: datetime) -> bool:
        account = self.accounts[account_id]
        account.consumed += 1
        if clamp and account.daily_limit > 0:
            account.consumed = min(account.consumed, account.daily_limit)
        self.increments.append((account_id, clamp))
        return True


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current


def test_effective_daily_limit_falls_back_to_default():
    assert effective_daily_limit(0, 500) == 500
    assert effective_daily_limit(None, 500) == 500
    assert effective_daily_limit(20, 500) == 20
    assert effective_daily_limit(-3, 0) == 0


def test_remaining_capacity_is_never_negative():
    assert remaining_capacity(10, 4) == 6
    assert remaining_capacity(10, 12) == 0
    assert remaining_capacity(0, 0) == 0


@pytest.mark.parametrize(
    ("consumed", "last_reset_at", "expected"),
    [
        (10, None, True),
        (10, NOW - timedelta(hours=24), True),
        (10, NOW - timedelta(hours=23, minutes=59), False),
        (9, None, False),
    ],
)
def test_reset_due(consumed, last_reset_at, expected):
    assert (
        reset_due(
            daily_limit=10,
            consumed=consumed,
            last_reset_at=last_reset_at,
            now=NOW,
            window=timedelta(hours=24),
        )
        is expected
    )


def test_reset_due_never_for_unlimited_accounts():
    assert not reset_due(daily_limit=0, consumed=50, last_reset_at=None, now=NOW, window=timedelta(hours=1))


def test_has_credential():
    assert has_credential({"login": "a", "password": "b"})
    assert has_credential("token")
    assert not has_credential({"login": "", "password": None})
    assert not has_credential(None)
    assert not has_credential("  ")


@pytest.mark.asyncio
async def test_load_accounts_excludes_exhausted_and_credentialless_accounts():
    store = InMemoryAccountStore(
        [
            AccountRow(1, daily_limit=10, consumed=3),
            AccountRow(2, daily_limit=10, consumed=10, last_reset_at=NOW - timedelta(minutes=5)),
            AccountRow(3, daily_limit=10, consumed=0, credential=None),
            AccountRow(4, daily_limit=5, consumed=1),
        ]
    )
    ledger = QuotaLedger(store, QuotaPolicy(), clock=FixedClock(NOW))

    snapshot = await ledger.load_accounts("v8")

    assert snapshot.total_accounts == 4
    assert [slot.account_id for slot in snapshot.slots] == [1, 4]
    assert [slot.remaining for slot in snapshot.slots] == [7, 4]
    assert snapshot.total_capacity == 11
    assert store.resets == []


@pytest.mark.asyncio
async def test_load_accounts_resets_due_accounts_in_the_same_pass():
    store = InMemoryAccountStore(
        [
            AccountRow(1, daily_limit=10, consumed=10, last_reset_at=NOW - timedelta(hours=2)),
            AccountRow(2, daily_limit=10, consumed=10, last_reset_at=None),
        ]
    )
    ledger = QuotaLedger(store, QuotaPolicy(reset_window=timedelta(hours=1)), clock=FixedClock(NOW))

    snapshot = await ledger.load_accounts("v8")

    assert store.resets == [1, 2]
    assert [slot.remaining for slot in snapshot.slots] == [10, 10]
    assert store.accounts[1].last_reset_at == NOW


@pytest.mark.asyncio
async def test_reset_is_idempotent_within_the_window():
    store = InMemoryAccountStore([AccountRow(1, daily_limit=3, consumed=3, last_reset_at=None)])
    clock = FixedClock(NOW)
    ledger = QuotaLedger(store, QuotaPolicy(), clock=clock)

    await ledger.load_accounts("v8")
    await ledger.increment(1)
    clock.current = NOW + timedelta(minutes=10)
    snapshot = await ledger.load_accounts("v8")

    assert store.resets == [1]
    assert store.accounts[1].consumed == 1
    assert snapshot.slots[0].remaining == 2


@pytest.mark.asyncio
async def test_default_daily_limit_applies_to_accounts_without_one():
    store = InMemoryAccountStore([AccountRow(1, daily_limit=0, consumed=499)])
    ledger = QuotaLedger(store, QuotaPolicy(default_daily_limit=500), clock=FixedClock(NOW))

    snapshot = await ledger.load_accounts("handmais")

    assert snapshot.slots[0].daily_limit == 500
    assert snapshot.slots[0].remaining == 1


@pytest.mark.asyncio
async def test_increment_passes_clamp_policy_to_store():
    store = InMemoryAccountStore([AccountRow(1, daily_limit=1, consumed=1)])
    ledger = QuotaLedger(store, QuotaPolicy(clamp_increment=True), clock=FixedClock(NOW))

    await ledger.increment(1)

    assert store.increments == [(1, True)]
    assert store.accounts[1].consumed == 1

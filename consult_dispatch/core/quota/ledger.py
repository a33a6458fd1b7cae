from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from consult_dispatch.core.utils.time import Clock, SystemClock
from consult_dispatch.db.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QuotaPolicy:
    reset_window: timedelta = timedelta(hours=24)
    # Used when an account has no daily limit of its own (0 or unset).
    default_daily_limit: int = 0
    # Never let `consumed` run past the daily limit on increment.
    clamp_increment: bool = False


@dataclass(slots=True)
class AccountSlot:
    account_id: int
    label: str
    daily_limit: int
    consumed: int
    remaining: int
    credential: Mapping[str, Any] | None = field(default=None, repr=False)


@dataclass(slots=True)
class LedgerSnapshot:
    total_accounts: int
    slots: list[AccountSlot]

    @property
    def total_capacity(self) -> int:
        return sum(slot.remaining for slot in self.slots)


class AccountStore(Protocol):
    async def list_accounts(self, provider: str) -> Sequence[Account]: ...

    async def reset_counter(self, account_id: int, *, now: datetime) -> bool: ...

    async def increment_counter(self, account_id: int, *, clamp: bool, now: datetime) -> bool: ...


def effective_daily_limit(daily_limit: int | None, default_daily_limit: int) -> int:
    limit = max(0, int(daily_limit or 0))
    if limit > 0:
        return limit
    return max(0, default_daily_limit)


def remaining_capacity(daily_limit: int, consumed: int) -> int:
    return max(0, daily_limit - max(0, consumed))


def reset_due(
    *,
    daily_limit: int,
    consumed: int,
    last_reset_at: datetime | None,
    now: datetime,
    window: timedelta,
) -> bool:
    if daily_limit <= 0 or consumed < daily_limit:
        return False
    return last_reset_at is None or now - last_reset_at >= window


def has_credential(credential: object) -> bool:
    if not credential:
        return False
    if isinstance(credential, Mapping):
        return any(str(value).strip() for value in credential.values() if value is not None)
    return bool(str(credential).strip())


class QuotaLedger:
    def __init__(self, store: AccountStore, policy: QuotaPolicy, *, clock: Clock | None = None) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock or SystemClock()

    async def load_accounts(self, provider: str) -> LedgerSnapshot:
        accounts = list(await self._store.list_accounts(provider))
        now = self._clock.now()
        slots: list[AccountSlot] = []

        for account in accounts:
            limit = effective_daily_limit(account.daily_limit, self._policy.default_daily_limit)
            consumed = max(0, int(account.consumed or 0))

            if reset_due(
                daily_limit=limit,
                consumed=consumed,
                last_reset_at=account.last_reset_at,
                now=now,
                window=self._policy.reset_window,
            ):
                # Resetting writes an absolute 0, so two runs racing here are harmless.
                await self._store.reset_counter(account.id, now=now)
                logger.info("Quota window reset provider=%s account_id=%s consumed=%s", provider, account.id, consumed)
                consumed = 0

            remaining = remaining_capacity(limit, consumed)
            if remaining <= 0 or not has_credential(account.credential):
                continue

            slots.append(
                AccountSlot(
                    account_id=account.id,
                    label=account.label or "",
                    daily_limit=limit,
                    consumed=consumed,
                    remaining=remaining,
                    credential=account.credential,
                )
            )

        return LedgerSnapshot(total_accounts=len(accounts), slots=slots)

    async def increment(self, account_id: int) -> None:
        await self._store.increment_counter(account_id, clamp=self._policy.clamp_increment, now=self._clock.now())

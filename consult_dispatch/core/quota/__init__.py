from consult_dispatch.core.quota.ledger import (
    AccountSlot,
    AccountStore,
    LedgerSnapshot,
    QuotaLedger,
    QuotaPolicy,
    effective_daily_limit,
    has_credential,
    remaining_capacity,
    reset_due,
)

__all__ = [
    "AccountSlot",
    "AccountStore",
    "LedgerSnapshot",
    "QuotaLedger",
    "QuotaPolicy",
    "effective_daily_limit",
    "has_credential",
    "remaining_capacity",
    "reset_due",
]

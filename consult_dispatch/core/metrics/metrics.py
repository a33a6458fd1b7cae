from __future__ import annotations

from typing import Final, Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)
        self._known_accounts: dict[str, set[str]] = {}

        self._runs_total = Counter(
            "consult_dispatch_runs_total",
            "Total dispatch runs by outcome.",
            labelnames=("provider", "outcome"),
            registry=self._registry,
        )
        self._jobs_total = Counter(
            "consult_dispatch_jobs_total",
            "Total jobs processed by outcome.",
            labelnames=("provider", "outcome"),
            registry=self._registry,
        )
        self._workflow_failures_total = Counter(
            "consult_dispatch_workflow_failures_total",
            "Job workflow failures by error class.",
            labelnames=("provider", "code"),
            registry=self._registry,
        )
        self._duplicates_total = Counter(
            "consult_dispatch_duplicates_created_total",
            "Extra result entries written as additional job rows.",
            labelnames=("provider",),
            registry=self._registry,
        )
        self._run_duration_ms = Histogram(
            "consult_dispatch_run_duration_ms",
            "Dispatch run duration in milliseconds.",
            labelnames=("provider",),
            # 100ms .. 1h
            buckets=(100, 500, 1_000, 5_000, 15_000, 30_000, 60_000, 300_000, 900_000, 1_800_000, 3_600_000),
            registry=self._registry,
        )
        self._account_remaining = Gauge(
            "consult_dispatch_account_remaining",
            "Remaining daily capacity per account at the start of the last run.",
            labelnames=("provider", "account_id"),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_run(self, *, provider: str, outcome: str, duration_ms: int | None) -> None:
        self._runs_total.labels(provider=provider, outcome=outcome).inc()
        if duration_ms is not None:
            self._run_duration_ms.labels(provider=provider).observe(max(0, duration_ms))

    def observe_job(self, *, provider: str, outcome: str, error_code: str | None = None) -> None:
        self._jobs_total.labels(provider=provider, outcome=outcome).inc()
        if error_code:
            self._workflow_failures_total.labels(provider=provider, code=error_code).inc()

    def inc_duplicates(self, *, provider: str, count: int) -> None:
        if count > 0:
            self._duplicates_total.labels(provider=provider).inc(count)

    def refresh_account_remaining(self, *, provider: str, remaining: Iterable[tuple[int, int]]) -> None:
        current: set[str] = set()
        for account_id, value in remaining:
            key = str(account_id)
            current.add(key)
            self._account_remaining.labels(provider=provider, account_id=key).set(value)
        # Accounts that disappeared from the pool (deleted, no capacity left) should not keep stale values.
        for stale in self._known_accounts.get(provider, set()) - current:
            self._account_remaining.remove(provider, stale)
        self._known_accounts[provider] = current

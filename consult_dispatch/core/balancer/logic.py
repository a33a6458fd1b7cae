from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from consult_dispatch.core.balancer.tenancy import TenantPolicy
from consult_dispatch.core.quota import AccountSlot


class Allocatable(Protocol):
    @property
    def id(self) -> int: ...

    @property
    def forced_account_id(self) -> int | None: ...

    @property
    def user_id(self) -> int | None: ...

    @property
    def team_id(self) -> int | None: ...


JobT = TypeVar("JobT", bound=Allocatable)


@dataclass(slots=True)
class Allocation(Generic[JobT]):
    by_account: dict[int, list[JobT]]
    unallocated: list[JobT] = field(default_factory=list)
    # Position after the last round-robin pick; feed it back as `start_pointer` to continue the rotation.
    pointer: int = 0

    @property
    def allocated_count(self) -> int:
        return sum(len(jobs) for jobs in self.by_account.values())

    def jobs_for(self, account_id: int) -> list[JobT]:
        return self.by_account.get(account_id, [])


def allocate(
    jobs: Sequence[JobT],
    slots: Sequence[AccountSlot],
    *,
    honor_forced: bool = True,
    tenant_policy: TenantPolicy | None = None,
    start_pointer: int = 0,
) -> Allocation[JobT]:
    """Assign each job to at most one account without exceeding any account's `remaining`.

    `slots` keep their order (ascending account id) and their `remaining` counters are decremented
    in place. Jobs pinned through `forced_account_id` go to that account while it has capacity and
    otherwise fall through to round-robin. Round-robin scans forward from a rotating pointer,
    wrapping once around the account list. With a tenant policy, accounts the job's owner may not
    use are never candidates, pinned or not.
    """
    by_account: dict[int, list[JobT]] = {slot.account_id: [] for slot in slots}
    allocation: Allocation[JobT] = Allocation(by_account=by_account)
    account_count = len(slots)
    if account_count == 0:
        allocation.unallocated.extend(jobs)
        return allocation

    index_by_id = {slot.account_id: index for index, slot in enumerate(slots)}
    capacity = sum(max(0, slot.remaining) for slot in slots)
    pointer = start_pointer % account_count

    def _allowed(slot: AccountSlot, job: JobT) -> bool:
        if tenant_policy is None:
            return True
        return tenant_policy.allows(slot.account_id, job.user_id, job.team_id)

    def _assign(index: int, job: JobT) -> None:
        nonlocal capacity
        slot = slots[index]
        by_account[slot.account_id].append(job)
        slot.remaining -= 1
        capacity -= 1

    for position, job in enumerate(jobs):
        if capacity <= 0:
            allocation.unallocated.extend(jobs[position:])
            break

        if honor_forced and job.forced_account_id is not None:
            forced_index = index_by_id.get(job.forced_account_id)
            if forced_index is not None:
                forced_slot = slots[forced_index]
                if forced_slot.remaining > 0 and _allowed(forced_slot, job):
                    _assign(forced_index, job)
                    continue

        selected: int | None = None
        for step in range(account_count):
            index = (pointer + step) % account_count
            slot = slots[index]
            if slot.remaining <= 0 or not _allowed(slot, job):
                continue
            selected = index
            break

        if selected is None:
            allocation.unallocated.append(job)
            continue

        _assign(selected, job)
        pointer = (selected + 1) % account_count

    allocation.pointer = pointer
    return allocation

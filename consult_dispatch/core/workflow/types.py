from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from consult_dispatch.core.utils.payload import digits, normalize_document, normalize_person_name, to_nullable_str

RawEntry = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class Subject:
    job_id: int
    name: str
    document: str
    phone: str = ""
    birth_date: str | None = None
    email: str | None = None
    gender: str | None = None

    @classmethod
    def from_job(cls, job: Any) -> Subject:
        return cls(
            job_id=job.id,
            name=normalize_person_name(job.name),
            document=normalize_document(job.document),
            phone=digits(job.phone),
            birth_date=to_nullable_str(job.birth_date, 10),
            email=to_nullable_str(job.email, 255),
            gender=to_nullable_str(job.gender, 20),
        )


@dataclass(frozen=True, slots=True)
class OperationRef:
    """What a provider returned for a submission.

    `duplicate` marks an "already exists" answer that is still worth polling. `accepted` is False
    when the upstream refused the operation without failing hard (e.g. a duplicate with no
    discoverable id); it drives the on-accept quota policy.
    """

    operation_id: str | None = None
    approval_url: str | None = None
    duplicate: bool = False
    accepted: bool = True
    payload: Mapping[str, Any] | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class ResultEntry:
    status: str
    description: str | None = None
    value: float | None = None
    table: str | None = None
    term: str | None = None
    document: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def fingerprint(self) -> str:
        shape = json.dumps(
            [self.status, self.description, self.value, self.table, self.term],
            ensure_ascii=False,
            separators=(",", ":"),
        )
        return hashlib.md5(shape.encode("utf-8")).hexdigest()


class AuthProvider(Protocol):
    async def login(self, credential: Mapping[str, Any]) -> str: ...


class WorkflowProvider(Protocol):
    async def submit(self, token: str, subject: Subject) -> OperationRef: ...

    async def approve(self, url: str, subject: Subject) -> bool: ...

    async def poll(self, token: str, subject: Subject, operation: OperationRef) -> Sequence[RawEntry]: ...


class ProviderAdapter(AuthProvider, WorkflowProvider, Protocol):
    pass


class Approver(Protocol):
    name: str

    async def approve(self, url: str, subject: Subject) -> bool: ...

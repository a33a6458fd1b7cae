from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import aiohttp

from consult_dispatch.core.clients.http import HttpClient, get_http_client
from consult_dispatch.core.errors import ApprovalError
from consult_dispatch.core.utils.payload import decode_json, is_mapping, truncate
from consult_dispatch.core.utils.time import Sleeper, sleep_seconds
from consult_dispatch.core.workflow.types import Approver, Subject, WorkflowProvider

logger = logging.getLogger(__name__)

_DETAIL_MAX_LENGTH = 700
_SUMMARY_MAX_LENGTH = 1600


class ProviderApprover:
    """The provider's own consent channel (usually an automated form post)."""

    name = "provider"

    def __init__(self, provider: WorkflowProvider) -> None:
        self._provider = provider

    async def approve(self, url: str, subject: Subject) -> bool:
        return await self._provider.approve(url, subject)


def approval_confirmed(status: int, body: str) -> bool:
    if status < 200 or status >= 300:
        return False
    payload = decode_json(body)
    if not is_mapping(payload):
        return False
    return bool(payload.get("ok", payload.get("success", False)))


class ServiceApprover:
    """Headless approval service reached over HTTP.

    The service opens the consent URL, fills in the subject's data and reports `{"ok": true}` once
    the consent was submitted.
    """

    def __init__(
        self,
        service_url: str,
        *,
        timeout_seconds: float,
        approval_timeout_seconds: int,
        http_client: HttpClient | None = None,
    ) -> None:
        self.name = service_url
        self._service_url = service_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._approval_timeout_seconds = approval_timeout_seconds
        self._http_client = http_client

    def build_payload(self, url: str, subject: Subject) -> dict[str, Any]:
        return {
            "url": url,
            "shortUrl": url,
            "nome": subject.name,
            "cpf": subject.document,
            "telefone": subject.phone,
            "dataNascimento": subject.birth_date or "",
            "email": subject.email or "",
            "acceptTerms": True,
            "allowGeolocation": True,
            "submit": True,
            "timeoutSeconds": self._approval_timeout_seconds,
        }

    async def approve(self, url: str, subject: Subject) -> bool:
        client = self._http_client or get_http_client()
        async with client.retry_client.post(
            self._service_url,
            json=self.build_payload(url, subject),
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        ) as response:
            body = await response.text()
            if approval_confirmed(response.status, body):
                return True
            raise ApprovalError(f"HTTP_{response.status} {truncate(body, _DETAIL_MAX_LENGTH)}")


class ApprovalChain:
    """Try each approval channel in order until one confirms the consent."""

    def __init__(
        self,
        approvers: Sequence[Approver],
        *,
        max_attempts: int = 1,
        retry_delay_seconds: float = 0.0,
        sleep: Sleeper = sleep_seconds,
    ) -> None:
        self._approvers = list(approvers)
        self._max_attempts = max(1, max_attempts)
        self._retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    @property
    def channels(self) -> list[str]:
        return [approver.name for approver in self._approvers]

    async def approve(self, url: str, subject: Subject) -> str:
        details: list[str] = []
        for approver in self._approvers:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    confirmed = await approver.approve(url, subject)
                except (ApprovalError, aiohttp.ClientError, TimeoutError) as exc:
                    details.append(f"[{approver.name}] {truncate(str(exc) or type(exc).__name__, _DETAIL_MAX_LENGTH)}")
                    confirmed = False
                else:
                    if not confirmed:
                        details.append(f"[{approver.name}] not confirmed")
                if confirmed:
                    logger.info(
                        "Approval confirmed job_id=%s channel=%s attempt=%s",
                        subject.job_id,
                        approver.name,
                        attempt,
                    )
                    return approver.name
                if attempt < self._max_attempts:
                    await self._sleep(self._retry_delay_seconds)

        suffix = f" Detail: {truncate(' | '.join(details), _SUMMARY_MAX_LENGTH)}" if details else ""
        raise ApprovalError(f"Automatic approval failed.{suffix}")

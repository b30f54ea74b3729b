from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError

from caseguard.domain.events import Finding
from caseguard.persistence.repos.base import FindingWriter
from caseguard.persistence.repos.findings import SqlFindingRepository
from caseguard.services.resilience import RetryPolicy, retry_async
from caseguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _is_retryable_write_error(exc: Exception) -> bool:
    return isinstance(exc, (SQLAlchemyError, TimeoutError, OSError))


class FindingStore:
    """Append-only sink for findings.

    Writes are retried with bounded backoff. Exhausted retries are logged as a
    data-loss risk and never raised: the caller's decision is already final.
    """

    def __init__(
        self,
        writer: FindingWriter | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._writer = writer or SqlFindingRepository()
        self._retry_policy = retry_policy

    async def append(self, finding: Finding) -> bool:
        try:
            await retry_async(
                lambda: self._writer.insert_finding(finding),
                policy=self._retry_policy,
                retryable=_is_retryable_write_error,
                counter="guardian_finding_write_retries_total",
            )
        except Exception as exc:  # noqa: BLE001 - decision is already returned; only log the audit gap
            increment_counter("guardian_finding_write_failures_total")
            logger.error(
                "guardian_finding_persist_failed data_loss_risk=true finding_id=%s tenant_id=%s rule_id=%s",
                finding.id,
                finding.tenant_id,
                finding.rule_id,
                exc_info=exc,
            )
            return False
        return True

    async def append_all(self, findings: Sequence[Finding]) -> list[bool]:
        # Fire writes concurrently and wait for every one to settle.
        if not findings:
            return []
        return list(await asyncio.gather(*(self.append(finding) for finding in findings)))

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from opentelemetry import trace

from erasure.core.controllers import CHANNEL_WEBFORM
from erasure.core.errors import NoEvidenceError
from erasure.services.breaker import CircuitBreaker
from erasure.services.interfaces import (
    ActionStore,
    DeadLetterStore,
    JobRecord,
    JobSpec,
    JobStore,
    utc_now,
)
from erasure.services.receipts import ReceiptService, has_artifacts
from erasure.services.repository import RepositoryConflictError, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JOB_REQUEUED = "requeued"
JOB_TERMINALLY_FAILED = "terminally_failed"
ATTEMPTS_EXHAUSTED = "attempts_exhausted"
LEASE_EXPIRED = "lease_expired"


class JobBackingStore(JobStore, DeadLetterStore, ActionStore, Protocol):
    pass


@dataclass(slots=True)
class FailureOutcome:
    outcome: str
    job: JobRecord


@dataclass(slots=True)
class ReapSummary:
    requeued: int = 0
    failed: int = 0


class JobQueue:
    def __init__(
        self,
        store: JobBackingStore,
        *,
        lease_seconds: int,
        retry_base_seconds: int,
        retry_max_seconds: int,
        max_attempts: int,
        breaker: CircuitBreaker | None = None,
        receipts: ReceiptService | None = None,
        clock: Callable[[], datetime] = utc_now,
        claim_scan_limit: int = 10,
        claim_rounds: int = 3,
    ) -> None:
        self._store = store
        self._lease_seconds = max(1, lease_seconds)
        self._retry_base_seconds = max(0, retry_base_seconds)
        self._retry_max_seconds = max(self._retry_base_seconds, retry_max_seconds)
        self._max_attempts = max(1, max_attempts)
        self._breaker = breaker
        self._receipts = receipts
        self._clock = clock
        self._claim_scan_limit = max(1, claim_scan_limit)
        self._claim_rounds = max(1, claim_rounds)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def retry_delay_seconds(self, attempts: int) -> int:
        exponent = max(0, attempts - 1)
        return min(self._retry_base_seconds * (2**exponent), self._retry_max_seconds)

    async def enqueue(self, spec: JobSpec) -> JobRecord:
        job = await self._store.enqueue_job(spec, now=self._clock())
        logger.info("job enqueued id=%s kind=%s controller=%s", job.id, job.kind, job.controller_key)
        return job

    async def get(self, job_id: str) -> JobRecord:
        job = await self._store.get_job(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    async def claim_next(self, worker_id: str, *, lease_seconds: int | None = None) -> JobRecord | None:
        with tracer.start_as_current_span("jobs.claim_next") as span:
            span.set_attribute("worker.id", worker_id)
            lease = lease_seconds or self._lease_seconds
            for _ in range(self._claim_rounds):
                now = self._clock()
                candidate_ids = await self._store.list_claimable_job_ids(now=now, limit=self._claim_scan_limit)
                if not candidate_ids:
                    return None
                for job_id in candidate_ids:
                    claimed = await self._store.try_claim_job(
                        job_id,
                        worker_id=worker_id,
                        lease_seconds=lease,
                        now=now,
                    )
                    if claimed is not None:
                        span.set_attribute("job.id", claimed.id)
                        span.set_attribute("job.attempts", claimed.attempts)
                        return claimed
                # every candidate went to another worker; select again
            return None

    async def claim_batch(self, worker_id: str, limit: int, *, lease_seconds: int | None = None) -> list[JobRecord]:
        claimed: list[JobRecord] = []
        for _ in range(max(1, limit)):
            job = await self.claim_next(worker_id, lease_seconds=lease_seconds)
            if job is None:
                break
            claimed.append(job)
        return claimed

    async def complete_success(self, job_id: str, *, worker_id: str, result: dict[str, Any]) -> JobRecord:
        job = await self._store.transition_job(
            job_id,
            from_status="running",
            worker_id=worker_id,
            to_status="succeeded",
            now=self._clock(),
            result=result,
        )
        if job is None:
            raise await self._transition_error(job_id)

        if self._breaker is not None:
            await self._breaker.record_success(job.controller_key)
        if self._receipts is not None and has_artifacts(job.result):
            try:
                await self._receipts.make_receipt(job.id)
            except NoEvidenceError:
                logger.info("no artifacts to receipt for job_id=%s", job.id)
        logger.info("job succeeded id=%s attempts=%s", job.id, job.attempts)
        return job

    async def complete_failure(self, job_id: str, *, worker_id: str, error: dict[str, Any]) -> FailureOutcome:
        current = await self._store.get_job(job_id)
        if current is None:
            raise RepositoryNotFoundError("job not found")

        outcome = await self._fail_or_requeue(current, worker_id=worker_id, error=error)
        if outcome is None:
            raise await self._transition_error(job_id)

        if self._breaker is not None:
            await self._breaker.record_failure(
                outcome.job.controller_key,
                str(error.get("code") or "job_failed"),
                _error_note(error),
            )
        return outcome

    async def reap_expired(self, limit: int = 100) -> ReapSummary:
        summary = ReapSummary()
        expired = await self._store.list_expired_jobs(now=self._clock(), limit=limit)
        for job in expired:
            outcome = await self._fail_or_requeue(
                job,
                worker_id=job.worker_id,
                error={"code": LEASE_EXPIRED, "worker_id": job.worker_id},
            )
            if outcome is None:
                # completed or reaped concurrently
                continue
            if outcome.outcome == JOB_REQUEUED:
                summary.requeued += 1
            else:
                summary.failed += 1
        if expired:
            logger.info("lease reaper requeued=%s failed=%s", summary.requeued, summary.failed)
        return summary

    async def _fail_or_requeue(
        self,
        job: JobRecord,
        *,
        worker_id: str | None,
        error: dict[str, Any],
    ) -> FailureOutcome | None:
        now = self._clock()
        if job.attempts < job.max_attempts:
            requeued = await self._store.transition_job(
                job.id,
                from_status="running",
                worker_id=worker_id,
                to_status="queued",
                now=now,
                error=error,
                next_run_at=now + timedelta(seconds=self.retry_delay_seconds(job.attempts)),
            )
            if requeued is None:
                return None
            logger.info("job requeued id=%s attempts=%s/%s", job.id, requeued.attempts, requeued.max_attempts)
            return FailureOutcome(outcome=JOB_REQUEUED, job=requeued)

        failed = await self._store.transition_job(
            job.id,
            from_status="running",
            worker_id=worker_id,
            to_status="failed",
            now=now,
            error=error,
        )
        if failed is None:
            return None
        await self._dead_letter(failed, error, now=now)
        logger.warning("job failed terminally id=%s attempts=%s", failed.id, failed.attempts)
        return FailureOutcome(outcome=JOB_TERMINALLY_FAILED, job=failed)

    async def _dead_letter(self, job: JobRecord, error: dict[str, Any], *, now: datetime) -> None:
        metadata = job.metadata or {}
        payload = metadata.get("dispatch")
        if not isinstance(payload, dict):
            payload = {
                "controller_key": job.controller_key,
                "subject_ref": job.subject_ref,
                "form_url": job.target_url,
            }
        await self._store.push_dead_letter(
            channel=str(metadata.get("channel") or CHANNEL_WEBFORM),
            controller_key=job.controller_key,
            subject_ref=job.subject_ref,
            payload=payload,
            error_code=ATTEMPTS_EXHAUSTED,
            error_note=_error_note(error),
            retries=0,
            now=now,
        )
        action_id = metadata.get("action_id")
        if isinstance(action_id, str) and action_id:
            await self._store.update_action_status(
                action_id,
                status="failed",
                now=now,
                verification_info={"last_job_id": job.id, "last_error": _error_note(error)},
            )

    async def _transition_error(self, job_id: str) -> Exception:
        job = await self._store.get_job(job_id)
        if job is None:
            return RepositoryNotFoundError("job not found")
        return RepositoryConflictError(f"job is {job.status} or held by another worker")


def _error_note(error: dict[str, Any]) -> str | None:
    for key in ("message", "error", "code"):
        value = error.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()[:500]
    return None

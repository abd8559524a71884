from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from erasure.api.errors import http_error
from erasure.core.security import get_worker_id
from erasure.schemas.jobs import ClaimRequest, JobOut, ReapOut, ResultOut, ResultRequest
from erasure.services.interfaces import JobRecord
from erasure.services.jobs import JobQueue
from erasure.services.providers import get_job_queue
from erasure.services.repository import RepositoryError

router = APIRouter()


def _job_out(job: JobRecord) -> JobOut:
    return JobOut(**asdict(job))


@router.post("/claim", response_model=list[JobOut])
async def claim_jobs(
    payload: ClaimRequest,
    worker_id: str = Depends(get_worker_id),
    queue: JobQueue = Depends(get_job_queue),
) -> list[JobOut]:
    try:
        jobs = await queue.claim_batch(worker_id, payload.limit, lease_seconds=payload.lease_seconds)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [_job_out(job) for job in jobs]


@router.post("/reap-expired", response_model=ReapOut)
async def reap_expired_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    queue: JobQueue = Depends(get_job_queue),
) -> ReapOut:
    try:
        summary = await queue.reap_expired(limit=limit)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ReapOut(requeued=summary.requeued, failed=summary.failed)


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> JobOut:
    try:
        return _job_out(await queue.get(job_id))
    except RepositoryError as exc:
        raise http_error(exc) from exc


@router.post("/{job_id}/result", response_model=ResultOut)
async def submit_job_result(
    job_id: str,
    payload: ResultRequest,
    worker_id: str = Depends(get_worker_id),
    queue: JobQueue = Depends(get_job_queue),
) -> ResultOut:
    try:
        if payload.status == "succeeded":
            job = await queue.complete_success(job_id, worker_id=worker_id, result=payload.result or {})
            return ResultOut(outcome="succeeded", job=_job_out(job))
        outcome = await queue.complete_failure(job_id, worker_id=worker_id, error=payload.error or {})
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ResultOut(outcome=outcome.outcome, job=_job_out(outcome.job))

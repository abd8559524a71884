from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from erasure.core.errors import FetchError, FetchTimeout
from erasure.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from erasure.workers.config import get_worker_settings
from erasure.workers.jobs.executor import execute_job
from erasure.workers.services.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def failure_error(exc: Exception) -> dict[str, str]:
    if isinstance(exc, FetchTimeout):
        code = "webform_timeout"
    elif isinstance(exc, FetchError):
        code = "webform_failed"
    else:
        code = "job_failed"
    return {"code": code, "message": str(exc)}


async def process_job(client: JobClient, job: dict, *, webform_timeout_seconds: float) -> str:
    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attribute("job.id", job["id"])
        job_span.set_attribute("job.kind", job.get("kind") or "")
        try:
            result = await execute_job(job, webform_timeout_seconds=webform_timeout_seconds)
        except Exception as exc:
            logger.exception("job execution failed for id=%s", job["id"])
            response = await client.submit_result(job["id"], status="failed", error=failure_error(exc))
            return str(response.get("outcome"))

        response = await client.submit_result(job["id"], status="succeeded", result=result)
        return str(response.get("outcome"))


async def run_worker() -> None:
    settings = get_worker_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    client = JobClient(
        base_url=settings.api_base_url,
        worker_id=settings.worker_id,
        ops_secret=settings.ops_secret,
    )

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0
    last_sweep_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        reaped = await client.reap_expired_jobs(limit=settings.lease_reaper_batch_size)
                        if reaped["requeued"] or reaped["failed"]:
                            logger.info("reaped expired leases: %s", reaped)
                        last_reap_at = now

                    if now - last_sweep_at >= settings.verification_sweep_interval_seconds:
                        summary = await client.trigger_sweep(batch_limit=settings.verification_sweep_batch_size)
                        logger.info("verification sweep: %s", summary)
                        last_sweep_at = now

                    jobs = await client.claim_jobs(
                        limit=settings.claim_batch_size,
                        lease_seconds=settings.claim_lease_seconds,
                    )
                    if not jobs:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    for job in jobs:
                        await process_job(client, job, webform_timeout_seconds=settings.webform_timeout_seconds)

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop must survive API outages
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())

from __future__ import annotations

from typing import Any

from erasure.services.dispatcher import WEBFORM_JOB_KIND
from erasure.workers.jobs.webform import execute_webform_submit


class UnknownJobKindError(ValueError):
    pass


async def execute_job(
    job: dict[str, Any],
    *,
    webform_timeout_seconds: float | None = None,
) -> dict[str, Any]:
    if job.get("kind") == WEBFORM_JOB_KIND:
        timeout_seconds = webform_timeout_seconds if webform_timeout_seconds is not None else 8.0
        return await execute_webform_submit(job, timeout_seconds=timeout_seconds)

    raise UnknownJobKindError(f"no executor for job kind {job.get('kind')!r}")

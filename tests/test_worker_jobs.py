from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

from erasure.core.errors import FetchError, FetchTimeout
from erasure.workers import main as worker_main
from erasure.workers.jobs import executor
from erasure.workers.jobs.webform import build_form_fields, execute_webform_submit
from erasure.workers.services.job_client import JobClient

JOB = {
    "id": "job-1",
    "kind": "webform_submit",
    "controller_key": "olx",
    "target_url": "https://olx.example/privacy",
    "metadata": {
        "dispatch": {
            "controller_key": "olx",
            "locale": "en",
            "subject": {"name": "Asha Verma", "email": "asha@example.com", "phone": None},
            "draft": {"subject": "Erasure request", "body_text": "Please delete my data."},
        },
    },
}


def test_build_form_fields_drops_empty_values() -> None:
    assert build_form_fields(JOB["metadata"]["dispatch"]) == {
        "name": "Asha Verma",
        "email": "asha@example.com",
        "subject": "Erasure request",
        "message": "Please delete my data.",
        "locale": "en",
    }


def test_webform_submit_posts_draft_and_returns_html() -> None:
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["form"] = parse_qs(request.content.decode("utf-8"))
        return httpx.Response(status_code=200, text="<p>Request received</p>", request=request)

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await execute_webform_submit(JOB, client=client)

    result = asyncio.run(run())
    assert seen["method"] == "POST"
    assert seen["form"]["email"] == ["asha@example.com"]
    assert seen["form"]["message"] == ["Please delete my data."]
    assert result["http_status"] == 200
    assert result["html"] == "<p>Request received</p>"
    assert result["url"] == "https://olx.example/privacy"


def test_webform_rejection_and_timeout_raise() -> None:
    async def rejecting(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=422, request=request)

    async def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("too slow", request=request)

    async def run(handler) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await execute_webform_submit(JOB, client=client)

    with pytest.raises(FetchError):
        asyncio.run(run(rejecting))
    with pytest.raises(FetchTimeout):
        asyncio.run(run(slow))


def test_webform_without_target_url_is_rejected() -> None:
    job = {"kind": "webform_submit", "metadata": {"dispatch": {}}}
    with pytest.raises(ValueError):
        asyncio.run(execute_webform_submit(job))


def test_execute_job_passes_timeout_to_webform_handler(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_execute_webform_submit(job: dict[str, Any], *, client=None, timeout_seconds: float = 8.0):
        captured["job"] = job
        captured["timeout_seconds"] = timeout_seconds
        return {"handled": True}

    monkeypatch.setattr(executor, "execute_webform_submit", fake_execute_webform_submit)
    result = asyncio.run(executor.execute_job(JOB, webform_timeout_seconds=2.5))

    assert result == {"handled": True}
    assert captured["job"]["id"] == "job-1"
    assert captured["timeout_seconds"] == 2.5


def test_execute_job_rejects_unknown_kind() -> None:
    with pytest.raises(executor.UnknownJobKindError):
        asyncio.run(executor.execute_job({"kind": "send_fax"}))


def test_job_client_sends_worker_headers() -> None:
    requests: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/jobs/claim":
            return httpx.Response(status_code=200, json=[JOB], request=request)
        if request.url.path == "/jobs/reap-expired":
            return httpx.Response(status_code=200, json={"requeued": 2, "failed": 1}, request=request)
        if request.url.path == "/verification/sweep":
            return httpx.Response(status_code=200, json={"checked": 3}, request=request)
        return httpx.Response(status_code=200, json={"outcome": "succeeded"}, request=request)

    client = JobClient("http://api.local/", "worker-7", "s3cret", transport=httpx.MockTransport(handler))

    async def run():
        return (
            await client.claim_jobs(limit=3, lease_seconds=60),
            await client.reap_expired_jobs(limit=10),
            await client.trigger_sweep(batch_limit=5),
            await client.submit_result("job-1", status="succeeded", result={"html": "<p/>"}),
        )

    claimed, reaped, swept, submitted = asyncio.run(run())
    assert claimed == [JOB]
    assert reaped == {"requeued": 2, "failed": 1}
    assert swept == {"checked": 3}
    assert submitted == {"outcome": "succeeded"}
    assert all(request.headers["X-Worker-Id"] == "worker-7" for request in requests)
    assert all(request.headers["X-Ops-Secret"] == "s3cret" for request in requests)
    assert requests[1].url.params["limit"] == "10"


def test_job_client_raises_on_http_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=403, json={"detail": "invalid ops secret"}, request=request)

    client = JobClient("http://api.local", "worker-7", "wrong", transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.claim_jobs())


class FakeJobClient:
    def __init__(self) -> None:
        self.results: list[dict[str, Any]] = []

    async def submit_result(self, job_id: str, *, status: str, result=None, error=None) -> dict[str, Any]:
        self.results.append({"job_id": job_id, "status": status, "result": result, "error": error})
        return {"outcome": "requeued" if status == "failed" else "succeeded"}


def test_process_job_reports_failures_with_error_code(monkeypatch) -> None:
    async def failing_execute_job(job, *, webform_timeout_seconds=None):
        raise FetchTimeout("webform submit timed out")

    monkeypatch.setattr(worker_main, "execute_job", failing_execute_job)
    client = FakeJobClient()
    outcome = asyncio.run(worker_main.process_job(client, JOB, webform_timeout_seconds=1.0))

    assert outcome == "requeued"
    assert client.results[0]["status"] == "failed"
    assert client.results[0]["error"] == {"code": "webform_timeout", "message": "webform submit timed out"}


def test_process_job_reports_success(monkeypatch) -> None:
    async def ok_execute_job(job, *, webform_timeout_seconds=None):
        return {"html": "<p>ok</p>", "http_status": 200}

    monkeypatch.setattr(worker_main, "execute_job", ok_execute_job)
    client = FakeJobClient()
    outcome = asyncio.run(worker_main.process_job(client, JOB, webform_timeout_seconds=1.0))

    assert outcome == "succeeded"
    assert client.results[0]["result"] == {"html": "<p>ok</p>", "http_status": 200}


def test_failure_error_codes() -> None:
    assert worker_main.failure_error(FetchError("x"))["code"] == "webform_failed"
    assert worker_main.failure_error(ValueError("x"))["code"] == "job_failed"

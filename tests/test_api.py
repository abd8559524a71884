from __future__ import annotations

import asyncio
import base64
import hashlib
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from erasure.core.signing import generate_ed25519_private_key_pem
from erasure.main import app
from erasure.services.interfaces import EvidenceArtifact
from erasure.services.providers import reset_providers
from erasure.services.repository import get_store

OPS_HEADERS = {"X-Ops-Secret": "test-ops-secret"}
WORKER_HEADERS = {**OPS_HEADERS, "X-Worker-Id": "worker-1"}
DISPATCH = {"controller_key": "truecaller", "subject": {"email": "a@b.com"}, "action_label": "create_request_v1"}


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.delenv("ERASURE_DATABASE_URL", raising=False)
    monkeypatch.setenv("ERASURE_OPS_SECRET", "test-ops-secret")
    monkeypatch.setenv("ERASURE_BLOB_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("ERASURE_SIGNING_BACKEND", "local-ed25519")
    monkeypatch.setenv("ERASURE_SIGNING_PRIVATE_KEY_PEM", generate_ed25519_private_key_pem())
    monkeypatch.setenv("ERASURE_SIGNING_KEY_ID", "api-test-key")
    reset_providers()
    yield TestClient(app)
    reset_providers()


def test_healthz_needs_no_secret(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ops_routes_require_the_shared_secret(client: TestClient) -> None:
    assert client.post("/dispatch", json=DISPATCH).status_code == 401
    assert client.post("/dispatch", json=DISPATCH, headers={"X-Ops-Secret": "nope"}).status_code == 403
    assert client.get("/dlq").status_code == 401


def test_dispatch_is_idempotent_over_http(client: TestClient) -> None:
    first = client.post("/dispatch", json=DISPATCH, headers=OPS_HEADERS)
    second = client.post("/dispatch", json=DISPATCH, headers=OPS_HEADERS)

    assert first.status_code == 200
    assert first.json()["idempotent"] == "new"
    assert first.json()["channel"] == "webform"
    assert second.json()["idempotent"] == "deduped"
    assert second.json()["channel"] == "noop"


def test_dispatch_rejects_missing_controller(client: TestClient) -> None:
    response = client.post("/dispatch", json={"subject": {}}, headers=OPS_HEADERS)
    assert response.status_code == 422


def test_dispatch_batch(client: TestClient) -> None:
    items = [dict(DISPATCH, subject={"email": f"user{index}@example.com"}) for index in range(3)]
    response = client.post("/dispatch/batch", json={"items": items}, headers=OPS_HEADERS)
    assert response.status_code == 200
    assert [result["idempotent"] for result in response.json()["results"]] == ["new", "new", "new"]


def test_worker_claims_completes_and_receipt_verifies(client: TestClient) -> None:
    job_id = client.post("/dispatch", json=DISPATCH, headers=OPS_HEADERS).json()["provider_ref"]

    assert client.post("/jobs/claim", json={"limit": 1}, headers=OPS_HEADERS).status_code == 400
    claimed = client.post("/jobs/claim", json={"limit": 5}, headers=WORKER_HEADERS)
    assert claimed.status_code == 200
    assert [job["id"] for job in claimed.json()] == [job_id]
    assert claimed.json()[0]["status"] == "running"

    done = client.post(
        f"/jobs/{job_id}/result",
        json={"status": "succeeded", "result": {"html": "<p>received</p>", "http_status": 200}},
        headers=WORKER_HEADERS,
    )
    assert done.status_code == 200
    assert done.json()["outcome"] == "succeeded"

    again = client.post(f"/jobs/{job_id}/result", json={"status": "succeeded", "result": {}}, headers=WORKER_HEADERS)
    assert again.status_code == 409

    verified = client.get(f"/receipts/{job_id}/verify", headers=OPS_HEADERS)
    assert verified.status_code == 200
    assert verified.json()["ok"] is True

    assert client.get(f"/jobs/{job_id}", headers=OPS_HEADERS).json()["status"] == "succeeded"
    assert client.get("/jobs/not-a-job", headers=OPS_HEADERS).status_code == 404


def test_failed_result_is_requeued(client: TestClient) -> None:
    job_id = client.post("/dispatch", json=DISPATCH, headers=OPS_HEADERS).json()["provider_ref"]
    client.post("/jobs/claim", json={"limit": 1}, headers=WORKER_HEADERS)
    response = client.post(
        f"/jobs/{job_id}/result",
        json={"status": "failed", "error": {"code": "webform_failed", "message": "http 500"}},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "requeued"

    reaped = client.post("/jobs/reap-expired", params={"limit": 10}, headers=OPS_HEADERS)
    assert reaped.json() == {"requeued": 0, "failed": 0}


def test_breaker_snapshot(client: TestClient) -> None:
    response = client.get("/breakers/OLX", headers=OPS_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["controller_key"] == "olx"
    assert body["state"] == "closed"
    assert body["threshold"] == 5
    assert body["allow"] is True


def test_dlq_empty_and_missing_entries(client: TestClient) -> None:
    assert client.get("/dlq", headers=OPS_HEADERS).json() == []
    assert client.post("/dlq/missing/retry", headers=OPS_HEADERS).status_code == 404
    assert client.delete("/dlq/missing", headers=OPS_HEADERS).status_code == 404


def test_sweep_with_nothing_due(client: TestClient) -> None:
    response = client.post("/verification/sweep", json={"batch_limit": 10}, headers=OPS_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"checked": 0, "verified": 0, "needs_review": 0, "inconclusive": 0, "committed": 0}


def test_ledger_commit_export_and_public_verification(client: TestClient) -> None:
    store = get_store()

    async def seed() -> None:
        for payload in ("<p>gone</p>", "<p>still gone</p>"):
            await store.insert_verification(
                action_id="action-1",
                subject_ref="subj-1",
                controller_key="olx",
                data_found=False,
                confidence=0.8,
                evidence=EvidenceArtifact(
                    url="https://olx.example/u/1",
                    http_status=410,
                    html_hash=hashlib.sha256(payload.encode()).hexdigest(),
                ),
                reason="gone",
                now=datetime(2026, 1, 1, tzinfo=timezone.utc),
                next_verification_at=None,
            )

    asyncio.run(seed())

    committed = client.post("/ledger/commit", json={"subject_ref": "subj-1"}, headers=OPS_HEADERS)
    assert committed.status_code == 201
    record = committed.json()
    assert record["evidence_count"] == 2
    assert record["key_id"] == "api-test-key"

    assert client.post("/ledger/commit", json={"subject_ref": "subj-1"}, headers=OPS_HEADERS).status_code == 409
    assert client.get(f"/ledger/{record['id']}", headers=OPS_HEADERS).json()["merkle_root_hex"] == record["merkle_root_hex"]

    verified = client.post(f"/ledger/{record['id']}/verify", params={"full": "true"})
    assert verified.status_code == 200
    assert verified.json()["ok"] is True
    assert verified.json()["full"] is True

    exported = client.get(f"/ledger/{record['id']}/export", headers=OPS_HEADERS)
    assert exported.status_code == 200
    assert exported.headers["content-type"] == "application/zip"

    bundle_b64 = base64.b64encode(exported.content).decode("ascii")
    checked = client.post("/ledger/verify-bundle", json={"bundle_b64": bundle_b64})
    assert checked.status_code == 200
    assert checked.json()["ok"] is True

    assert client.post("/ledger/verify-bundle", json={"bundle_b64": "***"}).status_code == 422
    assert client.get("/ledger/missing", headers=OPS_HEADERS).status_code == 404

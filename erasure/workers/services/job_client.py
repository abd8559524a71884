from __future__ import annotations

from typing import Any

import httpx

from erasure.core.security import OPS_SECRET_HEADER, WORKER_ID_HEADER


class JobClient:
    def __init__(
        self,
        base_url: str,
        worker_id: str,
        ops_secret: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            WORKER_ID_HEADER: worker_id,
            OPS_SECRET_HEADER: ops_secret,
        }
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport)

    async def claim_jobs(self, limit: int = 5, lease_seconds: int | None = None) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/jobs/claim",
                json={"limit": limit, "lease_seconds": lease_seconds},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def submit_result(
        self,
        job_id: str,
        *,
        status: str,
        result: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "status": status,
            "result": result,
            "error": error,
        }
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/jobs/{job_id}/result", json=payload, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def reap_expired_jobs(self, limit: int = 100) -> dict[str, int]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/jobs/reap-expired",
                params={"limit": limit},
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()
            return {"requeued": int(payload.get("requeued", 0)), "failed": int(payload.get("failed", 0))}

    async def trigger_sweep(self, batch_limit: int = 50) -> dict[str, int]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/verification/sweep",
                json={"batch_limit": batch_limit},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from erasure.core.errors import NoEvidenceError
from erasure.core.hashing import sha256_hex
from erasure.services.interfaces import JobStore, ReceiptRecord, ReceiptStore, utc_now
from erasure.services.repository import RepositoryNotFoundError

logger = logging.getLogger(__name__)


class ReceiptBackingStore(JobStore, ReceiptStore, Protocol):
    pass


def has_artifacts(result: dict[str, Any] | None) -> bool:
    if not isinstance(result, dict):
        return False
    return bool(result.get("html")) or bool(result.get("screenshot_b64"))


def artifact_hashes(result: dict[str, Any] | None) -> tuple[str | None, str | None]:
    """Digest the artifacts a job stored in its result payload."""
    if not isinstance(result, dict):
        return None, None

    html = result.get("html")
    html_hash = sha256_hex(html) if isinstance(html, str) and html else None

    screenshot_hash: str | None = None
    screenshot_b64 = result.get("screenshot_b64")
    if isinstance(screenshot_b64, str) and screenshot_b64:
        try:
            screenshot_hash = sha256_hex(base64.b64decode(screenshot_b64, validate=True))
        except (binascii.Error, ValueError):
            # undecodable bytes still hash deterministically as text
            screenshot_hash = sha256_hex(screenshot_b64)
    return html_hash, screenshot_hash


class ReceiptService:
    def __init__(self, store: ReceiptBackingStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def make_receipt(self, job_id: str) -> ReceiptRecord:
        job = await self._store.get_job(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if not has_artifacts(job.result):
            raise NoEvidenceError(f"job {job_id} has no stored artifacts")
        html_hash, screenshot_hash = artifact_hashes(job.result)
        receipt = await self._store.upsert_receipt(
            job_id,
            html_sha256=html_hash,
            screenshot_sha256=screenshot_hash,
            now=self._clock(),
        )
        logger.info("receipt stored job_id=%s", job_id)
        return receipt

    async def verify_receipt(self, job_id: str) -> dict[str, Any]:
        receipt = await self._store.get_receipt(job_id)
        if receipt is None:
            return {"ok": False, "error": "receipt_not_found"}

        job = await self._store.get_job(job_id)
        result = job.result if job is not None else None
        html_hash, screenshot_hash = artifact_hashes(result)

        stored = {"html_sha256": receipt.html_sha256, "screenshot_sha256": receipt.screenshot_sha256}
        recomputed = {"html_sha256": html_hash, "screenshot_sha256": screenshot_hash}
        html_ok = receipt.html_sha256 == html_hash
        screenshot_ok = receipt.screenshot_sha256 == screenshot_hash
        if not (html_ok and screenshot_ok):
            logger.warning(
                "receipt mismatch job_id=%s html_ok=%s screenshot_ok=%s",
                job_id,
                html_ok,
                screenshot_ok,
            )
        return {
            "ok": html_ok and screenshot_ok,
            "html_ok": html_ok,
            "screenshot_ok": screenshot_ok,
            "stored": stored,
            "recomputed": recomputed,
        }

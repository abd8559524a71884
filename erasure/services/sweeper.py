from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from erasure.core.errors import FetchError, FetchTimeout, NoEvidenceError
from erasure.core.hashing import sha256_hex
from erasure.services.blobs import BlobStore
from erasure.services.capture import CaptureClient
from erasure.services.interfaces import (
    ActionRecord,
    ActionStore,
    EvidenceArtifact,
    SubjectProfile,
    VerificationStore,
    utc_now,
)
from erasure.services.ledger import ProofLedger

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SWEEP_ELIGIBLE_STATUSES = {"sent", "escalated", "escalate_pending"}
GONE_STATUSES = {404, 410}
CONFIDENCE_FOUND = 0.9
CONFIDENCE_NOT_FOUND = 0.8
CONFIDENCE_INCONCLUSIVE = 0.3

OUTCOME_VERIFIED = "verified"
OUTCOME_NEEDS_REVIEW = "needs_review"
OUTCOME_INCONCLUSIVE = "inconclusive"
REASON_ARTIFACT_ERROR = "artifact_error"

_NON_DIGIT_RE = re.compile(r"\D+")


class SweepBackingStore(ActionStore, VerificationStore, Protocol):
    pass


@dataclass(slots=True)
class SweepSummary:
    checked: int = 0
    verified: int = 0
    needs_review: int = 0
    inconclusive: int = 0
    committed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class FetchedPage:
    url: str
    http_status: int
    text: str


def normalize_phone_digits(phone: str | None) -> str | None:
    digits = _NON_DIGIT_RE.sub("", phone or "")
    return digits or None


def identifier_needles(profile: SubjectProfile | None) -> list[str]:
    if profile is None:
        return []
    needles: list[str] = []
    if profile.email and profile.email.strip():
        needles.append(profile.email.strip().lower())
    if profile.name and profile.name.strip():
        needles.append(profile.name.strip().lower())
    digits = normalize_phone_digits(profile.phone)
    if digits:
        needles.append(digits)
        if len(digits) >= 6:
            needles.append(digits[-6:])
    return needles


def contains_identifier(text: str, profile: SubjectProfile | None) -> bool:
    haystack = (text or "").lower()
    return any(needle and needle in haystack for needle in identifier_needles(profile))


class VerificationSweeper:
    def __init__(
        self,
        store: SweepBackingStore,
        *,
        blobs: BlobStore,
        ledger: ProofLedger | None = None,
        capture: CaptureClient | None = None,
        fetch_timeout_seconds: float = 8.0,
        batch_size: int = 5,
        batch_pause_seconds: float = 1.0,
        recheck_hours: int = 72,
        inconclusive_retry_hours: int = 6,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._ledger = ledger
        self._capture = capture
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._batch_size = max(1, batch_size)
        self._batch_pause_seconds = max(0.0, batch_pause_seconds)
        self._recheck = timedelta(hours=max(1, recheck_hours))
        self._inconclusive_retry = timedelta(hours=max(1, inconclusive_retry_hours))
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

    async def sweep(self, batch_limit: int = 50) -> SweepSummary:
        summary = SweepSummary()
        with tracer.start_as_current_span("verification.sweep") as span:
            actions = await self._store.list_due_actions(
                statuses=SWEEP_ELIGIBLE_STATUSES,
                now=self._clock(),
                limit=max(1, batch_limit),
            )
            span.set_attribute("verification.due", len(actions))

            touched_subjects: set[str] = set()
            async with httpx.AsyncClient(
                timeout=self._fetch_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                for start in range(0, len(actions), self._batch_size):
                    if start:
                        await self._sleep(self._batch_pause_seconds)
                    chunk = actions[start : start + self._batch_size]
                    outcomes = await asyncio.gather(*(self._check_isolated(action, client) for action in chunk))
                    for action, (outcome, hashed) in zip(chunk, outcomes):
                        summary.checked += 1
                        if outcome == OUTCOME_VERIFIED:
                            summary.verified += 1
                        elif outcome == OUTCOME_NEEDS_REVIEW:
                            summary.needs_review += 1
                        else:
                            summary.inconclusive += 1
                        if hashed:
                            touched_subjects.add(action.subject_ref)

            if self._ledger is not None:
                for subject_ref in sorted(touched_subjects):
                    try:
                        await self._ledger.commit(subject_ref)
                    except NoEvidenceError:
                        continue
                    except Exception:
                        # evidence stays in the store; the next commit window picks it up
                        logger.exception("ledger commit failed subject=%s", subject_ref)
                        continue
                    summary.committed += 1

            span.set_attribute("verification.checked", summary.checked)
        logger.info(
            "verification sweep checked=%s verified=%s needs_review=%s inconclusive=%s committed=%s",
            summary.checked,
            summary.verified,
            summary.needs_review,
            summary.inconclusive,
            summary.committed,
        )
        return summary

    async def _check_isolated(self, action: ActionRecord, client: httpx.AsyncClient) -> tuple[str, bool]:
        try:
            return await self.check_action(action, client)
        except Exception:
            logger.exception("verification check failed action_id=%s", action.id)
        try:
            await self._record_inconclusive(
                action,
                url=action.target_url,
                http_status=None,
                reason=REASON_ARTIFACT_ERROR,
                now=self._clock(),
            )
        except Exception:
            # the action stays due and is picked up by the next sweep
            logger.exception("could not record failed verification action_id=%s", action.id)
        return OUTCOME_INCONCLUSIVE, False

    async def check_action(self, action: ActionRecord, client: httpx.AsyncClient) -> tuple[str, bool]:
        """Verify one action; returns the outcome and whether new evidence hashes were recorded."""
        with tracer.start_as_current_span("verification.check_action") as span:
            span.set_attribute("action.id", action.id)
            span.set_attribute("controller.key", action.controller_key)
            now = self._clock()

            url = await self._store.resolve_discovered_url(action.subject_ref, action.controller_key)
            url = url or action.target_url
            if not url:
                await self._record(
                    action,
                    outcome=OUTCOME_NEEDS_REVIEW,
                    data_found=False,
                    confidence=CONFIDENCE_INCONCLUSIVE,
                    evidence=EvidenceArtifact(url=None, http_status=None),
                    reason="no_url",
                    now=now,
                    next_check=None,
                )
                return OUTCOME_NEEDS_REVIEW, False

            try:
                page = await self._fetch(client, url)
            except FetchError as exc:
                logger.info("evidence fetch inconclusive action_id=%s error=%s", action.id, exc)
                reason = "fetch_timeout" if isinstance(exc, FetchTimeout) else "fetch_error"
                await self._record_inconclusive(action, url=url, http_status=None, reason=reason, now=now)
                return OUTCOME_INCONCLUSIVE, False

            span.set_attribute("http.status_code", page.http_status)
            if page.http_status != 200 and page.http_status not in GONE_STATUSES:
                await self._record_inconclusive(
                    action,
                    url=url,
                    http_status=page.http_status,
                    reason=f"http_{page.http_status}",
                    now=now,
                )
                return OUTCOME_INCONCLUSIVE, False

            profile = await self._store.get_subject_profile(action.subject_ref)
            if not identifier_needles(profile):
                evidence, _ = await self._store_artifacts(action, url, page, now)
                await self._record(
                    action,
                    outcome=OUTCOME_NEEDS_REVIEW,
                    data_found=False,
                    confidence=CONFIDENCE_INCONCLUSIVE,
                    evidence=evidence,
                    reason="no_identifiers",
                    now=now,
                    next_check=None,
                )
                return OUTCOME_NEEDS_REVIEW, bool(evidence.html_hash or evidence.screenshot_hash)

            evidence, tested_text = await self._store_artifacts(action, url, page, now)
            found = contains_identifier(tested_text, profile)
            outcome = OUTCOME_NEEDS_REVIEW if found else OUTCOME_VERIFIED
            if found:
                reason = "identifiers_present"
            elif page.http_status in GONE_STATUSES:
                reason = "gone"
            else:
                reason = "identifiers_absent"
            await self._record(
                action,
                outcome=outcome,
                data_found=found,
                confidence=CONFIDENCE_FOUND if found else CONFIDENCE_NOT_FOUND,
                evidence=evidence,
                reason=reason,
                now=now,
                next_check=now + self._recheck,
            )
            return outcome, bool(evidence.html_hash or evidence.screenshot_hash)

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> FetchedPage:
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"fetch timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"fetch failed: {url}: {exc}") from exc
        return FetchedPage(url=url, http_status=response.status_code, text=response.text)

    async def _store_artifacts(
        self,
        action: ActionRecord,
        url: str,
        page: FetchedPage,
        now: datetime,
    ) -> tuple[EvidenceArtifact, str]:
        """Capture, hash and store the page; returns the evidence and the HTML text that was hashed."""
        html_bytes: bytes | None = page.text.encode("utf-8") if page.text else None
        screenshot: bytes | None = None
        if self._capture is not None:
            try:
                captured = await self._capture.capture(url)
            except FetchError as exc:
                logger.warning("capture failed action_id=%s error=%s", action.id, exc)
            else:
                html_bytes = captured.html or html_bytes
                screenshot = captured.screenshot

        stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
        prefix = f"verifications/{action.subject_ref}/{action.id}/{stamp}"
        evidence = EvidenceArtifact(url=url, http_status=page.http_status)
        if html_bytes:
            evidence.html_hash = sha256_hex(html_bytes)
            evidence.html_path = await self._blobs.put(f"{prefix}.html", html_bytes)
        if screenshot:
            evidence.screenshot_hash = sha256_hex(screenshot)
            evidence.screenshot_path = await self._blobs.put(f"{prefix}.png", screenshot)
        tested_text = html_bytes.decode("utf-8", errors="replace") if html_bytes else page.text
        return evidence, tested_text

    async def _record_inconclusive(
        self,
        action: ActionRecord,
        *,
        url: str | None,
        http_status: int | None,
        reason: str,
        now: datetime,
    ) -> None:
        await self._record(
            action,
            outcome=None,
            data_found=False,
            confidence=CONFIDENCE_INCONCLUSIVE,
            evidence=EvidenceArtifact(url=url, http_status=http_status),
            reason=reason,
            now=now,
            next_check=now + self._inconclusive_retry,
        )

    async def _record(
        self,
        action: ActionRecord,
        *,
        outcome: str | None,
        data_found: bool,
        confidence: float,
        evidence: EvidenceArtifact,
        reason: str,
        now: datetime,
        next_check: datetime | None,
    ) -> None:
        record = await self._store.insert_verification(
            action_id=action.id,
            subject_ref=action.subject_ref,
            controller_key=action.controller_key,
            data_found=data_found,
            confidence=confidence,
            evidence=evidence,
            reason=reason,
            now=now,
            next_verification_at=next_check,
        )
        info: dict[str, Any] = {
            "last_verification_id": record.id,
            "evidence": evidence.to_dict(),
            "observed_present": data_found,
            "reason": reason,
        }
        await self._store.update_action_status(
            action.id,
            status=outcome or action.status,
            now=now,
            verification_info=info,
        )

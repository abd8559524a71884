from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from erasure.services.interfaces import (
    ActionRecord,
    CircuitState,
    DeadLetterEntry,
    EvidenceArtifact,
    JobRecord,
    JobSpec,
    LedgerRecord,
    ReceiptRecord,
    SubjectProfile,
    VerificationRecord,
)


class InMemoryStore:
    """Single-process store used when no database is configured and in tests.

    Every conditional write checks and mutates without awaiting in between, so
    it is atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, JobRecord] = {}
        self.idempotency_keys: dict[str, dict[str, Any]] = {}
        self.circuits: dict[str, CircuitState] = {}
        self.dead_letters: dict[str, DeadLetterEntry] = {}
        self.actions: dict[str, ActionRecord] = {}
        self.subjects: dict[str, SubjectProfile] = {}
        self.discovered_items: list[dict[str, Any]] = []
        self.verifications: list[VerificationRecord] = []
        self.ledger: list[LedgerRecord] = []
        self.receipts: dict[str, ReceiptRecord] = {}

    async def close(self) -> None:
        return None

    # seeding helpers for upstream feeds

    def add_subject_profile(self, profile: SubjectProfile) -> None:
        self.subjects[profile.subject_ref] = profile

    def add_discovered_item(self, *, subject_ref: str, controller_key: str, url: str, confidence: float = 1.0) -> None:
        self.discovered_items.append(
            {
                "subject_ref": subject_ref,
                "controller_key": controller_key,
                "url": url,
                "confidence": confidence,
            }
        )

    # jobs

    async def enqueue_job(self, spec: JobSpec, *, now: datetime) -> JobRecord:
        job = JobRecord(
            id=str(uuid4()),
            kind=spec.kind,
            status="queued",
            controller_key=spec.controller_key,
            subject_ref=spec.subject_ref,
            target_url=spec.target_url,
            metadata=copy.deepcopy(spec.metadata),
            attempts=0,
            max_attempts=max(1, spec.max_attempts),
            error=None,
            result=None,
            created_at=now,
            next_run_at=now,
        )
        self.jobs[job.id] = job
        return replace(job)

    async def get_job(self, job_id: str) -> JobRecord | None:
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def list_claimable_job_ids(self, *, now: datetime, limit: int) -> list[str]:
        candidates = [
            job
            for job in self.jobs.values()
            if job.status == "queued" and job.attempts < job.max_attempts and job.next_run_at <= now
        ]
        candidates.sort(key=lambda job: (job.next_run_at, job.created_at))
        return [job.id for job in candidates[:limit]]

    async def try_claim_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        lease_seconds: int,
        now: datetime,
    ) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.status != "queued" or job.attempts >= job.max_attempts:
            return None
        job.status = "running"
        job.attempts += 1
        job.worker_id = worker_id
        job.claimed_at = now
        job.lease_expires_at = now + timedelta(seconds=lease_seconds)
        return replace(job)

    async def transition_job(
        self,
        job_id: str,
        *,
        from_status: str,
        worker_id: str | None,
        to_status: str,
        now: datetime,
        result: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
        next_run_at: datetime | None = None,
    ) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.status != from_status:
            return None
        if worker_id is not None and job.worker_id != worker_id:
            return None
        job.status = to_status
        job.result = copy.deepcopy(result) if result is not None else job.result
        job.error = copy.deepcopy(error) if error is not None else job.error
        job.worker_id = None
        job.lease_expires_at = None
        if to_status == "queued":
            job.next_run_at = next_run_at or now
        else:
            job.finished_at = now
        return replace(job)

    async def list_expired_jobs(self, *, now: datetime, limit: int) -> list[JobRecord]:
        expired = [
            job
            for job in self.jobs.values()
            if job.status == "running" and job.lease_expires_at is not None and job.lease_expires_at <= now
        ]
        expired.sort(key=lambda job: job.lease_expires_at or now)
        return [replace(job) for job in expired[:limit]]

    # idempotency

    async def reserve_idempotency_key(
        self,
        key: str,
        *,
        action_label: str,
        ttl_seconds: int,
        now: datetime,
    ) -> bool:
        existing = self.idempotency_keys.get(key)
        if existing is not None and existing["expires_at"] > now:
            return False
        self.idempotency_keys[key] = {
            "key": key,
            "action_label": action_label,
            "created_at": now,
            "expires_at": now + timedelta(seconds=ttl_seconds),
        }
        return True

    async def release_idempotency_key(self, key: str) -> bool:
        return self.idempotency_keys.pop(key, None) is not None

    # circuit breaker

    async def get_circuit(self, controller_key: str) -> CircuitState | None:
        state = self.circuits.get(controller_key)
        return replace(state) if state else None

    async def save_circuit(self, state: CircuitState, *, expected_version: int) -> bool:
        current = self.circuits.get(state.controller_key)
        current_version = current.version if current else 0
        if current_version != expected_version:
            return False
        self.circuits[state.controller_key] = replace(state, version=expected_version + 1)
        return True

    # dead-letter queue

    async def push_dead_letter(
        self,
        *,
        channel: str,
        controller_key: str | None,
        subject_ref: str | None,
        payload: dict[str, Any],
        error_code: str | None,
        error_note: str | None,
        retries: int,
        now: datetime,
    ) -> DeadLetterEntry:
        entry = DeadLetterEntry(
            id=str(uuid4()),
            channel=channel,
            controller_key=controller_key,
            subject_ref=subject_ref,
            payload=copy.deepcopy(payload),
            error_code=error_code,
            error_note=error_note,
            retries=retries,
            created_at=now,
        )
        self.dead_letters[entry.id] = entry
        return replace(entry)

    async def list_dead_letters(
        self,
        *,
        controller_key: str | None,
        channel: str | None,
        limit: int,
    ) -> list[DeadLetterEntry]:
        entries = [
            entry
            for entry in self.dead_letters.values()
            if (controller_key is None or entry.controller_key == controller_key)
            and (channel is None or entry.channel == channel)
        ]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return [replace(entry) for entry in entries[:limit]]

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        entry = self.dead_letters.get(entry_id)
        return replace(entry) if entry else None

    async def update_dead_letter(
        self,
        entry_id: str,
        *,
        retries: int,
        error_code: str | None,
        error_note: str | None,
    ) -> DeadLetterEntry | None:
        entry = self.dead_letters.get(entry_id)
        if entry is None:
            return None
        entry.retries = retries
        entry.error_code = error_code
        entry.error_note = error_note
        return replace(entry)

    async def delete_dead_letter(self, entry_id: str) -> bool:
        return self.dead_letters.pop(entry_id, None) is not None

    # actions and subjects

    async def create_action(
        self,
        *,
        subject_ref: str,
        controller_key: str,
        target_url: str | None,
        status: str,
        subject_preview: dict[str, Any],
        now: datetime,
    ) -> ActionRecord:
        action = ActionRecord(
            id=str(uuid4()),
            subject_ref=subject_ref,
            controller_key=controller_key,
            status=status,
            target_url=target_url,
            subject_preview=dict(subject_preview),
            verification_info={},
            created_at=now,
            updated_at=now,
        )
        self.actions[action.id] = action
        return replace(action)

    async def get_action(self, action_id: str) -> ActionRecord | None:
        action = self.actions.get(action_id)
        return replace(action) if action else None

    async def list_due_actions(self, *, statuses: set[str], now: datetime, limit: int) -> list[ActionRecord]:
        due: list[ActionRecord] = []
        for action in sorted(self.actions.values(), key=lambda item: item.created_at or now):
            if action.status not in statuses:
                continue
            latest = self._latest_verification(action.id)
            if latest is not None and latest.next_verification_at is not None and latest.next_verification_at > now:
                continue
            due.append(replace(action))
            if len(due) >= limit:
                break
        return due

    async def update_action_status(
        self,
        action_id: str,
        *,
        status: str,
        now: datetime,
        verification_info: dict[str, Any] | None = None,
    ) -> ActionRecord | None:
        action = self.actions.get(action_id)
        if action is None:
            return None
        action.status = status
        action.updated_at = now
        if verification_info is not None:
            action.verification_info = {**action.verification_info, **verification_info}
        return replace(action)

    async def get_subject_profile(self, subject_ref: str) -> SubjectProfile | None:
        profile = self.subjects.get(subject_ref)
        return replace(profile) if profile else None

    async def resolve_discovered_url(self, subject_ref: str, controller_key: str) -> str | None:
        matches = [
            item
            for item in self.discovered_items
            if item["subject_ref"] == subject_ref and item["controller_key"] == controller_key and item.get("url")
        ]
        if not matches:
            return None
        matches.sort(key=lambda item: item.get("confidence") or 0.0, reverse=True)
        return matches[0]["url"]

    # verifications

    async def insert_verification(
        self,
        *,
        action_id: str,
        subject_ref: str,
        controller_key: str,
        data_found: bool,
        confidence: float,
        evidence: EvidenceArtifact,
        reason: str,
        now: datetime,
        next_verification_at: datetime | None,
    ) -> VerificationRecord:
        record = VerificationRecord(
            id=str(uuid4()),
            action_id=action_id,
            subject_ref=subject_ref,
            controller_key=controller_key,
            data_found=data_found,
            confidence=confidence,
            evidence=replace(evidence),
            reason=reason,
            created_at=now,
            next_verification_at=next_verification_at,
        )
        self.verifications.append(record)
        return replace(record)

    async def list_verifications(self, action_id: str) -> list[VerificationRecord]:
        return [replace(record) for record in self.verifications if record.action_id == action_id]

    async def list_evidence_hashes(
        self,
        subject_ref: str,
        *,
        since: datetime | None,
        until: datetime | None = None,
    ) -> list[str]:
        hashes: list[str] = []
        for record in self.verifications:
            if record.subject_ref != subject_ref:
                continue
            if since is not None and record.created_at <= since:
                continue
            if until is not None and record.created_at > until:
                continue
            for digest in (record.evidence.html_hash, record.evidence.screenshot_hash):
                if digest:
                    hashes.append(digest)
        return hashes

    def _latest_verification(self, action_id: str) -> VerificationRecord | None:
        latest: VerificationRecord | None = None
        for record in self.verifications:
            if record.action_id != action_id:
                continue
            if latest is None or record.created_at >= latest.created_at:
                latest = record
        return latest

    # proof ledger

    async def insert_ledger_record(
        self,
        *,
        subject_ref: str,
        merkle_root: str,
        algorithm: str,
        key_id: str,
        signature_b64: str,
        evidence_hashes: list[str],
        now: datetime,
    ) -> LedgerRecord:
        record = LedgerRecord(
            id=str(uuid4()),
            subject_ref=subject_ref,
            merkle_root=merkle_root,
            algorithm=algorithm,
            key_id=key_id,
            signature_b64=signature_b64,
            evidence_count=len(evidence_hashes),
            evidence_hashes=list(evidence_hashes),
            created_at=now,
        )
        self.ledger.append(record)
        return replace(record)

    async def get_ledger_record(self, record_id: str) -> LedgerRecord | None:
        for record in self.ledger:
            if record.id == record_id:
                return replace(record)
        return None

    async def latest_ledger_record(self, subject_ref: str) -> LedgerRecord | None:
        records = [record for record in self.ledger if record.subject_ref == subject_ref]
        if not records:
            return None
        return replace(max(records, key=lambda record: record.created_at))

    # artifact receipts

    async def upsert_receipt(
        self,
        job_id: str,
        *,
        html_sha256: str | None,
        screenshot_sha256: str | None,
        now: datetime,
    ) -> ReceiptRecord:
        receipt = ReceiptRecord(
            job_id=job_id,
            html_sha256=html_sha256,
            screenshot_sha256=screenshot_sha256,
            created_at=now,
        )
        self.receipts[job_id] = receipt
        return replace(receipt)

    async def get_receipt(self, job_id: str) -> ReceiptRecord | None:
        receipt = self.receipts.get(job_id)
        return replace(receipt) if receipt else None

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

JOB_STATUSES = {"queued", "running", "succeeded", "failed"}
TERMINAL_JOB_STATUSES = {"succeeded", "failed"}
ACTION_STATUSES = {"draft", "sent", "escalate_pending", "escalated", "needs_review", "verified", "failed"}
CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"


@dataclass(slots=True)
class JobSpec:
    kind: str
    controller_key: str
    target_url: str | None
    subject_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 3


@dataclass(slots=True)
class JobRecord:
    id: str
    kind: str
    status: str
    controller_key: str
    subject_ref: str | None
    target_url: str | None
    metadata: dict[str, Any]
    attempts: int
    max_attempts: int
    error: dict[str, Any] | None
    result: dict[str, Any] | None
    created_at: datetime
    next_run_at: datetime
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    finished_at: datetime | None = None
    worker_id: str | None = None


@dataclass(slots=True)
class CircuitState:
    controller_key: str
    state: str = CIRCUIT_CLOSED
    failure_count: int = 0
    window_started_at: datetime | None = None
    opened_at: datetime | None = None
    cooldown_seconds: int = 0
    trip_count: int = 0
    probe_in_flight: bool = False
    last_error_code: str | None = None
    last_error_note: str | None = None
    version: int = 0


@dataclass(slots=True)
class DeadLetterEntry:
    id: str
    channel: str
    controller_key: str | None
    subject_ref: str | None
    payload: dict[str, Any]
    error_code: str | None
    error_note: str | None
    retries: int
    created_at: datetime


@dataclass(slots=True)
class SubjectProfile:
    subject_ref: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(slots=True)
class ActionRecord:
    id: str
    subject_ref: str
    controller_key: str
    status: str
    target_url: str | None
    subject_preview: dict[str, Any] = field(default_factory=dict)
    verification_info: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class EvidenceArtifact:
    url: str | None
    http_status: int | None
    html_hash: str | None = None
    screenshot_hash: str | None = None
    html_path: str | None = None
    screenshot_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "http_status": self.http_status,
            "html_hash": self.html_hash,
            "screenshot_hash": self.screenshot_hash,
            "html_path": self.html_path,
            "screenshot_path": self.screenshot_path,
        }


@dataclass(slots=True)
class VerificationRecord:
    id: str
    action_id: str
    subject_ref: str
    controller_key: str
    data_found: bool
    confidence: float
    evidence: EvidenceArtifact
    reason: str
    created_at: datetime
    next_verification_at: datetime | None


@dataclass(slots=True)
class LedgerRecord:
    id: str
    subject_ref: str
    merkle_root: str
    algorithm: str
    key_id: str
    signature_b64: str
    evidence_count: int
    evidence_hashes: list[str]
    created_at: datetime


@dataclass(slots=True)
class ReceiptRecord:
    job_id: str
    html_sha256: str | None
    screenshot_sha256: str | None
    created_at: datetime


class JobStore(Protocol):
    async def enqueue_job(self, spec: JobSpec, *, now: datetime) -> JobRecord:
        ...

    async def get_job(self, job_id: str) -> JobRecord | None:
        ...

    async def list_claimable_job_ids(self, *, now: datetime, limit: int) -> list[str]:
        ...

    async def try_claim_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        lease_seconds: int,
        now: datetime,
    ) -> JobRecord | None:
        ...

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
        ...

    async def list_expired_jobs(self, *, now: datetime, limit: int) -> list[JobRecord]:
        ...


class IdempotencyStore(Protocol):
    async def reserve_idempotency_key(
        self,
        key: str,
        *,
        action_label: str,
        ttl_seconds: int,
        now: datetime,
    ) -> bool:
        ...

    async def release_idempotency_key(self, key: str) -> bool:
        ...


class BreakerStore(Protocol):
    async def get_circuit(self, controller_key: str) -> CircuitState | None:
        ...

    async def save_circuit(self, state: CircuitState, *, expected_version: int) -> bool:
        ...


class DeadLetterStore(Protocol):
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
        ...

    async def list_dead_letters(
        self,
        *,
        controller_key: str | None,
        channel: str | None,
        limit: int,
    ) -> list[DeadLetterEntry]:
        ...

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        ...

    async def update_dead_letter(
        self,
        entry_id: str,
        *,
        retries: int,
        error_code: str | None,
        error_note: str | None,
    ) -> DeadLetterEntry | None:
        ...

    async def delete_dead_letter(self, entry_id: str) -> bool:
        ...


class ActionStore(Protocol):
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
        ...

    async def get_action(self, action_id: str) -> ActionRecord | None:
        ...

    async def list_due_actions(self, *, statuses: set[str], now: datetime, limit: int) -> list[ActionRecord]:
        ...

    async def update_action_status(
        self,
        action_id: str,
        *,
        status: str,
        now: datetime,
        verification_info: dict[str, Any] | None = None,
    ) -> ActionRecord | None:
        ...

    async def get_subject_profile(self, subject_ref: str) -> SubjectProfile | None:
        ...

    async def resolve_discovered_url(self, subject_ref: str, controller_key: str) -> str | None:
        ...


class VerificationStore(Protocol):
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
        ...

    async def list_verifications(self, action_id: str) -> list[VerificationRecord]:
        ...

    async def list_evidence_hashes(
        self,
        subject_ref: str,
        *,
        since: datetime | None,
        until: datetime | None = None,
    ) -> list[str]:
        ...


class LedgerStore(Protocol):
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
        ...

    async def get_ledger_record(self, record_id: str) -> LedgerRecord | None:
        ...

    async def latest_ledger_record(self, subject_ref: str) -> LedgerRecord | None:
        ...


class ReceiptStore(Protocol):
    async def upsert_receipt(
        self,
        job_id: str,
        *,
        html_sha256: str | None,
        screenshot_sha256: str | None,
        now: datetime,
    ) -> ReceiptRecord:
        ...

    async def get_receipt(self, job_id: str) -> ReceiptRecord | None:
        ...


class PipelineStore(
    JobStore,
    IdempotencyStore,
    BreakerStore,
    DeadLetterStore,
    ActionStore,
    VerificationStore,
    LedgerStore,
    ReceiptStore,
    Protocol,
):
    async def close(self) -> None:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

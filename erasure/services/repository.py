from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from erasure.core.config import get_settings
from erasure.services.interfaces import (
    ActionRecord,
    CircuitState,
    DeadLetterEntry,
    EvidenceArtifact,
    JobRecord,
    JobSpec,
    LedgerRecord,
    PipelineStore,
    ReceiptRecord,
    SubjectProfile,
    VerificationRecord,
)
from erasure.services.store import InMemoryStore


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


_JOB_COLUMNS = """
  id::text as id,
  kind,
  status,
  controller_key,
  subject_ref,
  target_url,
  metadata,
  attempts,
  max_attempts,
  error,
  result,
  worker_id,
  created_at,
  next_run_at,
  claimed_at,
  lease_expires_at,
  finished_at
"""

_DEAD_LETTER_COLUMNS = """
  id::text as id,
  channel,
  controller_key,
  subject_ref,
  payload,
  error_code,
  error_note,
  retries,
  created_at
"""

_ACTION_COLUMNS = """
  id::text as id,
  subject_ref,
  controller_key,
  status,
  target_url,
  subject_preview,
  verification_info,
  created_at,
  updated_at
"""

_VERIFICATION_COLUMNS = """
  id::text as id,
  action_id::text as action_id,
  subject_ref,
  controller_key,
  data_found,
  confidence,
  evidence,
  reason,
  created_at,
  next_verification_at
"""

_LEDGER_COLUMNS = """
  id::text as id,
  subject_ref,
  merkle_root,
  algorithm,
  key_id,
  signature_b64,
  evidence_count,
  evidence_hashes,
  created_at
"""

_CIRCUIT_COLUMNS = """
  controller_key,
  state,
  failure_count,
  window_started_at,
  opened_at,
  cooldown_seconds,
  trip_count,
  probe_in_flight,
  last_error_code,
  last_error_note,
  version
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # jobs

    async def enqueue_job(self, spec: JobSpec, *, now: datetime) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into jobs (
                  kind,
                  status,
                  controller_key,
                  subject_ref,
                  target_url,
                  metadata,
                  attempts,
                  max_attempts,
                  created_at,
                  next_run_at
                )
                values ($1, 'queued', $2, $3, $4, $5::jsonb, 0, $6, $7, $7)
                returning {_JOB_COLUMNS}
                """,
                spec.kind,
                spec.controller_key,
                spec.subject_ref,
                spec.target_url,
                json.dumps(spec.metadata or {}),
                max(1, spec.max_attempts),
                now,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryUnavailableError("job enqueue failed") from exc
        if not row:
            raise RepositoryConflictError("failed to enqueue job")
        return self._job_from_row(row)

    async def get_job(self, job_id: str) -> JobRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_from_row(row) if row else None

    async def list_claimable_job_ids(self, *, now: datetime, limit: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id
            from jobs
            where status = 'queued'
              and attempts < max_attempts
              and next_run_at <= $1
            order by next_run_at asc, created_at asc
            limit $2
            """,
            now,
            max(1, min(limit, 1000)),
        )
        return [row["id"] for row in rows]

    async def try_claim_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        lease_seconds: int,
        now: datetime,
    ) -> JobRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update jobs
                set
                  status = 'running',
                  attempts = attempts + 1,
                  worker_id = $2,
                  claimed_at = $3,
                  lease_expires_at = $3 + ($4::int * interval '1 second')
                where id = $1::uuid
                  and status = 'queued'
                  and attempts < max_attempts
                returning {_JOB_COLUMNS}
                """,
                job_id,
                worker_id,
                now,
                lease_seconds,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_from_row(row) if row else None

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
        pool = await self._get_pool()
        requeue = to_status == "queued"
        try:
            row = await pool.fetchrow(
                f"""
                update jobs
                set
                  status = $3,
                  result = coalesce($5::jsonb, result),
                  error = coalesce($6::jsonb, error),
                  worker_id = null,
                  lease_expires_at = null,
                  next_run_at = case when $7 then coalesce($8, $4) else next_run_at end,
                  finished_at = case when $7 then finished_at else $4 end
                where id = $1::uuid
                  and status = $2
                  and ($9::text is null or worker_id = $9)
                returning {_JOB_COLUMNS}
                """,
                job_id,
                from_status,
                to_status,
                now,
                json.dumps(result) if result is not None else None,
                json.dumps(error) if error is not None else None,
                requeue,
                next_run_at,
                worker_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_from_row(row) if row else None

    async def list_expired_jobs(self, *, now: datetime, limit: int) -> list[JobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where status = 'running'
              and lease_expires_at is not null
              and lease_expires_at <= $1
            order by lease_expires_at asc
            limit $2
            """,
            now,
            max(1, min(limit, 1000)),
        )
        return [self._job_from_row(row) for row in rows]

    # idempotency

    async def reserve_idempotency_key(
        self,
        key: str,
        *,
        action_label: str,
        ttl_seconds: int,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into idempotency_keys (key, action_label, created_at, expires_at)
                values ($1, $2, $3, $3 + ($4::int * interval '1 second'))
                on conflict (key) do update
                set
                  action_label = excluded.action_label,
                  created_at = excluded.created_at,
                  expires_at = excluded.expires_at
                where idempotency_keys.expires_at <= $3
                returning key
                """,
                key,
                action_label,
                now,
                ttl_seconds,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryUnavailableError("idempotency reservation failed") from exc
        return row is not None

    async def release_idempotency_key(self, key: str) -> bool:
        pool = await self._get_pool()
        status = await pool.execute("delete from idempotency_keys where key = $1", key)
        return status.endswith(" 1")

    # circuit breaker

    async def get_circuit(self, controller_key: str) -> CircuitState | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_CIRCUIT_COLUMNS} from controller_circuits where controller_key = $1",
            controller_key,
        )
        return self._circuit_from_row(row) if row else None

    async def save_circuit(self, state: CircuitState, *, expected_version: int) -> bool:
        pool = await self._get_pool()
        values = (
            state.controller_key,
            state.state,
            state.failure_count,
            state.window_started_at,
            state.opened_at,
            state.cooldown_seconds,
            state.trip_count,
            state.probe_in_flight,
            state.last_error_code,
            state.last_error_note,
        )
        if expected_version == 0:
            row = await pool.fetchrow(
                """
                insert into controller_circuits (
                  controller_key,
                  state,
                  failure_count,
                  window_started_at,
                  opened_at,
                  cooldown_seconds,
                  trip_count,
                  probe_in_flight,
                  last_error_code,
                  last_error_note,
                  version
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, 1)
                on conflict (controller_key) do nothing
                returning version
                """,
                *values,
            )
            return row is not None

        row = await pool.fetchrow(
            """
            update controller_circuits
            set
              state = $2,
              failure_count = $3,
              window_started_at = $4,
              opened_at = $5,
              cooldown_seconds = $6,
              trip_count = $7,
              probe_in_flight = $8,
              last_error_code = $9,
              last_error_note = $10,
              version = version + 1
            where controller_key = $1 and version = $11
            returning version
            """,
            *values,
            expected_version,
        )
        return row is not None

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into dead_letters (
              channel,
              controller_key,
              subject_ref,
              payload,
              error_code,
              error_note,
              retries,
              created_at
            )
            values ($1, $2, $3, $4::jsonb, $5, $6, $7, $8)
            returning {_DEAD_LETTER_COLUMNS}
            """,
            channel,
            controller_key,
            subject_ref,
            json.dumps(payload or {}),
            error_code,
            error_note,
            retries,
            now,
        )
        if not row:
            raise RepositoryConflictError("failed to push dead letter")
        return self._dead_letter_from_row(row)

    async def list_dead_letters(
        self,
        *,
        controller_key: str | None,
        channel: str | None,
        limit: int,
    ) -> list[DeadLetterEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_DEAD_LETTER_COLUMNS}
            from dead_letters
            where ($1::text is null or controller_key = $1)
              and ($2::text is null or channel = $2)
            order by created_at desc
            limit $3
            """,
            controller_key,
            channel,
            max(1, min(limit, 500)),
        )
        return [self._dead_letter_from_row(row) for row in rows]

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_DEAD_LETTER_COLUMNS} from dead_letters where id = $1::uuid",
                entry_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._dead_letter_from_row(row) if row else None

    async def update_dead_letter(
        self,
        entry_id: str,
        *,
        retries: int,
        error_code: str | None,
        error_note: str | None,
    ) -> DeadLetterEntry | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update dead_letters
                set retries = $2, error_code = $3, error_note = $4
                where id = $1::uuid
                returning {_DEAD_LETTER_COLUMNS}
                """,
                entry_id,
                retries,
                error_code,
                error_note,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._dead_letter_from_row(row) if row else None

    async def delete_dead_letter(self, entry_id: str) -> bool:
        pool = await self._get_pool()
        try:
            status = await pool.execute("delete from dead_letters where id = $1::uuid", entry_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return status.endswith(" 1")

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into actions (
              subject_ref,
              controller_key,
              status,
              target_url,
              subject_preview,
              created_at,
              updated_at
            )
            values ($1, $2, $3, $4, $5::jsonb, $6, $6)
            returning {_ACTION_COLUMNS}
            """,
            subject_ref,
            controller_key,
            status,
            target_url,
            json.dumps(subject_preview or {}),
            now,
        )
        if not row:
            raise RepositoryConflictError("failed to create action")
        return self._action_from_row(row)

    async def get_action(self, action_id: str) -> ActionRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_ACTION_COLUMNS} from actions where id = $1::uuid", action_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._action_from_row(row) if row else None

    async def list_due_actions(self, *, statuses: set[str], now: datetime, limit: int) -> list[ActionRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_ACTION_COLUMNS}
            from actions a
            where a.status = any($1::text[])
              and not exists (
                select 1
                from verifications v
                where v.action_id = a.id
                  and v.created_at = (
                    select max(v2.created_at) from verifications v2 where v2.action_id = a.id
                  )
                  and v.next_verification_at is not null
                  and v.next_verification_at > $2
              )
            order by a.created_at asc
            limit $3
            """,
            sorted(statuses),
            now,
            max(1, min(limit, 1000)),
        )
        return [self._action_from_row(row) for row in rows]

    async def update_action_status(
        self,
        action_id: str,
        *,
        status: str,
        now: datetime,
        verification_info: dict[str, Any] | None = None,
    ) -> ActionRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update actions
                set
                  status = $2,
                  updated_at = $3,
                  verification_info = verification_info || coalesce($4::jsonb, '{{}}'::jsonb)
                where id = $1::uuid
                returning {_ACTION_COLUMNS}
                """,
                action_id,
                status,
                now,
                json.dumps(verification_info) if verification_info is not None else None,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._action_from_row(row) if row else None

    async def get_subject_profile(self, subject_ref: str) -> SubjectProfile | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select subject_ref, name, email, phone from subjects where subject_ref = $1",
            subject_ref,
        )
        if not row:
            return None
        return SubjectProfile(
            subject_ref=row["subject_ref"],
            name=self._coerce_text(row["name"]),
            email=self._coerce_text(row["email"]),
            phone=self._coerce_text(row["phone"]),
        )

    async def resolve_discovered_url(self, subject_ref: str, controller_key: str) -> str | None:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select url
            from discovered_items
            where subject_ref = $1 and controller_key = $2 and url is not null
            order by confidence desc nulls last, created_at desc
            limit 1
            """,
            subject_ref,
            controller_key,
        )
        return self._coerce_text(value)

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
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into verifications (
                  action_id,
                  subject_ref,
                  controller_key,
                  data_found,
                  confidence,
                  evidence,
                  reason,
                  created_at,
                  next_verification_at
                )
                values ($1::uuid, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
                returning {_VERIFICATION_COLUMNS}
                """,
                action_id,
                subject_ref,
                controller_key,
                data_found,
                confidence,
                json.dumps(evidence.to_dict()),
                reason,
                now,
                next_verification_at,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("action not found") from exc
        if not row:
            raise RepositoryConflictError("failed to insert verification")
        return self._verification_from_row(row)

    async def list_verifications(self, action_id: str) -> list[VerificationRecord]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_VERIFICATION_COLUMNS}
                from verifications
                where action_id = $1::uuid
                order by created_at asc
                """,
                action_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return []
        return [self._verification_from_row(row) for row in rows]

    async def list_evidence_hashes(
        self,
        subject_ref: str,
        *,
        since: datetime | None,
        until: datetime | None = None,
    ) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select evidence ->> 'html_hash' as html_hash, evidence ->> 'screenshot_hash' as screenshot_hash
            from verifications
            where subject_ref = $1
              and ($2::timestamptz is null or created_at > $2)
              and ($3::timestamptz is null or created_at <= $3)
            order by created_at asc
            """,
            subject_ref,
            since,
            until,
        )
        hashes: list[str] = []
        for row in rows:
            for column in ("html_hash", "screenshot_hash"):
                digest = self._coerce_text(row[column])
                if digest:
                    hashes.append(digest)
        return hashes

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into proof_ledger (
              subject_ref,
              merkle_root,
              algorithm,
              key_id,
              signature_b64,
              evidence_count,
              evidence_hashes,
              created_at
            )
            values ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
            returning {_LEDGER_COLUMNS}
            """,
            subject_ref,
            merkle_root,
            algorithm,
            key_id,
            signature_b64,
            len(evidence_hashes),
            json.dumps(list(evidence_hashes)),
            now,
        )
        if not row:
            raise RepositoryConflictError("failed to insert ledger record")
        return self._ledger_from_row(row)

    async def get_ledger_record(self, record_id: str) -> LedgerRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_LEDGER_COLUMNS} from proof_ledger where id = $1::uuid", record_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._ledger_from_row(row) if row else None

    async def latest_ledger_record(self, subject_ref: str) -> LedgerRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_LEDGER_COLUMNS}
            from proof_ledger
            where subject_ref = $1
            order by created_at desc
            limit 1
            """,
            subject_ref,
        )
        return self._ledger_from_row(row) if row else None

    # artifact receipts

    async def upsert_receipt(
        self,
        job_id: str,
        *,
        html_sha256: str | None,
        screenshot_sha256: str | None,
        now: datetime,
    ) -> ReceiptRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into artifact_receipts (job_id, html_sha256, screenshot_sha256, created_at)
                values ($1::uuid, $2, $3, $4)
                on conflict (job_id) do update
                set
                  html_sha256 = excluded.html_sha256,
                  screenshot_sha256 = excluded.screenshot_sha256,
                  created_at = excluded.created_at
                returning job_id::text as job_id, html_sha256, screenshot_sha256, created_at
                """,
                job_id,
                html_sha256,
                screenshot_sha256,
                now,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryConflictError("failed to store receipt")
        return self._receipt_from_row(row)

    async def get_receipt(self, job_id: str) -> ReceiptRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select job_id::text as job_id, html_sha256, screenshot_sha256, created_at
                from artifact_receipts
                where job_id = $1::uuid
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._receipt_from_row(row) if row else None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("ERASURE_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _job_from_row(self, row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            kind=row["kind"],
            status=row["status"],
            controller_key=row["controller_key"],
            subject_ref=row["subject_ref"],
            target_url=row["target_url"],
            metadata=self._coerce_json_dict(row["metadata"]),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            error=self._coerce_json_dict(row["error"]) if row["error"] is not None else None,
            result=self._coerce_json_dict(row["result"]) if row["result"] is not None else None,
            created_at=row["created_at"],
            next_run_at=row["next_run_at"],
            claimed_at=row["claimed_at"],
            lease_expires_at=row["lease_expires_at"],
            finished_at=row["finished_at"],
            worker_id=row["worker_id"],
        )

    @staticmethod
    def _circuit_from_row(row: asyncpg.Record) -> CircuitState:
        return CircuitState(
            controller_key=row["controller_key"],
            state=row["state"],
            failure_count=int(row["failure_count"]),
            window_started_at=row["window_started_at"],
            opened_at=row["opened_at"],
            cooldown_seconds=int(row["cooldown_seconds"]),
            trip_count=int(row["trip_count"]),
            probe_in_flight=bool(row["probe_in_flight"]),
            last_error_code=row["last_error_code"],
            last_error_note=row["last_error_note"],
            version=int(row["version"]),
        )

    def _dead_letter_from_row(self, row: asyncpg.Record) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=row["id"],
            channel=row["channel"],
            controller_key=row["controller_key"],
            subject_ref=row["subject_ref"],
            payload=self._coerce_json_dict(row["payload"]),
            error_code=row["error_code"],
            error_note=row["error_note"],
            retries=int(row["retries"]),
            created_at=row["created_at"],
        )

    def _action_from_row(self, row: asyncpg.Record) -> ActionRecord:
        return ActionRecord(
            id=row["id"],
            subject_ref=row["subject_ref"],
            controller_key=row["controller_key"],
            status=row["status"],
            target_url=row["target_url"],
            subject_preview=self._coerce_json_dict(row["subject_preview"]),
            verification_info=self._coerce_json_dict(row["verification_info"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _verification_from_row(self, row: asyncpg.Record) -> VerificationRecord:
        evidence = self._coerce_json_dict(row["evidence"])
        return VerificationRecord(
            id=row["id"],
            action_id=row["action_id"],
            subject_ref=row["subject_ref"],
            controller_key=row["controller_key"],
            data_found=bool(row["data_found"]),
            confidence=float(row["confidence"]),
            evidence=EvidenceArtifact(
                url=self._coerce_text(evidence.get("url")),
                http_status=self._coerce_int(evidence.get("http_status")),
                html_hash=self._coerce_text(evidence.get("html_hash")),
                screenshot_hash=self._coerce_text(evidence.get("screenshot_hash")),
                html_path=self._coerce_text(evidence.get("html_path")),
                screenshot_path=self._coerce_text(evidence.get("screenshot_path")),
            ),
            reason=row["reason"],
            created_at=row["created_at"],
            next_verification_at=row["next_verification_at"],
        )

    def _ledger_from_row(self, row: asyncpg.Record) -> LedgerRecord:
        hashes = row["evidence_hashes"]
        if isinstance(hashes, str):
            try:
                hashes = json.loads(hashes)
            except json.JSONDecodeError:
                hashes = []
        return LedgerRecord(
            id=row["id"],
            subject_ref=row["subject_ref"],
            merkle_root=row["merkle_root"],
            algorithm=row["algorithm"],
            key_id=row["key_id"],
            signature_b64=row["signature_b64"],
            evidence_count=int(row["evidence_count"]),
            evidence_hashes=[item for item in hashes or [] if isinstance(item, str)],
            created_at=row["created_at"],
        )

    @staticmethod
    def _receipt_from_row(row: asyncpg.Record) -> ReceiptRecord:
        return ReceiptRecord(
            job_id=row["job_id"],
            html_sha256=row["html_sha256"],
            screenshot_sha256=row["screenshot_sha256"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


@lru_cache
def get_store() -> PipelineStore:
    settings = get_settings()
    if settings.database_url:
        return get_repository()
    return InMemoryStore()

from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from erasure.services.breaker import CircuitBreaker
from erasure.services.interfaces import CIRCUIT_OPEN, JobSpec
from erasure.services.jobs import JOB_TERMINALLY_FAILED, JobQueue
from erasure.services.repository import PostgresRepository

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
TABLES = (
    "artifact_receipts",
    "proof_ledger",
    "verifications",
    "dead_letters",
    "controller_circuits",
    "idempotency_keys",
    "jobs",
    "actions",
    "discovered_items",
    "subjects",
)
NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("ERASURE_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require ERASURE_DATABASE_URL")
    return url


async def _reset(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await conn.execute(f"truncate table {', '.join(TABLES)} cascade")
    finally:
        await conn.close()


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset(database_url))


def _spec() -> JobSpec:
    return JobSpec(
        kind="webform_submit",
        controller_key="olx",
        target_url="https://olx.example/privacy",
        subject_ref="subj-1",
        metadata={"dispatch": {"controller_key": "olx", "subject": {"email": "a@b.com"}}},
        max_attempts=2,
    )


def test_concurrent_claims_have_one_winner(database_url: str) -> None:
    async def run():
        repository = PostgresRepository(database_url, 1, 10)
        try:
            job = await repository.enqueue_job(_spec(), now=NOW)
            results = await asyncio.gather(
                *(
                    repository.try_claim_job(job.id, worker_id=f"w{index}", lease_seconds=60, now=NOW)
                    for index in range(8)
                )
            )
            return [result for result in results if result is not None]
        finally:
            await repository.close()

    winners = _run(run())
    assert len(winners) == 1
    assert winners[0].attempts == 1


def test_attempt_bound_and_dead_letter(database_url: str) -> None:
    async def run():
        repository = PostgresRepository(database_url, 1, 4)
        queue = JobQueue(
            repository,
            lease_seconds=60,
            retry_base_seconds=0,
            retry_max_seconds=0,
            max_attempts=2,
            clock=lambda: NOW,
        )
        try:
            await queue.enqueue(_spec())
            outcomes = []
            for _ in range(2):
                claimed = await queue.claim_next("w1")
                outcome = await queue.complete_failure(claimed.id, worker_id="w1", error={"code": "boom"})
                outcomes.append(outcome)
            extra = await queue.claim_next("w1")
            entries = await repository.list_dead_letters(controller_key="olx", channel=None, limit=10)
            return outcomes, extra, entries
        finally:
            await repository.close()

    outcomes, extra, entries = _run(run())
    assert outcomes[-1].outcome == JOB_TERMINALLY_FAILED
    assert outcomes[-1].job.attempts == 2
    assert extra is None
    assert [entry.error_code for entry in entries] == ["attempts_exhausted"]


def test_idempotency_reservation_is_exclusive_until_expiry(database_url: str) -> None:
    async def run():
        repository = PostgresRepository(database_url, 1, 4)
        try:
            async def reserve(now: datetime) -> bool:
                return await repository.reserve_idempotency_key(
                    "key-1", action_label="create_request_v1", ttl_seconds=60, now=now
                )

            first = await reserve(NOW)
            second = await reserve(NOW)
            later = await reserve(NOW.replace(minute=2))
            return first, second, later
        finally:
            await repository.close()

    assert _run(run()) == (True, False, True)


def test_breaker_state_round_trips_through_versioned_writes(database_url: str) -> None:
    async def run():
        repository = PostgresRepository(database_url, 1, 4)
        breaker = CircuitBreaker(
            repository,
            failure_threshold=2,
            window_seconds=600,
            cooldown_seconds=60,
            max_cooldown_seconds=600,
            clock=lambda: NOW,
        )
        try:
            await breaker.record_failure("olx", "boom")
            await breaker.record_failure("olx", "boom")
            return await breaker.snapshot("olx"), await breaker.should_allow("olx")
        finally:
            await repository.close()

    state, decision = _run(run())
    assert state.state == CIRCUIT_OPEN
    assert state.version == 2
    assert decision.allow is False

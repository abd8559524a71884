from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from erasure.core.signing import LocalEd25519Signer, PublicKeyResolver, generate_ed25519_private_key_pem
from erasure.services.breaker import CircuitBreaker
from erasure.services.dispatcher import Dispatcher
from erasure.services.dlq import DeadLetterQueue
from erasure.services.idempotency import IdempotencyGuard
from erasure.services.jobs import JobQueue
from erasure.services.ledger import ProofLedger
from erasure.services.receipts import ReceiptService
from erasure.services.store import InMemoryStore

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@dataclass
class Pipeline:
    store: InMemoryStore
    clock: FakeClock
    sleep: RecordingSleep
    guard: IdempotencyGuard
    breaker: CircuitBreaker
    receipts: ReceiptService
    queue: JobQueue
    dispatcher: Dispatcher
    dlq: DeadLetterQueue


def build_pipeline(
    store: InMemoryStore | None = None,
    clock: FakeClock | None = None,
    *,
    failure_threshold: int = 5,
    cooldown_seconds: int = 300,
    max_attempts: int = 3,
    retry_base_seconds: int = 0,
    at_least_once_actions: set[str] | None = None,
    controller_overrides: dict[str, dict[str, Any]] | None = None,
    batch_size: int = 5,
) -> Pipeline:
    store = store or InMemoryStore()
    clock = clock or FakeClock()
    sleep = RecordingSleep()
    guard = IdempotencyGuard(
        store,
        ttl_seconds=3600,
        at_least_once_actions=at_least_once_actions,
        clock=clock,
    )
    breaker = CircuitBreaker(
        store,
        failure_threshold=failure_threshold,
        window_seconds=600,
        cooldown_seconds=cooldown_seconds,
        max_cooldown_seconds=3600,
        controller_overrides=controller_overrides,
        clock=clock,
    )
    receipts = ReceiptService(store, clock=clock)
    queue = JobQueue(
        store,
        lease_seconds=120,
        retry_base_seconds=retry_base_seconds,
        retry_max_seconds=600,
        max_attempts=max_attempts,
        breaker=breaker,
        receipts=receipts,
        clock=clock,
    )
    dispatcher = Dispatcher(
        store,
        guard=guard,
        breaker=breaker,
        queue=queue,
        controller_overrides=controller_overrides,
        batch_size=batch_size,
        batch_pause_seconds=1.0,
        clock=clock,
        sleep=sleep,
    )
    return Pipeline(
        store=store,
        clock=clock,
        sleep=sleep,
        guard=guard,
        breaker=breaker,
        receipts=receipts,
        queue=queue,
        dispatcher=dispatcher,
        dlq=DeadLetterQueue(store, dispatcher),
    )


def build_ledger(store: InMemoryStore, clock: FakeClock, *, key_id: str = "test-key") -> ProofLedger:
    signer = LocalEd25519Signer(generate_ed25519_private_key_pem(), key_id)
    resolver = PublicKeyResolver(signer=signer)
    return ProofLedger(
        store,
        signer_provider=lambda: signer,
        resolver_provider=lambda: resolver,
        backend="local-ed25519",
        clock=clock,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def pipeline(store: InMemoryStore, clock: FakeClock) -> Pipeline:
    return build_pipeline(store, clock)


@pytest.fixture
def make_pipeline():
    return build_pipeline


@pytest.fixture
def make_ledger():
    return build_ledger

from __future__ import annotations

from functools import lru_cache

from erasure.core.config import get_settings
from erasure.core.controllers import parse_controller_overrides
from erasure.core.errors import MissingKeyMaterialError
from erasure.core.signing import PublicKeyResolver, Signer, build_public_key_resolver, build_signer
from erasure.services.blobs import LocalBlobStore
from erasure.services.breaker import CircuitBreaker
from erasure.services.capture import CaptureClient
from erasure.services.dispatcher import Dispatcher
from erasure.services.dlq import DeadLetterQueue
from erasure.services.idempotency import IdempotencyGuard
from erasure.services.jobs import JobQueue
from erasure.services.ledger import ProofLedger
from erasure.services.receipts import ReceiptService
from erasure.services.repository import get_repository, get_store
from erasure.services.sweeper import VerificationSweeper


@lru_cache
def get_controller_overrides() -> dict[str, dict]:
    return parse_controller_overrides(get_settings().controller_overrides_json)


@lru_cache
def get_breaker() -> CircuitBreaker:
    settings = get_settings()
    return CircuitBreaker(
        get_store(),
        failure_threshold=settings.breaker_failure_threshold,
        window_seconds=settings.breaker_window_seconds,
        cooldown_seconds=settings.breaker_cooldown_seconds,
        max_cooldown_seconds=settings.breaker_max_cooldown_seconds,
        controller_overrides=get_controller_overrides(),
    )


@lru_cache
def get_idempotency_guard() -> IdempotencyGuard:
    settings = get_settings()
    return IdempotencyGuard(
        get_store(),
        ttl_seconds=settings.idempotency_ttl_seconds,
        at_least_once_actions=settings.at_least_once_action_labels(),
    )


@lru_cache
def get_receipt_service() -> ReceiptService:
    return ReceiptService(get_store())


@lru_cache
def get_job_queue() -> JobQueue:
    settings = get_settings()
    return JobQueue(
        get_store(),
        lease_seconds=settings.job_lease_seconds,
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        max_attempts=settings.job_max_attempts,
        breaker=get_breaker(),
        receipts=get_receipt_service(),
    )


@lru_cache
def get_dispatcher() -> Dispatcher:
    settings = get_settings()
    return Dispatcher(
        get_store(),
        guard=get_idempotency_guard(),
        breaker=get_breaker(),
        queue=get_job_queue(),
        controller_overrides=get_controller_overrides(),
        batch_size=settings.dispatch_batch_size,
        batch_pause_seconds=settings.dispatch_batch_pause_seconds,
    )


@lru_cache
def get_dead_letter_queue() -> DeadLetterQueue:
    return DeadLetterQueue(get_store(), get_dispatcher())


@lru_cache
def get_signer() -> Signer:
    return build_signer(get_settings())


@lru_cache
def get_public_key_resolver() -> PublicKeyResolver:
    settings = get_settings()
    try:
        signer: Signer | None = get_signer()
    except MissingKeyMaterialError:
        # verify-only deployments carry just the public key
        signer = None
    return build_public_key_resolver(settings, signer)


@lru_cache
def get_ledger() -> ProofLedger:
    return ProofLedger(
        get_store(),
        signer_provider=get_signer,
        resolver_provider=get_public_key_resolver,
        backend=get_settings().signing_backend,
    )


@lru_cache
def get_sweeper() -> VerificationSweeper:
    settings = get_settings()
    capture = (
        CaptureClient(settings.capture_base_url, timeout_seconds=settings.capture_timeout_seconds)
        if settings.capture_base_url
        else None
    )
    return VerificationSweeper(
        get_store(),
        blobs=LocalBlobStore(settings.blob_root),
        ledger=get_ledger(),
        capture=capture,
        fetch_timeout_seconds=settings.verify_fetch_timeout_seconds,
        batch_size=settings.verify_batch_size,
        batch_pause_seconds=settings.verify_batch_pause_seconds,
        recheck_hours=settings.verify_recheck_hours,
        inconclusive_retry_hours=settings.verify_inconclusive_retry_hours,
    )


def reset_providers() -> None:
    """Drop every cached settings object, store and service."""
    for getter in (
        get_settings,
        get_repository,
        get_store,
        get_controller_overrides,
        get_breaker,
        get_idempotency_guard,
        get_receipt_service,
        get_job_queue,
        get_dispatcher,
        get_dead_letter_queue,
        get_signer,
        get_public_key_resolver,
        get_ledger,
        get_sweeper,
    ):
        getter.cache_clear()

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from opentelemetry import trace

from erasure.core.controllers import (
    CHANNEL_EMAIL,
    CHANNEL_NOOP,
    CHANNEL_WEBFORM,
    normalize_controller_key,
    resolve_controller,
)
from erasure.core.errors import EnqueueFailure, IdempotencyUnavailableError
from erasure.core.telemetry import redact_identifier
from erasure.schemas.dispatch import DispatchRequest, DispatchResult
from erasure.services.breaker import CircuitBreaker
from erasure.services.idempotency import (
    DEFAULT_ACTION_LABEL,
    IDEMPOTENCY_EXISTS,
    IdempotencyGuard,
    build_idempotency_key,
    stable_subject_identifier,
)
from erasure.services.interfaces import ActionStore, DeadLetterStore, JobRecord, JobSpec, utc_now
from erasure.services.jobs import JobQueue
from erasure.services.repository import RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WEBFORM_JOB_KIND = "webform_submit"
ENQUEUE_FAILED_ERROR = "webform_enqueue_failed"
ENQUEUE_FAILED_CODE = "enqueue_failed"
CIRCUIT_OPEN_ERROR = "controller_circuit_open"
IDEMPOTENCY_UNAVAILABLE_ERROR = "idempotency_unavailable"
DISPATCH_EXCEPTION_ERROR = "dispatch_exception"


@dataclass(frozen=True, slots=True)
class Channel:
    key: str
    available: bool
    job_kind: str | None = None


# Email delivery is registered but stays off until controller contacts are wired.
CHANNELS: dict[str, Channel] = {
    CHANNEL_WEBFORM: Channel(key=CHANNEL_WEBFORM, available=True, job_kind=WEBFORM_JOB_KIND),
    CHANNEL_EMAIL: Channel(key=CHANNEL_EMAIL, available=False),
}


def select_channel(preferred: str | None) -> Channel:
    channel = CHANNELS.get((preferred or "").strip().lower())
    if channel is not None and channel.available:
        return channel
    return CHANNELS[CHANNEL_WEBFORM]


class DispatchBackingStore(DeadLetterStore, ActionStore, Protocol):
    pass


class Dispatcher:
    """Runs one outbound request through idempotency, the breaker and the queue, in that order."""

    def __init__(
        self,
        store: DispatchBackingStore,
        *,
        guard: IdempotencyGuard,
        breaker: CircuitBreaker,
        queue: JobQueue,
        controller_overrides: dict[str, dict[str, Any]] | None = None,
        batch_size: int = 5,
        batch_pause_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._guard = guard
        self._breaker = breaker
        self._queue = queue
        self._controller_overrides = controller_overrides or {}
        self._batch_size = max(1, batch_size)
        self._batch_pause_seconds = max(0.0, batch_pause_seconds)
        self._clock = clock
        self._sleep = sleep

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        controller_key = normalize_controller_key(request.controller_key)
        action_label = (request.action_label or "").strip() or DEFAULT_ACTION_LABEL
        subject_ident = stable_subject_identifier(request.subject, request.subject_ref)

        with tracer.start_as_current_span("dispatch.dispatch") as span:
            span.set_attribute("controller.key", controller_key)
            span.set_attribute("dispatch.action_label", action_label)

            key = build_idempotency_key(controller_key, request.subject, action_label, subject_ref=request.subject_ref)
            if await self._guard.check_and_reserve(key, action_label) == IDEMPOTENCY_EXISTS:
                span.set_attribute("dispatch.outcome", "deduped")
                logger.info(
                    "dispatch deduped controller=%s subject=%s",
                    controller_key,
                    redact_identifier(subject_ident),
                )
                return DispatchResult(
                    ok=True,
                    channel=CHANNEL_NOOP,
                    note="idempotent_deduped",
                    idempotent="deduped",
                    hint="Duplicate request suppressed by idempotency.",
                )

            try:
                decision = await self._breaker.should_allow(controller_key)
                if not decision.allow:
                    # nothing was submitted; free the key
                    await self._guard.release(key)
                    span.set_attribute("dispatch.outcome", "circuit_open")
                    logger.info(
                        "dispatch blocked by open circuit controller=%s recent_failures=%s",
                        controller_key,
                        decision.recent_failures,
                    )
                    return DispatchResult(
                        ok=False,
                        channel=CHANNEL_NOOP,
                        error=CIRCUIT_OPEN_ERROR,
                        note=f"recent_failures={decision.recent_failures}",
                        idempotent="new",
                        hint=(
                            f"Controller circuit is open due to recent failures ({decision.recent_failures}). "
                            "Retry later or inspect the breaker state."
                        ),
                    )

                meta = resolve_controller(
                    controller_key,
                    self._controller_overrides,
                    fallback_name=request.controller_name,
                )
                channel = select_channel(meta.preferred_channel)
                payload = self._reconstruction_payload(request, controller_key, action_label)
                try:
                    job = await self._submit(request, channel, payload, meta.form_url, key)
                except EnqueueFailure as exc:
                    await self._guard.release(key)
                    return await self._handle_enqueue_failure(request, controller_key, channel, payload, str(exc))
            except BaseException:
                # the job never reached the queue; free the key before propagating
                await self._guard.release(key)
                raise

            span.set_attribute("dispatch.outcome", "enqueued")
            span.set_attribute("job.id", job.id)
            if request.action_id:
                await self._store.update_action_status(
                    request.action_id,
                    status="sent",
                    now=self._clock(),
                    verification_info={"last_job_id": job.id, "channel": channel.key},
                )
            logger.info(
                "dispatch enqueued controller=%s subject=%s job_id=%s",
                controller_key,
                redact_identifier(subject_ident),
                job.id,
            )
            fallback = meta.preferred_channel != channel.key
            return DispatchResult(
                ok=True,
                channel=channel.key,
                provider_ref=job.id,
                note=f"enqueued:{job.id}",
                idempotent="new",
                hint=(
                    f"Preferred channel {meta.preferred_channel} unavailable; queued for {channel.key}."
                    if fallback
                    else f"Queued for {channel.key} submission."
                ),
            )

    async def dispatch_batch(self, requests: Sequence[DispatchRequest]) -> list[DispatchResult]:
        results: list[DispatchResult] = []
        for start in range(0, len(requests), self._batch_size):
            if start:
                await self._sleep(self._batch_pause_seconds)
            chunk = requests[start : start + self._batch_size]
            outcomes = await asyncio.gather(*(self.dispatch(item) for item in chunk), return_exceptions=True)
            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, DispatchResult):
                    results.append(outcome)
                elif isinstance(outcome, Exception):
                    results.append(self._batch_error_result(item, outcome))
                else:
                    raise outcome
        return results

    @staticmethod
    def _batch_error_result(request: DispatchRequest, exc: Exception) -> DispatchResult:
        logger.error(
            "batch dispatch item failed controller=%s error=%s",
            normalize_controller_key(request.controller_key),
            exc,
            exc_info=exc,
        )
        if isinstance(exc, IdempotencyUnavailableError):
            return DispatchResult(
                ok=False,
                channel=CHANNEL_NOOP,
                error=IDEMPOTENCY_UNAVAILABLE_ERROR,
                note=str(exc),
                hint="Idempotency store unavailable; nothing was submitted. Retry once it recovers.",
            )
        return DispatchResult(
            ok=False,
            channel=CHANNEL_NOOP,
            error=DISPATCH_EXCEPTION_ERROR,
            note=str(exc) or exc.__class__.__name__,
            hint="Dispatch raised an unexpected error; inspect the logs before retrying.",
        )

    async def _submit(
        self,
        request: DispatchRequest,
        channel: Channel,
        payload: dict[str, Any],
        default_form_url: str | None,
        idempotency_key: str,
    ) -> JobRecord:
        if channel.job_kind is None:
            raise EnqueueFailure(f"channel {channel.key} has no job executor")
        metadata: dict[str, Any] = {
            "dispatch": payload,
            "channel": channel.key,
            "idempotency_key": idempotency_key,
        }
        if request.action_id:
            metadata["action_id"] = request.action_id
        spec = JobSpec(
            kind=channel.job_kind,
            controller_key=payload["controller_key"],
            target_url=request.form_url or default_form_url,
            subject_ref=request.subject_ref or request.subject.id,
            metadata=metadata,
            max_attempts=self._queue.max_attempts,
        )
        try:
            return await self._queue.enqueue(spec)
        except RepositoryError as exc:
            raise EnqueueFailure(str(exc) or exc.__class__.__name__) from exc

    async def _handle_enqueue_failure(
        self,
        request: DispatchRequest,
        controller_key: str,
        channel: Channel,
        payload: dict[str, Any],
        message: str,
    ) -> DispatchResult:
        logger.warning("dispatch enqueue failed controller=%s error=%s", controller_key, message)
        await self._breaker.record_failure(controller_key, ENQUEUE_FAILED_ERROR, message)
        await self._store.push_dead_letter(
            channel=channel.key,
            controller_key=controller_key,
            subject_ref=request.subject_ref or request.subject.id,
            payload=payload,
            error_code=ENQUEUE_FAILED_CODE,
            error_note=message,
            retries=0,
            now=self._clock(),
        )
        return DispatchResult(
            ok=False,
            channel=channel.key,
            error=ENQUEUE_FAILED_ERROR,
            note=message,
            idempotent="new",
            hint="Failed to enqueue the submission; the failure was recorded and dead-lettered.",
        )

    @staticmethod
    def _reconstruction_payload(request: DispatchRequest, controller_key: str, action_label: str) -> dict[str, Any]:
        payload = request.model_dump(mode="json")
        payload["controller_key"] = controller_key
        payload["action_label"] = action_label
        return payload

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from erasure.schemas.dispatch import DispatchRequest, DispatchResult
from erasure.services.dispatcher import Dispatcher
from erasure.services.idempotency import retry_action_label
from erasure.services.interfaces import DeadLetterEntry, DeadLetterStore, utc_now
from erasure.services.repository import RepositoryNotFoundError, RepositoryValidationError

logger = logging.getLogger(__name__)

RETRY_EXCEPTION_CODE = "retry_exception"
RETRY_DEDUPED_CODE = "retry_deduped"


class DeadLetterQueue:
    """Operator-facing view over dead-lettered dispatches.

    Entries leave the queue only through a successful retry or an explicit purge.
    """

    def __init__(self, store: DeadLetterStore, dispatcher: Dispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher

    async def push(
        self,
        *,
        channel: str,
        controller_key: str | None,
        subject_ref: str | None,
        payload: dict[str, Any],
        error_code: str | None,
        error_note: str | None,
        retries: int = 0,
    ) -> DeadLetterEntry:
        entry = await self._store.push_dead_letter(
            channel=channel,
            controller_key=controller_key,
            subject_ref=subject_ref,
            payload=payload,
            error_code=error_code,
            error_note=error_note,
            retries=retries,
            now=utc_now(),
        )
        logger.warning(
            "dead-lettered id=%s controller=%s error_code=%s",
            entry.id,
            controller_key,
            error_code,
        )
        return entry

    async def list(
        self,
        *,
        controller_key: str | None = None,
        channel: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterEntry]:
        return await self._store.list_dead_letters(controller_key=controller_key, channel=channel, limit=limit)

    async def get(self, entry_id: str) -> DeadLetterEntry:
        entry = await self._store.get_dead_letter(entry_id)
        if entry is None:
            raise RepositoryNotFoundError("dead letter entry not found")
        return entry

    async def retry(self, entry_id: str) -> DispatchResult:
        entry = await self.get(entry_id)
        request = rebuild_dispatch_request(entry)
        try:
            result = await self._dispatcher.dispatch(request)
        except Exception as exc:
            await self._store.update_dead_letter(
                entry.id,
                retries=entry.retries + 1,
                error_code=RETRY_EXCEPTION_CODE,
                error_note=str(exc) or exc.__class__.__name__,
            )
            logger.warning("dead letter retry raised id=%s error=%s", entry.id, exc)
            raise

        if result.ok and result.idempotent == "new":
            await self._store.delete_dead_letter(entry.id)
            logger.info("dead letter retried id=%s job_id=%s", entry.id, result.provider_ref)
            return result

        if result.ok:
            # nothing was re-sent, so the entry stays for the operator
            error_code, error_note = RETRY_DEDUPED_CODE, result.note
        else:
            error_code, error_note = result.error or "retry_failed", result.note
        await self._store.update_dead_letter(
            entry.id,
            retries=entry.retries + 1,
            error_code=error_code,
            error_note=error_note,
        )
        logger.warning("dead letter retry failed id=%s error=%s retries=%s", entry.id, error_code, entry.retries + 1)
        return result

    async def purge(self, entry_id: str) -> None:
        entry = await self.get(entry_id)
        logger.info(
            "purging dead letter id=%s controller=%s error_code=%s retries=%s",
            entry.id,
            entry.controller_key,
            entry.error_code,
            entry.retries,
        )
        if not await self._store.delete_dead_letter(entry.id):
            raise RepositoryNotFoundError("dead letter entry not found")


def rebuild_dispatch_request(entry: DeadLetterEntry) -> DispatchRequest:
    payload = dict(entry.payload or {})
    payload.setdefault("controller_key", entry.controller_key or "")
    if entry.subject_ref and not payload.get("subject_ref"):
        payload["subject_ref"] = entry.subject_ref
    payload["action_label"] = retry_action_label(entry.id)
    try:
        return DispatchRequest.model_validate(payload)
    except ValidationError as exc:
        raise RepositoryValidationError(f"dead letter payload cannot be replayed: {exc.error_count()} errors") from exc

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Response, status

from erasure.api.errors import http_error
from erasure.core.errors import IdempotencyUnavailableError
from erasure.schemas.dispatch import DispatchResult
from erasure.schemas.dlq import DeadLetterOut
from erasure.services.dlq import DeadLetterQueue
from erasure.services.providers import get_dead_letter_queue
from erasure.services.repository import RepositoryError

router = APIRouter()


@router.get("", response_model=list[DeadLetterOut])
async def list_dead_letters(
    controller_key: str | None = None,
    channel: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    dlq: DeadLetterQueue = Depends(get_dead_letter_queue),
) -> list[DeadLetterOut]:
    try:
        entries = await dlq.list(controller_key=controller_key, channel=channel, limit=limit)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [DeadLetterOut(**asdict(entry)) for entry in entries]


@router.post("/{entry_id}/retry", response_model=DispatchResult)
async def retry_dead_letter(entry_id: str, dlq: DeadLetterQueue = Depends(get_dead_letter_queue)) -> DispatchResult:
    try:
        return await dlq.retry(entry_id)
    except (IdempotencyUnavailableError, RepositoryError) as exc:
        raise http_error(exc) from exc


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge_dead_letter(entry_id: str, dlq: DeadLetterQueue = Depends(get_dead_letter_queue)) -> Response:
    try:
        await dlq.purge(entry_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)

from fastapi import APIRouter, Depends

from erasure.api.errors import http_error
from erasure.core.errors import IdempotencyUnavailableError
from erasure.schemas.dispatch import DispatchBatchRequest, DispatchBatchResult, DispatchRequest, DispatchResult
from erasure.services.dispatcher import Dispatcher
from erasure.services.providers import get_dispatcher
from erasure.services.repository import RepositoryError

router = APIRouter()


@router.post("", response_model=DispatchResult)
async def dispatch(payload: DispatchRequest, dispatcher: Dispatcher = Depends(get_dispatcher)) -> DispatchResult:
    try:
        return await dispatcher.dispatch(payload)
    except (IdempotencyUnavailableError, RepositoryError) as exc:
        raise http_error(exc) from exc


@router.post("/batch", response_model=DispatchBatchResult)
async def dispatch_batch(
    payload: DispatchBatchRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DispatchBatchResult:
    try:
        results = await dispatcher.dispatch_batch(payload.items)
    except (IdempotencyUnavailableError, RepositoryError) as exc:
        raise http_error(exc) from exc
    return DispatchBatchResult(results=results)

from fastapi import APIRouter, Depends

from erasure.api.errors import http_error
from erasure.schemas.breakers import CircuitOut
from erasure.services.breaker import CircuitBreaker
from erasure.services.providers import get_breaker
from erasure.services.repository import RepositoryError

router = APIRouter()


@router.get("/{controller_key}", response_model=CircuitOut)
async def get_circuit(controller_key: str, breaker: CircuitBreaker = Depends(get_breaker)) -> CircuitOut:
    try:
        state = await breaker.snapshot(controller_key)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return CircuitOut(
        controller_key=state.controller_key,
        state=state.state,
        failure_count=state.failure_count,
        threshold=breaker.threshold_for(state.controller_key),
        window_started_at=state.window_started_at,
        opened_at=state.opened_at,
        cooldown_seconds=state.cooldown_seconds,
        trip_count=state.trip_count,
        probe_in_flight=state.probe_in_flight,
        last_error_code=state.last_error_code,
        last_error_note=state.last_error_note,
        allow=breaker.would_allow(state),
    )

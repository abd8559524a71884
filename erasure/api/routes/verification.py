from fastapi import APIRouter, Depends

from erasure.api.errors import http_error
from erasure.core.errors import PipelineError
from erasure.schemas.verification import SweepOut, SweepRequest
from erasure.services.providers import get_sweeper
from erasure.services.repository import RepositoryError
from erasure.services.sweeper import VerificationSweeper

router = APIRouter()


@router.post("/sweep", response_model=SweepOut)
async def run_sweep(payload: SweepRequest, sweeper: VerificationSweeper = Depends(get_sweeper)) -> SweepOut:
    try:
        summary = await sweeper.sweep(batch_limit=payload.batch_limit)
    except (PipelineError, RepositoryError) as exc:
        raise http_error(exc) from exc
    return SweepOut(**summary.to_dict())

from dataclasses import asdict

from fastapi import APIRouter, Depends, status

from erasure.api.errors import http_error
from erasure.core.errors import NoEvidenceError
from erasure.schemas.receipts import ReceiptOut, ReceiptVerifyOut
from erasure.services.providers import get_receipt_service
from erasure.services.receipts import ReceiptService
from erasure.services.repository import RepositoryError

router = APIRouter()


@router.post("/{job_id}", response_model=ReceiptOut, status_code=status.HTTP_201_CREATED)
async def make_receipt(job_id: str, receipts: ReceiptService = Depends(get_receipt_service)) -> ReceiptOut:
    try:
        receipt = await receipts.make_receipt(job_id)
    except (NoEvidenceError, RepositoryError) as exc:
        raise http_error(exc) from exc
    return ReceiptOut(**asdict(receipt))


@router.get("/{job_id}/verify", response_model=ReceiptVerifyOut)
async def verify_receipt(job_id: str, receipts: ReceiptService = Depends(get_receipt_service)) -> ReceiptVerifyOut:
    try:
        return ReceiptVerifyOut(**await receipts.verify_receipt(job_id))
    except RepositoryError as exc:
        raise http_error(exc) from exc

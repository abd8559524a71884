from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from erasure.api.errors import http_error
from erasure.core.errors import (
    HashMismatchError,
    MissingKeyMaterialError,
    NoEvidenceError,
    SignatureInvalidError,
    UnsupportedAlgorithmError,
)
from erasure.schemas.ledger import (
    BundleVerifyOut,
    BundleVerifyRequest,
    CommitRequest,
    LedgerRecordOut,
    LedgerVerifyOut,
)
from erasure.services.interfaces import LedgerRecord
from erasure.services.ledger import ProofLedger, decode_bundle_b64, record_to_dict
from erasure.services.providers import get_ledger
from erasure.services.repository import RepositoryError

router = APIRouter()
# signature checks need no ops secret
public_router = APIRouter()

_KEY_ERRORS = (MissingKeyMaterialError, UnsupportedAlgorithmError)


def _record_out(record: LedgerRecord) -> LedgerRecordOut:
    return LedgerRecordOut(**record_to_dict(record))


@router.post("/commit", response_model=LedgerRecordOut, status_code=status.HTTP_201_CREATED)
async def commit_ledger(payload: CommitRequest, ledger: ProofLedger = Depends(get_ledger)) -> LedgerRecordOut:
    try:
        record = await ledger.commit(payload.subject_ref)
    except (NoEvidenceError, RepositoryError, *_KEY_ERRORS) as exc:
        raise http_error(exc) from exc
    return _record_out(record)


@router.get("/{record_id}", response_model=LedgerRecordOut)
async def get_ledger_record(record_id: str, ledger: ProofLedger = Depends(get_ledger)) -> LedgerRecordOut:
    try:
        return _record_out(await ledger.get(record_id))
    except RepositoryError as exc:
        raise http_error(exc) from exc


@router.get("/{record_id}/export")
async def export_bundle(record_id: str, ledger: ProofLedger = Depends(get_ledger)) -> Response:
    try:
        bundle = await ledger.export_bundle(record_id)
    except (RepositoryError, *_KEY_ERRORS) as exc:
        raise http_error(exc) from exc
    return Response(
        content=bundle,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="proof-{record_id}.zip"'},
    )


@public_router.post("/{record_id}/verify", response_model=LedgerVerifyOut)
async def verify_ledger_record(
    record_id: str,
    full: bool = Query(default=False),
    ledger: ProofLedger = Depends(get_ledger),
) -> LedgerVerifyOut:
    try:
        record = await ledger.get(record_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc

    reason: str | None = None
    try:
        await ledger.assert_valid(record, full=full)
    except HashMismatchError:
        reason = "root_mismatch"
    except SignatureInvalidError:
        reason = "signature_invalid"
    except _KEY_ERRORS as exc:
        raise http_error(exc) from exc
    return LedgerVerifyOut(ok=reason is None, full=full, reason=reason, record=_record_out(record))


@public_router.post("/verify-bundle", response_model=BundleVerifyOut)
async def verify_bundle(payload: BundleVerifyRequest, ledger: ProofLedger = Depends(get_ledger)) -> BundleVerifyOut:
    try:
        bundle = decode_bundle_b64(payload.bundle_b64)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    result = await ledger.verify_bundle(bundle)
    return BundleVerifyOut(**result.to_dict())

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CommitRequest(BaseModel):
    subject_ref: str = Field(min_length=1)


class LedgerRecordOut(BaseModel):
    id: str
    subject_ref: str
    created_at: datetime
    merkle_root_hex: str
    algorithm: str
    key_id: str
    signature_b64: str
    evidence_count: int


class LedgerVerifyOut(BaseModel):
    ok: bool
    full: bool
    reason: str | None = None
    record: LedgerRecordOut


class BundleVerifyRequest(BaseModel):
    bundle_b64: str = Field(min_length=1)


class BundleVerifyOut(BaseModel):
    ok: bool
    reason: str | None = None
    manifest: dict[str, Any] | None = None
    recomputed_sha256: str | None = None

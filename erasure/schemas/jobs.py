from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class JobOut(BaseModel):
    id: str
    kind: str
    status: str
    controller_key: str
    subject_ref: str | None = None
    target_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    attempts: int
    max_attempts: int
    error: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    next_run_at: datetime
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    finished_at: datetime | None = None
    worker_id: str | None = None


class ClaimRequest(BaseModel):
    limit: int = Field(default=1, ge=1, le=50)
    lease_seconds: int | None = Field(default=None, ge=5, le=3600)


class ResultRequest(BaseModel):
    status: Literal["succeeded", "failed"]
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class ResultOut(BaseModel):
    outcome: Literal["succeeded", "requeued", "terminally_failed"]
    job: JobOut


class ReapOut(BaseModel):
    requeued: int
    failed: int

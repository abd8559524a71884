from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class DeadLetterOut(BaseModel):
    id: str
    channel: str
    controller_key: str | None = None
    subject_ref: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error_note: str | None = None
    retries: int
    created_at: datetime

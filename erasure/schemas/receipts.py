from datetime import datetime

from pydantic import BaseModel


class ReceiptOut(BaseModel):
    job_id: str
    html_sha256: str | None = None
    screenshot_sha256: str | None = None
    created_at: datetime


class ReceiptHashes(BaseModel):
    html_sha256: str | None = None
    screenshot_sha256: str | None = None


class ReceiptVerifyOut(BaseModel):
    ok: bool
    html_ok: bool | None = None
    screenshot_ok: bool | None = None
    stored: ReceiptHashes | None = None
    recomputed: ReceiptHashes | None = None
    error: str | None = None

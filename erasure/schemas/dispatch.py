from typing import Literal

from pydantic import BaseModel, Field


class SubjectIn(BaseModel):
    id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    handle: str | None = None


class DraftIn(BaseModel):
    subject: str | None = None
    body_text: str | None = None


class DispatchRequest(BaseModel):
    controller_key: str = Field(min_length=1)
    controller_name: str | None = None
    subject: SubjectIn = Field(default_factory=SubjectIn)
    subject_ref: str | None = None
    locale: str = "en"
    draft: DraftIn | None = None
    form_url: str | None = None
    action_label: str | None = None
    action_id: str | None = None


class DispatchResult(BaseModel):
    ok: bool
    channel: Literal["webform", "email", "noop"]
    provider_ref: str | None = None
    error: str | None = None
    note: str | None = None
    idempotent: Literal["new", "deduped"] | None = None
    hint: str | None = None


class DispatchBatchRequest(BaseModel):
    items: list[DispatchRequest] = Field(min_length=1, max_length=200)


class DispatchBatchResult(BaseModel):
    results: list[DispatchResult]

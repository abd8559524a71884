from pydantic import BaseModel, Field


class SweepRequest(BaseModel):
    batch_limit: int = Field(default=50, ge=1, le=500)


class SweepOut(BaseModel):
    checked: int
    verified: int
    needs_review: int
    inconclusive: int
    committed: int

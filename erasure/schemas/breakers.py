from datetime import datetime

from pydantic import BaseModel


class CircuitOut(BaseModel):
    controller_key: str
    state: str
    failure_count: int
    threshold: int
    window_started_at: datetime | None = None
    opened_at: datetime | None = None
    cooldown_seconds: int
    trip_count: int
    probe_in_flight: bool
    last_error_code: str | None = None
    last_error_note: str | None = None
    allow: bool

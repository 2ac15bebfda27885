from datetime import datetime

from pydantic import BaseModel, ConfigDict


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    correlation_id: str
    actor: str
    action: str
    target: str
    outcome: str
    recorded_at: datetime
    detail: str | None = None
    prev_hash: str | None = None
    entry_hash: str


class ChainVerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ok: bool
    checked: int
    broken_at: int | None = None

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nhs_interop.services import identifiers


class MedicationItem(BaseModel):
    """One medication line carried in a transfer."""

    name: str = Field(..., min_length=1, max_length=200)
    snomed_code: str = Field(..., pattern=r"^\d{6,18}$")
    dosage_instructions: str | None = Field(default=None, max_length=500)
    timing: dict[str, Any] | None = None


class MedicationTransferSubmit(BaseModel):
    """Request body for a medication transfer."""

    patient_id: str = Field(..., min_length=1, max_length=64)
    medication_list_version: int = Field(..., ge=0)
    connection_id: str | None = Field(default=None, max_length=64)
    nhs_number: str | None = None
    medications: list[MedicationItem] = Field(..., min_length=1)

    @field_validator("nhs_number")
    @classmethod
    def validate_nhs_number(cls, value: str | None) -> str | None:
        if value is None:
            return value
        if not identifiers.is_valid(value):
            raise ValueError("nhs_number failed checksum validation")
        return identifiers.normalize(value)


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    idempotency_key: str
    connection_id: str
    patient_id: str
    medication_list_version: int
    status: str
    retry_count: int
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    ack_id: str | None = None
    last_error: str | None = None

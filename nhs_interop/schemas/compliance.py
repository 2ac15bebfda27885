from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nhs_interop.services import identifiers


class ComplianceSection(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    text: str = Field(..., min_length=1)
    code: str | None = Field(default=None, pattern=r"^\d{6,18}$")


class ComplianceItemPayload(BaseModel):
    """Structural contract of one Digital Social Care Record item."""

    model_config = ConfigDict(extra="forbid")

    patient_id: str = Field(..., min_length=1, max_length=64)
    nhs_number: str | None = None
    record_date: date
    record_type: Literal["care_plan", "care_note", "assessment", "incident"] = "care_plan"
    sections: list[ComplianceSection] = Field(..., min_length=1)

    @field_validator("nhs_number")
    @classmethod
    def validate_nhs_number(cls, value: str | None) -> str | None:
        if value is None:
            return value
        if not identifiers.is_valid(value):
            raise ValueError("nhs_number failed checksum validation")
        return identifiers.normalize(value)


class ComplianceItemIn(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any]


class ComplianceBatchAssemble(BaseModel):
    connection_id: str | None = Field(default=None, max_length=64)
    items: list[ComplianceItemIn] = Field(..., min_length=1)


class ComplianceItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    position: int
    status: str
    reason: str | None = None
    remote_reference: str | None = None
    submitted_at: datetime | None = None


class ComplianceBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_id: str
    connection_id: str
    submitted_at: datetime | None = None
    items: list[ComplianceItemResponse] = Field(default_factory=list)


class ComplianceRunResponse(BaseModel):
    period_id: str
    submitted: list[str] = Field(default_factory=list)
    invalid: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    submission_hash: str | None = None


class RemoteItemResult(BaseModel):
    """Per-item outcome returned by the submission endpoint."""

    item_id: str = Field(..., alias="itemId")
    status: Literal["accepted", "rejected"]
    reason: str | None = None
    reference: str | None = None


class RemoteSubmissionResult(BaseModel):
    items: list[RemoteItemResult] = Field(default_factory=list)

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SyncResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    changed: bool
    version: int
    sync_status: str
    content_hash: str | None = None
    updated_fields: list[str] = Field(default_factory=list)
    conflicting_fields: list[str] = Field(default_factory=list)


class MappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    nhs_number: str
    connection_id: str | None = None
    version: int
    content_hash: str | None = None
    remote_version_id: str | None = None
    sync_status: str
    is_active: bool
    last_synced_at: datetime | None = None


class ReconcileManyRequest(BaseModel):
    patient_ids: list[str] = Field(..., min_length=1, max_length=500)


class ReconcileFailure(BaseModel):
    patient_id: str
    error: dict[str, Any]


class ReconcileManyResponse(BaseModel):
    results: list[SyncResultResponse] = Field(default_factory=list)
    failures: list[ReconcileFailure] = Field(default_factory=list)


class CareRecordSection(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    text: str = Field(..., min_length=1)


class CareRecordPush(BaseModel):
    nhs_number: str
    connection_id: str | None = Field(default=None, max_length=64)
    author_reference: str | None = Field(default=None, max_length=200)
    sections: list[CareRecordSection] = Field(..., min_length=1)


class InboundMedication(BaseModel):
    id: str | None = None
    code: str | None = None
    display: str | None = None
    status: str | None = None
    intent: str | None = None
    authored_on: str | None = None
    dosage: str | None = None

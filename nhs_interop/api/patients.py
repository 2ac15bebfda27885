from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from nhs_interop.api.deps import get_services
from nhs_interop.exceptions import IntegrationError
from nhs_interop.schemas.sync import (
    CareRecordPush,
    InboundMedication,
    MappingResponse,
    ReconcileFailure,
    ReconcileManyRequest,
    ReconcileManyResponse,
    SyncResultResponse,
)
from nhs_interop.services.container import IntegrationServices

router = APIRouter(prefix="/patients", tags=["Patients"])


@router.post("/reconcile", response_model=ReconcileManyResponse)
async def reconcile_many(
    payload: ReconcileManyRequest,
    services: IntegrationServices = Depends(get_services),
):
    """Reconcile several patients; per-patient failures are reported, not raised."""
    outcomes = await services.sync.reconcile_many(payload.patient_ids)
    response = ReconcileManyResponse()
    for patient_id, outcome in outcomes.items():
        if isinstance(outcome, IntegrationError):
            response.failures.append(ReconcileFailure(patient_id=patient_id, error=outcome.context()))
        else:
            response.results.append(SyncResultResponse.model_validate(outcome))
    return response


@router.post("/care-record", status_code=202)
async def push_care_record(
    payload: CareRecordPush,
    services: IntegrationServices = Depends(get_services),
):
    """Post a care-home care record back to the patient's GP system."""
    connection_id = payload.connection_id or services.settings.nhs_default_connection_id
    client = services.client_for(connection_id)
    body = await client.push_care_record(
        payload.nhs_number,
        [section.model_dump() for section in payload.sections],
        author_reference=payload.author_reference,
    )
    return {"status": "accepted", "reference": body.get("id")}


@router.get("/inbound-medications/{nhs_number}", response_model=list[InboundMedication])
async def receive_medications(
    nhs_number: str,
    connection_id: Optional[str] = Query(None),
    services: IntegrationServices = Depends(get_services),
):
    """Active medications sent for the patient through the medication exchange."""
    client = services.client_for(connection_id or services.settings.nhs_default_connection_id)
    return await client.receive_medications(nhs_number)


@router.post("/{patient_id}/reconcile", response_model=SyncResultResponse)
async def reconcile_patient(
    patient_id: str,
    connection_id: Optional[str] = Query(None, description="Connection used on first reconciliation"),
    services: IntegrationServices = Depends(get_services),
):
    result = await services.sync.reconcile(patient_id, connection_id=connection_id)
    return SyncResultResponse.model_validate(result)


@router.get("/{patient_id}/mapping", response_model=MappingResponse)
async def get_mapping(
    patient_id: str,
    services: IntegrationServices = Depends(get_services),
):
    mapping = await services.sync.get_mapping(patient_id)
    if mapping is None:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return MappingResponse.model_validate(mapping)


@router.post("/{patient_id}/deactivate", response_model=MappingResponse)
async def deactivate_mapping(
    patient_id: str,
    services: IntegrationServices = Depends(get_services),
):
    await services.sync.deactivate(patient_id, actor="operator")
    mapping = await services.sync.get_mapping(patient_id)
    if mapping is None:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return MappingResponse.model_validate(mapping)

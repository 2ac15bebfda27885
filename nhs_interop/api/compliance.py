from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path

from nhs_interop.api.deps import get_services
from nhs_interop.schemas.compliance import (
    ComplianceBatchAssemble,
    ComplianceBatchResponse,
    ComplianceRunResponse,
)
from nhs_interop.services.container import IntegrationServices

router = APIRouter(prefix="/compliance", tags=["Compliance"])

PeriodId = Annotated[
    str,
    Path(pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="Reporting period, e.g. 2026-10"),
]


@router.put("/{period_id}", response_model=ComplianceBatchResponse)
async def assemble_batch(
    payload: ComplianceBatchAssemble,
    period_id: PeriodId,
    services: IntegrationServices = Depends(get_services),
):
    batch = await services.compliance.assemble_batch(
        period_id,
        payload.items,
        connection_id=payload.connection_id,
    )
    return ComplianceBatchResponse.model_validate(batch)


@router.post("/{period_id}/run", response_model=ComplianceRunResponse)
async def run_batch(
    period_id: PeriodId,
    services: IntegrationServices = Depends(get_services),
):
    """Validate and submit the unresolved items of a period."""
    return await services.compliance.run(period_id)


@router.get("/{period_id}", response_model=ComplianceBatchResponse)
async def get_batch(
    period_id: PeriodId,
    services: IntegrationServices = Depends(get_services),
):
    batch = await services.compliance.get_batch(period_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Compliance period not found")
    return ComplianceBatchResponse.model_validate(batch)

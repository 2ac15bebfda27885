from fastapi import APIRouter, Depends, Query

from nhs_interop.api.deps import get_services
from nhs_interop.schemas.audit import AuditEntryResponse, ChainVerificationResponse
from nhs_interop.services.container import IntegrationServices

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("/", response_model=list[AuditEntryResponse])
async def list_entries(
    correlation_id: str | None = Query(None, description="Only entries of one request"),
    limit: int = Query(100, ge=1, le=1000),
    services: IntegrationServices = Depends(get_services),
):
    """Read-only view of the audit trail."""
    if correlation_id:
        records = await services.audit.entries_for(correlation_id)
    else:
        records = await services.audit.recent(limit)
    return [AuditEntryResponse.model_validate(record) for record in records]


@router.get("/verify", response_model=ChainVerificationResponse)
async def verify_chain(services: IntegrationServices = Depends(get_services)):
    return ChainVerificationResponse.model_validate(await services.audit.verify_chain())

from fastapi import APIRouter, Depends, HTTPException

from nhs_interop.api.deps import get_services
from nhs_interop.schemas.transfers import MedicationTransferSubmit, TransferResponse
from nhs_interop.services.container import IntegrationServices

router = APIRouter(prefix="/transfers", tags=["Medication Transfers"])


@router.post("/", response_model=TransferResponse, status_code=202)
async def submit_transfer(
    payload: MedicationTransferSubmit,
    services: IntegrationServices = Depends(get_services),
):
    """Submit a medication transfer; repeats within the time bucket return the stored outcome."""
    record = await services.transfers.submit_transfer(payload)
    return TransferResponse.model_validate(record)


@router.get("/{idempotency_key}", response_model=TransferResponse)
async def get_transfer(
    idempotency_key: str,
    services: IntegrationServices = Depends(get_services),
):
    record = await services.transfers.get_transfer(idempotency_key)
    if record is None:
        raise HTTPException(status_code=404, detail="Transfer not found")
    return TransferResponse.model_validate(record)


@router.post("/{idempotency_key}/requeue", response_model=TransferResponse)
async def requeue_transfer(
    idempotency_key: str,
    services: IntegrationServices = Depends(get_services),
):
    record = await services.transfers.requeue(idempotency_key, actor="operator")
    return TransferResponse.model_validate(record)

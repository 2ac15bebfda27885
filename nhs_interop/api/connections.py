from fastapi import APIRouter, Depends

from nhs_interop.api.deps import get_services
from nhs_interop.repositories.connections import ConnectionRecord
from nhs_interop.schemas.connections import (
    ConnectionCreate,
    ConnectionReconnect,
    ConnectionResponse,
)
from nhs_interop.services.container import IntegrationServices

router = APIRouter(prefix="/connections", tags=["Connections"])


@router.post("/", response_model=ConnectionResponse, status_code=201)
async def register_connection(
    payload: ConnectionCreate,
    services: IntegrationServices = Depends(get_services),
):
    """Register (or replace) the credential set of a connected organization."""
    record = await services.auth.register(ConnectionRecord(**payload.model_dump()))
    return ConnectionResponse.model_validate(record)


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    services: IntegrationServices = Depends(get_services),
):
    return ConnectionResponse.model_validate(await services.auth.status(connection_id))


@router.post("/{connection_id}/token", response_model=ConnectionResponse)
async def refresh_token(
    connection_id: str,
    services: IntegrationServices = Depends(get_services),
):
    """Make sure the connection holds a usable token; refreshes when needed."""
    await services.auth.obtain_token(connection_id)
    return ConnectionResponse.model_validate(await services.auth.status(connection_id))


@router.post("/{connection_id}/reconnect", response_model=ConnectionResponse)
async def reconnect_connection(
    connection_id: str,
    payload: ConnectionReconnect | None = None,
    services: IntegrationServices = Depends(get_services),
):
    """Operator action that clears a degraded or revoked state."""
    record = await services.auth.reconnect(
        connection_id,
        client_secret=payload.client_secret if payload else None,
        actor="operator",
    )
    return ConnectionResponse.model_validate(record)


@router.post("/{connection_id}/revoke", response_model=ConnectionResponse)
async def revoke_connection(
    connection_id: str,
    services: IntegrationServices = Depends(get_services),
):
    record = await services.auth.revoke(connection_id, actor="operator")
    return ConnectionResponse.model_validate(record)

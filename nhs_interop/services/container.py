"""Process-wide wiring of the integration components."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nhs_interop.config import Settings
from nhs_interop.repositories.audit import AuditLog, InMemoryAuditLog, JsonlAuditLog, SQLAuditLog
from nhs_interop.repositories.compliance import (
    ComplianceStore,
    InMemoryComplianceStore,
    SQLComplianceStore,
)
from nhs_interop.repositories.connections import (
    ConnectionStore,
    InMemoryConnectionStore,
    SQLConnectionStore,
)
from nhs_interop.repositories.sync import InMemorySyncUnitOfWork, SQLSyncUnitOfWork, SyncUnitOfWork
from nhs_interop.repositories.transfers import InMemoryTransferStore, SQLTransferStore, TransferStore
from nhs_interop.services.audit import AuditRecorder
from nhs_interop.services.auth import AuthManager
from nhs_interop.services.compliance import ComplianceSubmitter
from nhs_interop.services.fhir_client import FHIRClient
from nhs_interop.services.medication_transfer import MedicationTransferGateway
from nhs_interop.services.notifications import (
    InMemoryNotificationSink,
    NotificationSink,
    SQLNotificationSink,
)
from nhs_interop.services.retry import RetryScheduler, Sleep
from nhs_interop.services.scheduler import IntegrationScheduler
from nhs_interop.services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class IntegrationServices:
    settings: Settings
    http_client: httpx.AsyncClient
    audit: AuditRecorder
    notifier: NotificationSink
    auth: AuthManager
    sync: SyncOrchestrator
    transfers: MedicationTransferGateway
    compliance: ComplianceSubmitter
    scheduler: IntegrationScheduler
    retries: RetryScheduler
    client_for: Callable[[str], FHIRClient]

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.retries.shutdown()
        await self.http_client.aclose()


def build_services(
    settings: Settings,
    *,
    audit_log: AuditLog,
    connections: ConnectionStore,
    sync_uow: SyncUnitOfWork,
    transfers: TransferStore,
    compliance: ComplianceStore,
    notifier: NotificationSink,
    http_client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], datetime] | None = None,
) -> IntegrationServices:
    http_client = http_client or httpx.AsyncClient(
        timeout=settings.nhs_request_timeout_seconds,
        verify=settings.nhs_verify_ssl,
    )
    audit = AuditRecorder(audit_log, actor=settings.audit_actor, clock=clock)
    auth = AuthManager(
        store=connections,
        audit=audit,
        http_client=http_client,
        settings=settings,
        notifier=notifier,
        sleep=sleep,
        clock=clock,
    )
    clients: dict[str, FHIRClient] = {}

    def client_for(connection_id: str) -> FHIRClient:
        client = clients.get(connection_id)
        if client is None:
            client = FHIRClient(
                connection_id,
                auth=auth,
                audit=audit,
                http_client=http_client,
                settings=settings,
                sleep=sleep,
            )
            clients[connection_id] = client
        return client

    retries = RetryScheduler(sleep=sleep)
    gateway = MedicationTransferGateway(
        store=transfers,
        client_for=client_for,
        audit=audit,
        settings=settings,
        scheduler=retries,
        notifier=notifier,
        clock=clock,
    )
    auth.add_revocation_listener(gateway.on_connection_revoked)
    sync = SyncOrchestrator(
        unit_of_work=sync_uow,
        client_for=client_for,
        audit=audit,
        settings=settings,
        notifier=notifier,
        clock=clock,
    )
    submitter = ComplianceSubmitter(
        store=compliance,
        client_for=client_for,
        audit=audit,
        settings=settings,
        notifier=notifier,
        sleep=sleep,
        clock=clock,
    )
    scheduler = IntegrationScheduler(
        settings=settings,
        transfers=gateway,
        compliance=submitter,
        sync=sync,
        clock=clock,
    )
    return IntegrationServices(
        settings=settings,
        http_client=http_client,
        audit=audit,
        notifier=notifier,
        auth=auth,
        sync=sync,
        transfers=gateway,
        compliance=submitter,
        scheduler=scheduler,
        retries=retries,
        client_for=client_for,
    )


def build_sql_services(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    http_client: httpx.AsyncClient | None = None,
) -> IntegrationServices:
    if settings.audit_backend == "jsonl":
        audit_log: AuditLog = JsonlAuditLog(settings.audit_jsonl_path)
    else:
        audit_log = SQLAuditLog(session_maker)
    logger.info("Integration services wired (audit_backend=%s)", settings.audit_backend)
    return build_services(
        settings,
        audit_log=audit_log,
        connections=SQLConnectionStore(session_maker),
        sync_uow=SQLSyncUnitOfWork(session_maker),
        transfers=SQLTransferStore(session_maker),
        compliance=SQLComplianceStore(session_maker),
        notifier=SQLNotificationSink(session_maker),
        http_client=http_client,
    )


def build_in_memory_services(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], datetime] | None = None,
) -> IntegrationServices:
    """Fully wired services over in-memory stores, for tests and local demos."""
    return build_services(
        settings,
        audit_log=InMemoryAuditLog(),
        connections=InMemoryConnectionStore(),
        sync_uow=InMemorySyncUnitOfWork(),
        transfers=InMemoryTransferStore(),
        compliance=InMemoryComplianceStore(),
        notifier=InMemoryNotificationSink(),
        http_client=http_client,
        sleep=sleep,
        clock=clock,
    )

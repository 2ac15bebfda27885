"""Reconciliation of remote clinical records into the local record store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from nhs_interop.config import FieldOwner, Settings
from nhs_interop.exceptions import AuditWriteFailure, IntegrationError, NotFound, RejectedError
from nhs_interop.models import SyncStatus
from nhs_interop.repositories.sync import MappingRecord, SyncUnitOfWork
from nhs_interop.services import identifiers
from nhs_interop.services.audit import AuditRecorder
from nhs_interop.services.fhir_client import FHIRClient
from nhs_interop.services.locks import KeyedLocks
from nhs_interop.services.notifications import (
    IntegrationNotice,
    LoggingNotificationSink,
    NotificationSink,
    emit_safely,
)

logger = logging.getLogger(__name__)


@dataclass
class FieldMerge:
    updates: dict[str, Any] = field(default_factory=dict)
    conflicts: dict[str, dict[str, Any]] = field(default_factory=dict)
    unowned: list[str] = field(default_factory=list)


def merge_fields(
    local: dict[str, Any],
    remote: dict[str, Any],
    ownership: dict[str, FieldOwner],
) -> FieldMerge:
    """Decide per field what a reconciliation writes.

    Externally owned fields take the remote value; locally owned fields are
    left alone; fields without an owner are never written and are reported as
    conflicts when local and remote disagree.
    """
    merge = FieldMerge()
    for name, remote_value in remote.items():
        owner = ownership.get(name)
        local_value = local.get(name)
        if owner == "external":
            if local_value != remote_value:
                merge.updates[name] = remote_value
        elif owner == "local":
            continue
        else:
            merge.unowned.append(name)
            if local_value != remote_value:
                merge.conflicts[name] = {"local": local_value, "remote": remote_value}
    return merge


@dataclass
class SyncResult:
    patient_id: str
    changed: bool
    version: int
    sync_status: str
    content_hash: str | None
    updated_fields: list[str] = field(default_factory=list)
    conflicting_fields: list[str] = field(default_factory=list)


class SyncOrchestrator:
    """Runs reconciliations; one at a time per patient, concurrently across patients."""

    def __init__(
        self,
        *,
        unit_of_work: SyncUnitOfWork,
        client_for: Callable[[str], FHIRClient],
        audit: AuditRecorder,
        settings: Settings,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._uow = unit_of_work
        self._client_for = client_for
        self._audit = audit
        self._settings = settings
        self._ownership = dict(settings.field_ownership)
        self._notifier = notifier or LoggingNotificationSink()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = KeyedLocks()

    async def _load_mapping(self, patient_id: str, connection_id: str | None) -> MappingRecord:
        async with self._uow.transaction() as tx:
            mapping = await tx.mappings.get(patient_id)
            if mapping is not None:
                return mapping
            raw_identifier = await tx.records.get_identifier(patient_id)
            if not raw_identifier:
                raise NotFound(
                    "Local record has no national identifier",
                    resource_id=patient_id,
                )
            nhs_number = identifiers.validate(raw_identifier)
            mapping = await tx.mappings.create(
                MappingRecord(
                    patient_id=patient_id,
                    nhs_number=nhs_number,
                    connection_id=connection_id or self._settings.nhs_default_connection_id,
                )
            )
            logger.info(
                "Created mapping for patient=%s identifier=%s",
                patient_id,
                identifiers.mask(nhs_number),
            )
            return mapping

    async def reconcile(self, patient_id: str, *, connection_id: str | None = None) -> SyncResult:
        async with self._locks.hold(patient_id):
            try:
                return await self._reconcile(patient_id, connection_id)
            except AuditWriteFailure:
                raise
            except IntegrationError as exc:
                await self._audit.append(
                    action="sync.reconcile",
                    target=f"patient:{patient_id}",
                    outcome="failure",
                    detail=exc.context(),
                )
                raise

    async def _reconcile(self, patient_id: str, connection_id: str | None) -> SyncResult:
        mapping = await self._load_mapping(patient_id, connection_id)
        if not mapping.is_active:
            raise RejectedError(
                "Mapping is deactivated",
                connection_id=mapping.connection_id,
                resource_id=patient_id,
            )
        client = self._client_for(mapping.connection_id or self._settings.nhs_default_connection_id)
        bundle = await client.fetch_patient_record(mapping.nhs_number)

        if bundle.content_hash == mapping.content_hash:
            logger.debug("Patient %s unchanged at version %d", patient_id, mapping.version)
            await self._audit.append(
                action="sync.reconcile",
                target=f"patient:{patient_id}",
                outcome="unchanged",
                detail={"version": mapping.version},
            )
            return SyncResult(
                patient_id=patient_id,
                changed=False,
                version=mapping.version,
                sync_status=mapping.sync_status,
                content_hash=mapping.content_hash,
            )

        return await self._apply(mapping, bundle.canonical, bundle.content_hash, bundle.version_id)

    async def _apply(
        self,
        mapping: MappingRecord,
        canonical: dict[str, Any],
        new_hash: str,
        remote_version_id: str | None,
    ) -> SyncResult:
        patient_id = mapping.patient_id
        async with self._uow.transaction() as tx:
            local = await tx.records.get_fields(patient_id) or {}
            merge = merge_fields(local, canonical, self._ownership)
            if merge.updates:
                await tx.records.write_fields(patient_id, merge.updates)
            status = SyncStatus.conflict if merge.conflicts else SyncStatus.synced
            advanced = await tx.mappings.advance(
                patient_id,
                expected_version=mapping.version,
                content_hash=new_hash,
                remote_version_id=remote_version_id,
                sync_status=status.value,
                synced_at=self._clock(),
            )
            if not advanced:
                raise IntegrationError(
                    "Mapping version moved during reconciliation",
                    connection_id=mapping.connection_id,
                    resource_id=patient_id,
                    details={"expected_version": mapping.version},
                )

        if merge.unowned:
            logger.warning(
                "Patient %s has fields without an owner: %s",
                patient_id,
                ", ".join(sorted(merge.unowned)),
            )
        if merge.conflicts:
            await emit_safely(
                self._notifier,
                IntegrationNotice(
                    event_type="sync_conflict",
                    subject=f"patient:{patient_id}",
                    connection_id=mapping.connection_id,
                    details={"fields": sorted(merge.conflicts)},
                ),
            )
        await self._audit.append(
            action="sync.reconcile",
            target=f"patient:{patient_id}",
            outcome=status.value,
            detail={
                "version": mapping.version + 1,
                "updated_fields": sorted(merge.updates),
                "conflicting_fields": sorted(merge.conflicts),
            },
        )
        logger.info(
            "Reconciled patient=%s version=%d updated=%d conflicts=%d",
            patient_id,
            mapping.version + 1,
            len(merge.updates),
            len(merge.conflicts),
        )
        return SyncResult(
            patient_id=patient_id,
            changed=True,
            version=mapping.version + 1,
            sync_status=status.value,
            content_hash=new_hash,
            updated_fields=sorted(merge.updates),
            conflicting_fields=sorted(merge.conflicts),
        )

    async def reconcile_many(
        self,
        patient_ids: list[str],
        *,
        concurrency: int | None = None,
    ) -> dict[str, SyncResult | IntegrationError]:
        """Reconcile several patients with bounded fan-out; failures are returned per patient."""
        semaphore = asyncio.Semaphore(concurrency or self._settings.scheduler_reconcile_concurrency)
        outcomes: dict[str, SyncResult | IntegrationError] = {}

        async def _one(patient_id: str) -> None:
            async with semaphore:
                try:
                    outcomes[patient_id] = await self.reconcile(patient_id)
                except IntegrationError as exc:
                    logger.warning("Reconcile failed for patient=%s: %s", patient_id, exc.message)
                    outcomes[patient_id] = exc

        await asyncio.gather(*(_one(patient_id) for patient_id in dict.fromkeys(patient_ids)))
        return outcomes

    async def due_patient_ids(self, synced_before: datetime, limit: int) -> list[str]:
        async with self._uow.transaction() as tx:
            due = await tx.mappings.list_due(synced_before, limit)
        return [mapping.patient_id for mapping in due]

    async def get_mapping(self, patient_id: str) -> MappingRecord | None:
        async with self._uow.transaction() as tx:
            return await tx.mappings.get(patient_id)

    async def deactivate(self, patient_id: str, *, actor: str | None = None) -> bool:
        async with self._locks.hold(patient_id):
            async with self._uow.transaction() as tx:
                changed = await tx.mappings.deactivate(patient_id)
        await self._audit.append(
            action="sync.deactivate",
            target=f"patient:{patient_id}",
            outcome="success" if changed else "unchanged",
            actor=actor,
        )
        return changed

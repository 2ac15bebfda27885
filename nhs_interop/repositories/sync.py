"""Stores used by reconciliation.

The local clinical record and the patient mapping are always written inside
one ``SyncUnitOfWork`` transaction, so a reconciled value and the mapping
version that records it land together or not at all.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nhs_interop.models import LocalClinicalRecord, PatientRecordMapping, SyncStatus


@dataclass
class MappingRecord:
    patient_id: str
    nhs_number: str
    connection_id: Optional[str] = None
    version: int = 0
    content_hash: Optional[str] = None
    remote_version_id: Optional[str] = None
    sync_status: str = SyncStatus.unsynced.value
    is_active: bool = True
    last_synced_at: Optional[datetime] = None


class ClinicalRecordStore(Protocol):
    """Canonical local record store (external collaborator)."""

    async def get_identifier(self, patient_id: str) -> Optional[str]:
        ...

    async def get_fields(self, patient_id: str) -> Optional[dict[str, Any]]:
        ...

    async def write_fields(self, patient_id: str, updates: dict[str, Any]) -> None:
        ...


class MappingStore(Protocol):
    async def get(self, patient_id: str) -> Optional[MappingRecord]:
        ...

    async def create(self, record: MappingRecord) -> MappingRecord:
        ...

    async def advance(
        self,
        patient_id: str,
        *,
        expected_version: int,
        content_hash: str,
        remote_version_id: Optional[str],
        sync_status: str,
        synced_at: datetime,
    ) -> bool:
        """Compare-and-set on ``version``; returns False when the version moved."""

    async def deactivate(self, patient_id: str) -> bool:
        ...

    async def list_due(self, synced_before: datetime, limit: int) -> list[MappingRecord]:
        ...


@dataclass
class SyncTransaction:
    records: ClinicalRecordStore
    mappings: MappingStore


class SyncUnitOfWork(Protocol):
    def transaction(self) -> AsyncIterator[SyncTransaction]:
        ...


def _mapping_from_row(row: PatientRecordMapping) -> MappingRecord:
    return MappingRecord(
        patient_id=row.patient_id,
        nhs_number=row.nhs_number,
        connection_id=row.connection_id,
        version=row.version,
        content_hash=row.content_hash,
        remote_version_id=row.remote_version_id,
        sync_status=row.sync_status,
        is_active=row.is_active,
        last_synced_at=row.last_synced_at,
    )


def locked_record_query(patient_id: str):
    return (
        select(LocalClinicalRecord)
        .where(LocalClinicalRecord.patient_id == patient_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class SQLClinicalRecordStore:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_identifier(self, patient_id: str) -> Optional[str]:
        return await self._session.scalar(
            select(LocalClinicalRecord.nhs_number).where(
                LocalClinicalRecord.patient_id == patient_id
            )
        )

    async def _locked_row(self, patient_id: str) -> Optional[LocalClinicalRecord]:
        # Holds the row until the transaction ends and reloads it past the identity map,
        # so a write merges onto what is committed now rather than an earlier read.
        return await self._session.scalar(locked_record_query(patient_id))

    async def get_fields(self, patient_id: str) -> Optional[dict[str, Any]]:
        row = await self._locked_row(patient_id)
        return dict(row.fields or {}) if row else None

    async def write_fields(self, patient_id: str, updates: dict[str, Any]) -> None:
        row = await self._locked_row(patient_id)
        if row is None:
            row = LocalClinicalRecord(patient_id=patient_id, fields={})
            self._session.add(row)
        # Reassign so the JSON column is flagged dirty.
        row.fields = {**(row.fields or {}), **updates}
        if "nhs_number" in updates:
            row.nhs_number = updates["nhs_number"]
        await self._session.flush()


class SQLMappingStore:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, patient_id: str) -> Optional[MappingRecord]:
        row = await self._session.get(PatientRecordMapping, patient_id)
        return _mapping_from_row(row) if row else None

    async def create(self, record: MappingRecord) -> MappingRecord:
        existing = await self._session.get(PatientRecordMapping, record.patient_id)
        if existing is not None:
            return _mapping_from_row(existing)
        row = PatientRecordMapping(
            patient_id=record.patient_id,
            nhs_number=record.nhs_number,
            connection_id=record.connection_id,
            version=record.version,
            content_hash=record.content_hash,
            remote_version_id=record.remote_version_id,
            sync_status=record.sync_status,
            is_active=record.is_active,
            last_synced_at=record.last_synced_at,
        )
        self._session.add(row)
        await self._session.flush()
        return _mapping_from_row(row)

    async def advance(
        self,
        patient_id: str,
        *,
        expected_version: int,
        content_hash: str,
        remote_version_id: Optional[str],
        sync_status: str,
        synced_at: datetime,
    ) -> bool:
        result = await self._session.execute(
            update(PatientRecordMapping)
            .where(
                PatientRecordMapping.patient_id == patient_id,
                PatientRecordMapping.version == expected_version,
            )
            .values(
                version=expected_version + 1,
                content_hash=content_hash,
                remote_version_id=remote_version_id,
                sync_status=sync_status,
                last_synced_at=synced_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def deactivate(self, patient_id: str) -> bool:
        result = await self._session.execute(
            update(PatientRecordMapping)
            .where(
                PatientRecordMapping.patient_id == patient_id,
                PatientRecordMapping.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_due(self, synced_before: datetime, limit: int) -> list[MappingRecord]:
        result = await self._session.execute(
            select(PatientRecordMapping)
            .where(
                PatientRecordMapping.is_active.is_(True),
                or_(
                    PatientRecordMapping.last_synced_at.is_(None),
                    PatientRecordMapping.last_synced_at < synced_before,
                ),
            )
            .order_by(PatientRecordMapping.last_synced_at.asc().nulls_first())
            .limit(limit)
        )
        return [_mapping_from_row(row) for row in result.scalars().all()]


class SQLSyncUnitOfWork:
    """One session and one transaction per reconciliation step."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SyncTransaction]:
        async with self._session_maker() as session:
            async with session.begin():
                yield SyncTransaction(
                    records=SQLClinicalRecordStore(session),
                    mappings=SQLMappingStore(session),
                )


class _StagedRecords:
    def __init__(self, owner: "InMemorySyncUnitOfWork", staged: list[Callable[[], None]]):
        self._owner = owner
        self._staged = staged

    async def get_identifier(self, patient_id: str) -> Optional[str]:
        return self._owner.local_identifiers.get(patient_id)

    async def get_fields(self, patient_id: str) -> Optional[dict[str, Any]]:
        fields = self._owner.local_fields.get(patient_id)
        return copy.deepcopy(fields) if fields is not None else None

    async def write_fields(self, patient_id: str, updates: dict[str, Any]) -> None:
        updates = copy.deepcopy(updates)

        def _apply() -> None:
            self._owner.local_fields.setdefault(patient_id, {}).update(updates)

        self._staged.append(_apply)


class _StagedMappings:
    def __init__(self, owner: "InMemorySyncUnitOfWork", staged: list[Callable[[], None]]):
        self._owner = owner
        self._staged = staged

    async def get(self, patient_id: str) -> Optional[MappingRecord]:
        record = self._owner.mappings.get(patient_id)
        return replace(record) if record else None

    async def create(self, record: MappingRecord) -> MappingRecord:
        existing = self._owner.mappings.get(record.patient_id)
        if existing is not None:
            return replace(existing)
        staged = replace(record)

        def _apply() -> None:
            self._owner.mappings.setdefault(staged.patient_id, staged)

        self._staged.append(_apply)
        return replace(staged)

    async def advance(
        self,
        patient_id: str,
        *,
        expected_version: int,
        content_hash: str,
        remote_version_id: Optional[str],
        sync_status: str,
        synced_at: datetime,
    ) -> bool:
        current = self._owner.mappings.get(patient_id)
        if current is None or current.version != expected_version:
            return False

        def _apply() -> None:
            record = self._owner.mappings[patient_id]
            record.version = expected_version + 1
            record.content_hash = content_hash
            record.remote_version_id = remote_version_id
            record.sync_status = sync_status
            record.last_synced_at = synced_at

        self._staged.append(_apply)
        return True

    async def deactivate(self, patient_id: str) -> bool:
        current = self._owner.mappings.get(patient_id)
        if current is None or not current.is_active:
            return False

        def _apply() -> None:
            self._owner.mappings[patient_id].is_active = False

        self._staged.append(_apply)
        return True

    async def list_due(self, synced_before: datetime, limit: int) -> list[MappingRecord]:
        due = [
            replace(record)
            for record in self._owner.mappings.values()
            if record.is_active
            and (record.last_synced_at is None or record.last_synced_at < synced_before)
        ]
        due.sort(key=lambda record: (record.last_synced_at is not None, record.last_synced_at or synced_before))
        return due[:limit]


class InMemorySyncUnitOfWork:
    """In-memory stores; staged writes apply only when the transaction exits cleanly."""

    def __init__(self):
        self.local_identifiers: dict[str, str] = {}
        self.local_fields: dict[str, dict[str, Any]] = {}
        self.mappings: dict[str, MappingRecord] = {}
        self.writes = 0

    def add_local_record(self, patient_id: str, nhs_number: str, fields: dict[str, Any]) -> None:
        self.local_identifiers[patient_id] = nhs_number
        self.local_fields[patient_id] = copy.deepcopy(fields)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SyncTransaction]:
        staged: list[Callable[[], None]] = []
        yield SyncTransaction(
            records=_StagedRecords(self, staged),
            mappings=_StagedMappings(self, staged),
        )
        for apply in staged:
            apply()
        self.writes += len(staged)

"""Medication-transfer request store implementations."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nhs_interop.models import MedicationTransferRequest, TransferStatus


@dataclass
class TransferRecord:
    idempotency_key: str
    connection_id: str
    patient_id: str
    medication_list_version: int
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = TransferStatus.pending.value
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    ack_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


class TransferStore(Protocol):
    async def get(self, idempotency_key: str) -> Optional[TransferRecord]:
        ...

    async def insert_or_get(self, record: TransferRecord) -> tuple[TransferRecord, bool]:
        """Insert ``record`` unless the key exists; returns (stored, created)."""

    async def save(self, record: TransferRecord) -> None:
        ...

    async def list_due(self, now: datetime, limit: int) -> list[TransferRecord]:
        ...

    async def list_by_status(self, status: str, limit: int = 100) -> list[TransferRecord]:
        ...


def _from_row(row: MedicationTransferRequest) -> TransferRecord:
    return TransferRecord(
        idempotency_key=row.idempotency_key,
        connection_id=row.connection_id,
        patient_id=row.patient_id,
        medication_list_version=row.medication_list_version,
        payload=dict(row.payload or {}),
        status=row.status,
        retry_count=row.retry_count,
        last_attempt_at=row.last_attempt_at,
        next_attempt_at=row.next_attempt_at,
        ack_id=row.ack_id,
        last_error=row.last_error,
        created_at=row.created_at,
    )


class SQLTransferStore:
    """Transfer store on ``medication_transfer_requests``; the key is the primary key."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, idempotency_key: str) -> Optional[TransferRecord]:
        async with self._session_maker() as session:
            row = await session.get(MedicationTransferRequest, idempotency_key)
            return _from_row(row) if row else None

    async def insert_or_get(self, record: TransferRecord) -> tuple[TransferRecord, bool]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(
                        MedicationTransferRequest(
                            idempotency_key=record.idempotency_key,
                            connection_id=record.connection_id,
                            patient_id=record.patient_id,
                            medication_list_version=record.medication_list_version,
                            payload=record.payload,
                            status=record.status,
                            retry_count=record.retry_count,
                        )
                    )
        except IntegrityError:
            existing = await self.get(record.idempotency_key)
            if existing is None:
                raise
            return existing, False
        return replace(record), True

    async def save(self, record: TransferRecord) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                row = await session.get(MedicationTransferRequest, record.idempotency_key)
                if row is None:
                    raise LookupError(f"Transfer {record.idempotency_key} does not exist")
                row.status = record.status
                row.retry_count = record.retry_count
                row.last_attempt_at = record.last_attempt_at
                row.next_attempt_at = record.next_attempt_at
                row.ack_id = record.ack_id
                row.last_error = record.last_error

    async def list_due(self, now: datetime, limit: int) -> list[TransferRecord]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(MedicationTransferRequest)
                .where(
                    MedicationTransferRequest.status.in_(
                        [TransferStatus.pending.value, TransferStatus.sent.value]
                    ),
                    (MedicationTransferRequest.next_attempt_at.is_(None))
                    | (MedicationTransferRequest.next_attempt_at <= now),
                )
                .order_by(MedicationTransferRequest.next_attempt_at.asc().nulls_first())
                .limit(limit)
            )
            return [_from_row(row) for row in result.scalars().all()]

    async def list_by_status(self, status: str, limit: int = 100) -> list[TransferRecord]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(MedicationTransferRequest)
                .where(MedicationTransferRequest.status == status)
                .order_by(MedicationTransferRequest.created_at.desc())
                .limit(limit)
            )
            return [_from_row(row) for row in result.scalars().all()]


class InMemoryTransferStore:
    """In-memory transfer store for tests and local demos."""

    def __init__(self):
        self._records: dict[str, TransferRecord] = {}
        self.history: list[tuple[str, str]] = []

    async def get(self, idempotency_key: str) -> Optional[TransferRecord]:
        record = self._records.get(idempotency_key)
        return copy.deepcopy(record) if record else None

    async def insert_or_get(self, record: TransferRecord) -> tuple[TransferRecord, bool]:
        existing = self._records.get(record.idempotency_key)
        if existing is not None:
            return copy.deepcopy(existing), False
        self._records[record.idempotency_key] = copy.deepcopy(record)
        self.history.append((record.idempotency_key, record.status))
        return copy.deepcopy(record), True

    async def save(self, record: TransferRecord) -> None:
        if record.idempotency_key not in self._records:
            raise LookupError(f"Transfer {record.idempotency_key} does not exist")
        self._records[record.idempotency_key] = copy.deepcopy(record)
        self.history.append((record.idempotency_key, record.status))

    async def list_due(self, now: datetime, limit: int) -> list[TransferRecord]:
        due = [
            copy.deepcopy(record)
            for record in self._records.values()
            if record.status in (TransferStatus.pending, TransferStatus.sent)
            and (record.next_attempt_at is None or record.next_attempt_at <= now)
        ]
        return due[:limit]

    async def list_by_status(self, status: str, limit: int = 100) -> list[TransferRecord]:
        return [copy.deepcopy(r) for r in self._records.values() if r.status == status][:limit]

    def statuses(self, idempotency_key: str) -> list[str]:
        return [status for key, status in self.history if key == idempotency_key]

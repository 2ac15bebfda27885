"""Compliance batch store implementations; item state is persisted per item."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from nhs_interop.models import (
    ComplianceItemStatus,
    ComplianceSubmissionBatch,
    ComplianceSubmissionItem,
)


@dataclass
class ComplianceItemRecord:
    item_id: str
    position: int
    payload: dict[str, Any]
    status: str = ComplianceItemStatus.valid.value
    reason: Optional[str] = None
    remote_reference: Optional[str] = None
    submitted_at: Optional[datetime] = None


@dataclass
class ComplianceBatchRecord:
    period_id: str
    connection_id: str
    items: list[ComplianceItemRecord] = field(default_factory=list)
    submitted_at: Optional[datetime] = None

    def item(self, item_id: str) -> Optional[ComplianceItemRecord]:
        return next((item for item in self.items if item.item_id == item_id), None)


class ComplianceStore(Protocol):
    async def get_batch(self, period_id: str) -> Optional[ComplianceBatchRecord]:
        ...

    async def save_batch(self, batch: ComplianceBatchRecord) -> None:
        """Upsert the batch and every item it carries."""

    async def save_item(self, period_id: str, item: ComplianceItemRecord) -> None:
        ...

    async def mark_submitted(self, period_id: str, submitted_at: datetime) -> None:
        ...


def _item_from_row(row: ComplianceSubmissionItem) -> ComplianceItemRecord:
    return ComplianceItemRecord(
        item_id=row.item_id,
        position=row.position,
        payload=dict(row.payload or {}),
        status=row.status,
        reason=row.reason,
        remote_reference=row.remote_reference,
        submitted_at=row.submitted_at,
    )


def _apply_item(row: ComplianceSubmissionItem, item: ComplianceItemRecord) -> None:
    row.position = item.position
    row.payload = item.payload
    row.status = item.status
    row.reason = item.reason
    row.remote_reference = item.remote_reference
    row.submitted_at = item.submitted_at


class SQLComplianceStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def _load(self, session: AsyncSession, period_id: str) -> Optional[ComplianceSubmissionBatch]:
        return await session.scalar(
            select(ComplianceSubmissionBatch)
            .options(selectinload(ComplianceSubmissionBatch.items))
            .where(ComplianceSubmissionBatch.period_id == period_id)
        )

    async def get_batch(self, period_id: str) -> Optional[ComplianceBatchRecord]:
        async with self._session_maker() as session:
            row = await self._load(session, period_id)
            if row is None:
                return None
            return ComplianceBatchRecord(
                period_id=row.period_id,
                connection_id=row.connection_id,
                items=[_item_from_row(item) for item in row.items],
                submitted_at=row.submitted_at,
            )

    async def save_batch(self, batch: ComplianceBatchRecord) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                row = await self._load(session, batch.period_id)
                if row is None:
                    row = ComplianceSubmissionBatch(
                        period_id=batch.period_id,
                        connection_id=batch.connection_id,
                        items=[],
                    )
                    session.add(row)
                row.connection_id = batch.connection_id
                row.submitted_at = batch.submitted_at
                existing = {item.item_id: item for item in row.items}
                for item in batch.items:
                    item_row = existing.get(item.item_id)
                    if item_row is None:
                        item_row = ComplianceSubmissionItem(item_id=item.item_id)
                        row.items.append(item_row)
                    _apply_item(item_row, item)

    async def save_item(self, period_id: str, item: ComplianceItemRecord) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                row = await session.scalar(
                    select(ComplianceSubmissionItem)
                    .join(ComplianceSubmissionBatch)
                    .where(
                        ComplianceSubmissionBatch.period_id == period_id,
                        ComplianceSubmissionItem.item_id == item.item_id,
                    )
                )
                if row is None:
                    raise LookupError(f"Compliance item {item.item_id} not in period {period_id}")
                _apply_item(row, item)

    async def mark_submitted(self, period_id: str, submitted_at: datetime) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                row = await self._load(session, period_id)
                if row is not None:
                    row.submitted_at = submitted_at


class InMemoryComplianceStore:
    """In-memory compliance store for tests and local demos."""

    def __init__(self):
        self._batches: dict[str, ComplianceBatchRecord] = {}
        self.item_saves = 0

    async def get_batch(self, period_id: str) -> Optional[ComplianceBatchRecord]:
        batch = self._batches.get(period_id)
        return copy.deepcopy(batch) if batch else None

    async def save_batch(self, batch: ComplianceBatchRecord) -> None:
        self._batches[batch.period_id] = copy.deepcopy(batch)

    async def save_item(self, period_id: str, item: ComplianceItemRecord) -> None:
        batch = self._batches.get(period_id)
        if batch is None:
            raise LookupError(f"Compliance period {period_id} does not exist")
        for index, current in enumerate(batch.items):
            if current.item_id == item.item_id:
                batch.items[index] = copy.deepcopy(item)
                self.item_saves += 1
                return
        raise LookupError(f"Compliance item {item.item_id} not in period {period_id}")

    async def mark_submitted(self, period_id: str, submitted_at: datetime) -> None:
        batch = self._batches.get(period_id)
        if batch is not None:
            batch.submitted_at = submitted_at

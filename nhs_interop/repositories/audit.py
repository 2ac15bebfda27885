"""Audit log backends: SQL table, JSON-lines file and in-memory.

None of the backends expose update or delete operations.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nhs_interop.models import AuditEntry


@dataclass(frozen=True)
class AuditRecord:
    correlation_id: str
    actor: str
    action: str
    target: str
    outcome: str
    recorded_at: datetime
    detail: str | None
    prev_hash: str | None
    entry_hash: str


def compute_entry_hash(
    *,
    prev_hash: str | None,
    correlation_id: str,
    actor: str,
    action: str,
    target: str,
    outcome: str,
    recorded_at: datetime,
    detail: str | None,
) -> str:
    payload = json.dumps(
        {
            "prev_hash": prev_hash,
            "correlation_id": correlation_id,
            "actor": actor,
            "action": action,
            "target": target,
            "outcome": outcome,
            "recorded_at": recorded_at.isoformat(),
            "detail": detail,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditLog(Protocol):
    async def append(self, record: AuditRecord) -> None:
        ...

    async def last_hash(self) -> str | None:
        ...

    async def list_by_correlation(self, correlation_id: str) -> list[AuditRecord]:
        ...

    async def list_recent(self, limit: int) -> list[AuditRecord]:
        ...

    async def list_all(self) -> list[AuditRecord]:
        ...


def _from_row(row: AuditEntry) -> AuditRecord:
    return AuditRecord(
        correlation_id=row.correlation_id,
        actor=row.actor,
        action=row.action,
        target=row.target,
        outcome=row.outcome,
        recorded_at=row.recorded_at,
        detail=row.detail,
        prev_hash=row.prev_hash,
        entry_hash=row.entry_hash,
    )


class SQLAuditLog:
    """Audit log backed by the ``audit_entries`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def append(self, record: AuditRecord) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                session.add(AuditEntry(**asdict(record)))

    async def last_hash(self) -> str | None:
        async with self._session_maker() as session:
            return await session.scalar(
                select(AuditEntry.entry_hash).order_by(AuditEntry.id.desc()).limit(1)
            )

    async def list_by_correlation(self, correlation_id: str) -> list[AuditRecord]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AuditEntry)
                .where(AuditEntry.correlation_id == correlation_id)
                .order_by(AuditEntry.id.asc())
            )
            return [_from_row(row) for row in result.scalars().all()]

    async def list_recent(self, limit: int) -> list[AuditRecord]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AuditEntry).order_by(AuditEntry.id.desc()).limit(limit)
            )
            return [_from_row(row) for row in reversed(result.scalars().all())]

    async def list_all(self) -> list[AuditRecord]:
        async with self._session_maker() as session:
            result = await session.execute(select(AuditEntry).order_by(AuditEntry.id.asc()))
            return [_from_row(row) for row in result.scalars().all()]


class JsonlAuditLog:
    """Append-only JSON-lines file; every append is flushed and fsynced."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._tip: str | None = None
        self._tip_loaded = False

    def _write(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def _read_all(self) -> list[AuditRecord]:
        if not self._path.exists():
            return []
        records: list[AuditRecord] = []
        with open(self._path, encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                raw["recorded_at"] = datetime.fromisoformat(raw["recorded_at"])
                records.append(AuditRecord(**raw))
        return records

    async def append(self, record: AuditRecord) -> None:
        payload = asdict(record)
        payload["recorded_at"] = record.recorded_at.isoformat()
        line = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        await asyncio.to_thread(self._write, line)
        self._tip = record.entry_hash
        self._tip_loaded = True

    async def last_hash(self) -> str | None:
        if not self._tip_loaded:
            records = await asyncio.to_thread(self._read_all)
            self._tip = records[-1].entry_hash if records else None
            self._tip_loaded = True
        return self._tip

    async def list_by_correlation(self, correlation_id: str) -> list[AuditRecord]:
        records = await asyncio.to_thread(self._read_all)
        return [record for record in records if record.correlation_id == correlation_id]

    async def list_recent(self, limit: int) -> list[AuditRecord]:
        records = await asyncio.to_thread(self._read_all)
        return records[-limit:] if limit else []

    async def list_all(self) -> list[AuditRecord]:
        return await asyncio.to_thread(self._read_all)


class InMemoryAuditLog:
    """In-memory audit log for tests and local demos."""

    def __init__(self):
        self._records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    async def last_hash(self) -> str | None:
        return self._records[-1].entry_hash if self._records else None

    async def list_by_correlation(self, correlation_id: str) -> list[AuditRecord]:
        return [record for record in self._records if record.correlation_id == correlation_id]

    async def list_recent(self, limit: int) -> list[AuditRecord]:
        return self._records[-limit:] if limit else []

    async def list_all(self) -> list[AuditRecord]:
        return list(self._records)

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        return tuple(self._records)

"""Connection credential store implementations."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nhs_interop.models import ConnectionStatus, NHSConnection


@dataclass
class ConnectionRecord:
    connection_id: str
    organization_code: str
    client_id: str
    client_secret: str
    scope: str = "patient/*.read patient/*.write"
    token_url: Optional[str] = None
    asid: Optional[str] = None
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    status: str = ConnectionStatus.active.value
    last_error: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    refresh_count: int = 0

    def copy(self) -> "ConnectionRecord":
        return replace(self)


class ConnectionStore(Protocol):
    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        ...

    async def save(self, record: ConnectionRecord) -> None:
        ...

    async def list_all(self) -> list[ConnectionRecord]:
        ...


def _from_row(row: NHSConnection) -> ConnectionRecord:
    return ConnectionRecord(
        connection_id=row.id,
        organization_code=row.organization_code,
        client_id=row.client_id,
        client_secret=row.client_secret,
        scope=row.scope,
        token_url=row.token_url,
        asid=row.asid,
        access_token=row.access_token,
        token_expires_at=row.token_expires_at,
        status=row.status,
        last_error=row.last_error,
        last_refreshed_at=row.last_refreshed_at,
        refresh_count=row.refresh_count,
    )


class SQLConnectionStore:
    """Connection store backed by SQLAlchemy; one short transaction per call."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        async with self._session_maker() as session:
            row = await session.get(NHSConnection, connection_id)
            return _from_row(row) if row else None

    async def save(self, record: ConnectionRecord) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                await session.merge(
                    NHSConnection(
                        id=record.connection_id,
                        organization_code=record.organization_code,
                        client_id=record.client_id,
                        client_secret=record.client_secret,
                        scope=record.scope,
                        token_url=record.token_url,
                        asid=record.asid,
                        access_token=record.access_token,
                        token_expires_at=record.token_expires_at,
                        status=record.status,
                        last_error=record.last_error,
                        last_refreshed_at=record.last_refreshed_at,
                        refresh_count=record.refresh_count,
                    )
                )

    async def list_all(self) -> list[ConnectionRecord]:
        async with self._session_maker() as session:
            result = await session.execute(select(NHSConnection).order_by(NHSConnection.id))
            return [_from_row(row) for row in result.scalars().all()]


class InMemoryConnectionStore:
    """In-memory connection store for tests and local demos."""

    def __init__(self):
        self._records: dict[str, ConnectionRecord] = {}
        self.saves = 0

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        record = self._records.get(connection_id)
        return record.copy() if record else None

    async def save(self, record: ConnectionRecord) -> None:
        self._records[record.connection_id] = record.copy()
        self.saves += 1

    async def list_all(self) -> list[ConnectionRecord]:
        return [record.copy() for _, record in sorted(self._records.items())]

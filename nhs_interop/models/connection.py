"""Organization-scoped connection to the national health-data exchange."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from nhs_interop.models.base import Base, TimestampMixin


class ConnectionStatus(StrEnum):
    active = "active"
    refreshing = "refreshing"
    degraded = "degraded"
    revoked = "revoked"


class NHSConnection(Base, TimestampMixin):
    """Credential set and cached bearer token for one connected organization."""

    __tablename__ = "nhs_connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="ODS code of the connected organization",
    )
    client_id: Mapped[str] = mapped_column(String(200), nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=False)
    token_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scope: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="patient/*.read patient/*.write",
    )
    asid: Mapped[str | None] = mapped_column(String(32), nullable=True)

    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ConnectionStatus.active.value,
        comment="active|refreshing|degraded|revoked",
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    refresh_count: Mapped[int] = mapped_column(default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<NHSConnection(id={self.id}, status={self.status})>"

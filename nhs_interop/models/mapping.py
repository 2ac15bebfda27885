"""Link between a local patient and their national identifier."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from nhs_interop.models.base import Base, TimestampMixin


class SyncStatus(StrEnum):
    unsynced = "unsynced"
    synced = "synced"
    conflict = "conflict"


class PatientRecordMapping(Base, TimestampMixin):
    """Reconciliation bookkeeping for one patient; deactivated, never deleted."""

    __tablename__ = "patient_record_mappings"

    patient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    nhs_number: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        unique=True,
        index=True,
    )
    connection_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(
        default=0,
        nullable=False,
        comment="Monotonic non-decreasing reconciliation version",
    )
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    remote_version_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=SyncStatus.unsynced.value,
        comment="unsynced|synced|conflict",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "ix_patient_record_mappings_active_synced",
            "is_active",
            "last_synced_at",
        ),
    )

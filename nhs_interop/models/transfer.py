"""Outbound medication-transfer requests keyed by idempotency key."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from nhs_interop.models.base import Base, TimestampMixin


class TransferStatus(StrEnum):
    pending = "pending"
    sent = "sent"
    acked = "acked"
    failed = "failed"
    failed_terminal = "failed_terminal"


class MedicationTransferRequest(Base, TimestampMixin):
    """One logical medication transfer; delivered at most once per key."""

    __tablename__ = "medication_transfer_requests"

    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    medication_list_version: Mapped[int] = mapped_column(nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransferStatus.pending.value,
        comment="pending|sent|acked|failed|failed_terminal",
    )
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    ack_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "ix_medication_transfer_requests_status_next",
            "status",
            "next_attempt_at",
        ),
    )

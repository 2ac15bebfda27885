"""Periodic regulatory submission batches and their items."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nhs_interop.models.base import Base, TimestampMixin


class ComplianceItemStatus(StrEnum):
    valid = "valid"
    invalid = "invalid"
    submitted = "submitted"
    rejected = "rejected"


class ComplianceSubmissionBatch(Base, TimestampMixin):
    """All items for one reporting period."""

    __tablename__ = "compliance_batches"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    period_id: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    items: Mapped[list["ComplianceSubmissionItem"]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="ComplianceSubmissionItem.position",
    )


class ComplianceSubmissionItem(Base, TimestampMixin):
    """One structured compliance item with its own submission state."""

    __tablename__ = "compliance_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ComplianceItemStatus.valid.value,
        comment="valid|invalid|submitted|rejected",
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    batch: Mapped[ComplianceSubmissionBatch] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("batch_id", "item_id", name="uq_compliance_items_batch_item"),
        Index("ix_compliance_items_batch_status", "batch_id", "status"),
    )

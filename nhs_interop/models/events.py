"""Failure and conflict events consumed by the notification surface."""

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from nhs_interop.models.base import Base, TimestampMixin


class IntegrationEvent(Base, TimestampMixin):
    """Event emitted by the core for operators and the audit viewer."""

    __tablename__ = "integration_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(
        String(48),
        nullable=False,
        comment="auth_degraded|sync_conflict|transfer_rejected|transfer_auth_failed|"
        "transfer_failed_terminal|transfers_cancelled|compliance_items_invalid|"
        "compliance_items_rejected|compliance_batch_rejected",
    )
    severity: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="warning",
        comment="info|warning|critical",
    )
    connection_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_integration_events_type_created", "event_type", "created_at"),
    )

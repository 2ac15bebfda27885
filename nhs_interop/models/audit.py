"""Append-only, hash-chained audit trail of outbound calls."""

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from nhs_interop.models.base import Base


class AuditEntry(Base):
    """One audited action; immutable once written."""

    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(120), nullable=False)
    action: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="e.g. auth.token_exchange, fhir.read, transfer.deliver",
    )
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    outcome: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="success, failure or an action-specific state",
    )
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_audit_entries_correlation_recorded", "correlation_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, action={self.action}, outcome={self.outcome})>"


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(_mapper, _connection, target: AuditEntry) -> None:
    raise RuntimeError(f"Audit entries are immutable (entry_hash={target.entry_hash})")


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(_mapper, _connection, target: AuditEntry) -> None:
    raise RuntimeError(f"Audit entries cannot be deleted (entry_hash={target.entry_hash})")

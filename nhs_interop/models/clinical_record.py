"""SQL adapter table for the canonical local clinical record."""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from nhs_interop.models.base import Base, TimestampMixin


class LocalClinicalRecord(Base, TimestampMixin):
    """Current local values per patient, keyed by canonical field name."""

    __tablename__ = "local_clinical_records"

    patient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    nhs_number: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

from nhs_interop.models.audit import AuditEntry
from nhs_interop.models.base import Base, TimestampMixin
from nhs_interop.models.clinical_record import LocalClinicalRecord
from nhs_interop.models.compliance import (
    ComplianceItemStatus,
    ComplianceSubmissionBatch,
    ComplianceSubmissionItem,
)
from nhs_interop.models.connection import ConnectionStatus, NHSConnection
from nhs_interop.models.events import IntegrationEvent
from nhs_interop.models.mapping import PatientRecordMapping, SyncStatus
from nhs_interop.models.transfer import MedicationTransferRequest, TransferStatus

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Core Models
    "AuditEntry",
    "ComplianceSubmissionBatch",
    "ComplianceSubmissionItem",
    "IntegrationEvent",
    "LocalClinicalRecord",
    "MedicationTransferRequest",
    "NHSConnection",
    "PatientRecordMapping",
    # Status enums
    "ComplianceItemStatus",
    "ConnectionStatus",
    "SyncStatus",
    "TransferStatus",
]

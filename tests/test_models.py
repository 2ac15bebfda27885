import pytest

from nhs_interop.models import (
    AuditEntry,
    Base,
    ComplianceItemStatus,
    ConnectionStatus,
    NHSConnection,
    SyncStatus,
    TransferStatus,
)


def test_metadata_declares_every_table():
    assert set(Base.metadata.tables) == {
        "audit_entries",
        "compliance_batches",
        "compliance_items",
        "integration_events",
        "local_clinical_records",
        "medication_transfer_requests",
        "nhs_connections",
        "patient_record_mappings",
    }


def test_transfer_key_is_primary_key():
    table = Base.metadata.tables["medication_transfer_requests"]
    assert [column.name for column in table.primary_key.columns] == ["idempotency_key"]


def test_audit_entry_hash_is_unique():
    assert AuditEntry.__table__.c.entry_hash.unique


def test_status_enums_compare_as_strings():
    assert ConnectionStatus.degraded == "degraded"
    assert TransferStatus.failed_terminal == "failed_terminal"
    assert SyncStatus.conflict == "conflict"
    assert ComplianceItemStatus.invalid == "invalid"


def test_connection_repr_omits_secret():
    connection = NHSConnection(
        id="conn-a",
        organization_code="RX1",
        client_id="client",
        client_secret="s3cret",
        status=ConnectionStatus.active.value,
    )

    assert "s3cret" not in repr(connection)


@pytest.mark.parametrize("status", list(TransferStatus))
def test_transfer_statuses_are_lowercase(status):
    assert status.value == status.value.lower()

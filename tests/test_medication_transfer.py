import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from conftest import VALID_NHS_NUMBER
from nhs_interop.exceptions import RejectedError
from nhs_interop.models import TransferStatus
from nhs_interop.repositories.transfers import InMemoryTransferStore, TransferRecord
from nhs_interop.schemas.transfers import MedicationTransferSubmit
from nhs_interop.services.container import build_in_memory_services
from nhs_interop.services.medication_transfer import (
    MedicationTransferGateway,
    build_medication_bundle,
    idempotency_key,
)


def _request(**overrides) -> MedicationTransferSubmit:
    values = {
        "patient_id": "p1",
        "medication_list_version": 3,
        "nhs_number": VALID_NHS_NUMBER,
        "medications": [
            {
                "name": "Paracetamol 500mg tablets",
                "snomed_code": "322236009",
                "dosage_instructions": "One tablet four times daily",
            }
        ],
    }
    values.update(overrides)
    return MedicationTransferSubmit(**values)


@pytest.fixture(autouse=True)
async def _default_connection(anyio_backend, register_connection):
    await register_connection("default")


def test_idempotency_key_is_stable_within_a_bucket():
    at = datetime(2026, 10, 18, 9, 5, tzinfo=UTC)

    first = idempotency_key("p1", 3, at, bucket_seconds=3600)

    assert first == idempotency_key("p1", 3, at + timedelta(minutes=50), bucket_seconds=3600)
    assert first != idempotency_key("p1", 3, at + timedelta(hours=1), bucket_seconds=3600)
    assert first != idempotency_key("p1", 4, at, bucket_seconds=3600)
    assert first != idempotency_key("p2", 3, at, bucket_seconds=3600)


def test_medication_bundle_is_a_transaction_of_requests():
    bundle = build_medication_bundle(_request(), identifier_system="https://fhir.nhs.uk/Id/nhs-number")

    assert bundle["type"] == "transaction"
    (entry,) = bundle["entry"]
    resource = entry["resource"]
    assert resource["resourceType"] == "MedicationRequest"
    assert resource["medicationCodeableConcept"]["coding"][0]["code"] == "322236009"
    assert resource["subject"]["identifier"]["value"] == VALID_NHS_NUMBER
    assert resource["dosageInstruction"] == [{"text": "One tablet four times daily"}]


def test_submit_schema_rejects_bad_identifier():
    with pytest.raises(ValueError):
        _request(nhs_number="9434765918")


@pytest.mark.anyio
async def test_successful_transfer_is_acked(services, nhs):
    record = await services.transfers.submit_transfer(_request())

    assert record.status == TransferStatus.acked
    assert record.ack_id == "ack-1"
    (request,) = nhs.requests_to("transfer.test")
    assert request.headers["Idempotency-Key"] == record.idempotency_key
    assert json.loads(request.content)["resourceType"] == "Bundle"


@pytest.mark.anyio
async def test_repeated_submission_delivers_once(services, nhs):
    first = await services.transfers.submit_transfer(_request())
    second = await services.transfers.submit_transfer(_request())

    assert second.idempotency_key == first.idempotency_key
    assert second.status == TransferStatus.acked
    assert len(nhs.requests_to("transfer.test")) == 1
    duplicates = [
        record
        for record in await services.audit.recent(100)
        if record.action == "transfer.submit" and record.outcome == "duplicate"
    ]
    assert len(duplicates) == 1


@pytest.mark.anyio
async def test_concurrent_identical_submissions_deliver_once(services, nhs):
    records = await asyncio.gather(*(services.transfers.submit_transfer(_request()) for _ in range(5)))

    assert {record.idempotency_key for record in records} == {records[0].idempotency_key}
    assert len(nhs.requests_to("transfer.test")) == 1


@pytest.mark.anyio
async def test_new_list_version_is_a_new_transfer(services, nhs):
    first = await services.transfers.submit_transfer(_request())
    second = await services.transfers.submit_transfer(_request(medication_list_version=4))

    assert first.idempotency_key != second.idempotency_key
    assert len(nhs.requests_to("transfer.test")) == 2


@pytest.mark.anyio
async def test_transient_failure_is_retried_with_same_key(services, nhs):
    nhs.transfer_responses = [httpx.Response(503)]

    record = await services.transfers.submit_transfer(_request())
    assert record.status == TransferStatus.pending
    assert record.retry_count == 1
    assert record.next_attempt_at is not None

    await services.retries.drain()

    final = await services.transfers.get_transfer(record.idempotency_key)
    assert final.status == TransferStatus.acked
    keys = {request.headers["Idempotency-Key"] for request in nhs.requests_to("transfer.test")}
    assert keys == {record.idempotency_key}
    assert len(nhs.requests_to("transfer.test")) == 2


@pytest.mark.anyio
async def test_rate_limit_delay_comes_from_retry_after(services, nhs, sleeper):
    nhs.transfer_responses = [httpx.Response(429, headers={"Retry-After": "5"})]

    await services.transfers.submit_transfer(_request())
    await services.retries.drain()

    assert 5.0 in sleeper.delays


@pytest.mark.anyio
async def test_exhausted_budget_is_failed_terminal(services, nhs, settings):
    nhs.transfer_responses = [httpx.Response(503) for _ in range(settings.transfer_max_attempts)]

    record = await services.transfers.submit_transfer(_request())
    await services.retries.drain()

    final = await services.transfers.get_transfer(record.idempotency_key)
    assert final.status == TransferStatus.failed_terminal
    assert final.retry_count == settings.transfer_max_attempts
    assert len(nhs.requests_to("transfer.test")) == settings.transfer_max_attempts
    (notice,) = services.notifier.of_type("transfer_failed_terminal")
    assert notice.severity == "critical"


@pytest.mark.anyio
async def test_rejection_fails_without_retry(services, nhs):
    nhs.transfer_responses = [
        httpx.Response(422, json={"resourceType": "OperationOutcome", "issue": [{"code": "invalid"}]})
    ]

    record = await services.transfers.submit_transfer(_request())

    assert record.status == TransferStatus.failed
    assert "422" in record.last_error
    assert services.retries.pending() == []
    assert len(services.notifier.of_type("transfer_rejected")) == 1


@pytest.mark.anyio
async def test_degraded_credentials_fail_the_transfer(services, nhs):
    nhs.token_responses = [httpx.Response(401, json={"error": "invalid_client"})]

    record = await services.transfers.submit_transfer(_request())

    assert record.status == TransferStatus.failed
    assert nhs.requests_to("transfer.test") == []
    assert len(services.notifier.of_type("transfer_auth_failed")) == 1


@pytest.mark.anyio
async def test_requeue_gives_failed_transfer_another_attempt(services, nhs):
    nhs.transfer_responses = [httpx.Response(400)]
    record = await services.transfers.submit_transfer(_request())
    assert record.status == TransferStatus.failed

    requeued = await services.transfers.requeue(record.idempotency_key, actor="operator")

    assert requeued.status == TransferStatus.acked
    assert requeued.retry_count == 0


@pytest.mark.anyio
async def test_requeue_refuses_acked_transfer(services):
    record = await services.transfers.submit_transfer(_request())

    with pytest.raises(RejectedError):
        await services.transfers.requeue(record.idempotency_key)


@pytest.mark.anyio
async def test_revocation_cancels_pending_retries(settings, nhs, clock):
    async def _never_wakes(_delay: float) -> None:
        await asyncio.Event().wait()

    services = build_in_memory_services(
        settings,
        http_client=httpx.AsyncClient(transport=nhs.transport()),
        sleep=_never_wakes,
        clock=clock,
    )
    from nhs_interop.repositories.connections import ConnectionRecord

    await services.auth.register(
        ConnectionRecord(
            connection_id="default",
            organization_code="RX1",
            client_id="client",
            client_secret="secret",
        )
    )
    nhs.transfer_responses = [httpx.Response(503)]
    record = await services.transfers.submit_transfer(_request())
    assert services.retries.pending("default") == [record.idempotency_key]

    await services.auth.revoke("default", actor="operator")

    assert services.retries.pending() == []
    final = await services.transfers.get_transfer(record.idempotency_key)
    assert final.status == TransferStatus.failed
    assert final.last_error == "Connection revoked"
    assert len(nhs.requests_to("transfer.test")) == 1
    assert len(services.notifier.of_type("transfers_cancelled")) == 1


@pytest.mark.anyio
async def test_resume_due_redelivers_sent_transfer_after_restart(services, nhs, settings, clock):
    store = InMemoryTransferStore()
    gateway = MedicationTransferGateway(
        store=store,
        client_for=services.client_for,
        audit=services.audit,
        settings=settings,
        clock=clock,
    )
    request = _request()
    key = idempotency_key("p1", 3, clock(), bucket_seconds=settings.transfer_time_bucket_seconds)
    await store.insert_or_get(
        TransferRecord(
            idempotency_key=key,
            connection_id="default",
            patient_id="p1",
            medication_list_version=3,
            payload=build_medication_bundle(request, identifier_system=settings.nhs_identifier_system),
            status=TransferStatus.sent.value,
        )
    )

    assert await gateway.resume_due() == 1

    final = await gateway.get_transfer(key)
    assert final.status == TransferStatus.acked
    assert nhs.requests_to("transfer.test")[0].headers["Idempotency-Key"] == key
    assert store.statuses(key) == ["sent", "sent", "acked"]


@pytest.mark.anyio
async def test_resume_during_first_attempt_respects_backoff(settings, nhs, clock):
    async def _never_wakes(_delay: float) -> None:
        await asyncio.Event().wait()

    services = build_in_memory_services(
        settings,
        http_client=httpx.AsyncClient(transport=nhs.transport()),
        sleep=_never_wakes,
        clock=clock,
    )
    from nhs_interop.repositories.connections import ConnectionRecord

    await services.auth.register(
        ConnectionRecord(
            connection_id="default",
            organization_code="RX1",
            client_id="client",
            client_secret="secret",
        )
    )
    nhs.transfer_gate = asyncio.Event()
    nhs.transfer_responses = [httpx.Response(503)]

    submit = asyncio.create_task(services.transfers.submit_transfer(_request()))
    while not nhs.requests_to("transfer.test"):
        await asyncio.sleep(0)
    resume = asyncio.create_task(services.transfers.resume_due())
    for _ in range(5):
        await asyncio.sleep(0)
    nhs.transfer_gate.set()

    record = await submit
    await resume

    final = await services.transfers.get_transfer(record.idempotency_key)
    assert final.status == TransferStatus.pending
    assert final.next_attempt_at > clock()
    assert len(nhs.requests_to("transfer.test")) == 1
    assert services.retries.pending("default") == [record.idempotency_key]
    await services.retries.shutdown()

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from conftest import OTHER_NHS_NUMBER, VALID_NHS_NUMBER, make_settings, medication_statement
from nhs_interop.config import DEFAULT_FIELD_OWNERSHIP
from nhs_interop.exceptions import IntegrationError, InvalidIdentifier, NotFound, RejectedError
from nhs_interop.models import SyncStatus
from nhs_interop.repositories.sync import InMemorySyncUnitOfWork
from nhs_interop.services.sync import SyncOrchestrator, SyncResult, merge_fields

LOCAL_FIELDS = {
    "family_name": "Smyth",
    "address": "Room 4, Rose House",
    "telecom_phone": "07700 900000",
}


@pytest.fixture()
def uow():
    unit_of_work = InMemorySyncUnitOfWork()
    unit_of_work.add_local_record("p1", VALID_NHS_NUMBER, LOCAL_FIELDS)
    return unit_of_work


def _orchestrator(services, uow, settings, clock, client_for=None):
    return SyncOrchestrator(
        unit_of_work=uow,
        client_for=client_for or services.client_for,
        audit=services.audit,
        settings=settings,
        notifier=services.notifier,
        clock=clock,
    )


@pytest.fixture()
def orchestrator(services, uow, settings, clock):
    return _orchestrator(services, uow, settings, clock)


async def _reconcile_failures(services):
    return [
        record
        for record in await services.audit.recent(100)
        if record.action == "sync.reconcile" and record.outcome == "failure"
    ]


@pytest.fixture(autouse=True)
async def _default_connection(anyio_backend, register_connection, nhs):
    await register_connection("default")
    nhs.add_patient(
        VALID_NHS_NUMBER,
        medications=[medication_statement("322236009", "Paracetamol 500mg tablets")],
    )


def test_merge_respects_field_ownership():
    merge = merge_fields(
        {"family_name": "Smyth", "address": "Room 4", "nickname": "Annie"},
        {"family_name": "Smith", "address": "1 High Street", "nickname": "Ann"},
        {"family_name": "external", "address": "local"},
    )

    assert merge.updates == {"family_name": "Smith"}
    assert merge.conflicts == {"nickname": {"local": "Annie", "remote": "Ann"}}
    assert merge.unowned == ["nickname"]


def test_merge_skips_equal_values():
    merge = merge_fields({"gender": "female"}, {"gender": "female"}, {"gender": "external"})
    assert merge.updates == {}
    assert merge.conflicts == {}


@pytest.mark.anyio
async def test_first_reconcile_writes_externally_owned_fields(orchestrator, uow):
    result = await orchestrator.reconcile("p1")

    assert result.changed
    assert result.version == 1
    assert result.sync_status == SyncStatus.synced
    local = uow.local_fields["p1"]
    assert local["family_name"] == "Smith"
    assert local["medications"][0]["code"] == "322236009"
    # Locally owned fields are never overwritten.
    assert local["address"] == "Room 4, Rose House"
    assert local["telecom_phone"] == "07700 900000"
    mapping = uow.mappings["p1"]
    assert mapping.version == 1
    assert mapping.content_hash == result.content_hash
    assert mapping.remote_version_id == "1"


@pytest.mark.anyio
async def test_unchanged_remote_is_a_no_op(orchestrator, uow):
    await orchestrator.reconcile("p1")
    writes = uow.writes
    fields = dict(uow.local_fields["p1"])

    result = await orchestrator.reconcile("p1")

    assert not result.changed
    assert result.version == 1
    assert uow.writes == writes
    assert uow.local_fields["p1"] == fields


@pytest.mark.anyio
async def test_remote_change_advances_version(orchestrator, uow, nhs):
    await orchestrator.reconcile("p1")
    nhs.add_patient(VALID_NHS_NUMBER, family="Smith-Jones", version="2")

    result = await orchestrator.reconcile("p1")

    assert result.changed
    assert result.version == 2
    assert "family_name" in result.updated_fields
    assert uow.local_fields["p1"]["family_name"] == "Smith-Jones"
    assert uow.local_fields["p1"]["medications"] == []


@pytest.mark.anyio
async def test_concurrent_reconciles_of_one_patient_serialize(orchestrator, uow):
    results = await asyncio.gather(orchestrator.reconcile("p1"), orchestrator.reconcile("p1"))

    assert sorted(result.changed for result in results) == [False, True]
    assert uow.mappings["p1"].version == 1


@pytest.mark.anyio
async def test_unowned_field_difference_is_flagged_not_written(services, uow, clock):
    ownership = {key: value for key, value in DEFAULT_FIELD_OWNERSHIP.items() if key != "gender"}
    settings = make_settings(field_ownership=ownership)
    uow.local_fields["p1"]["gender"] = "male"
    orchestrator = _orchestrator(services, uow, settings, clock)

    result = await orchestrator.reconcile("p1")

    assert result.sync_status == SyncStatus.conflict
    assert result.conflicting_fields == ["gender"]
    assert uow.local_fields["p1"]["gender"] == "male"
    assert uow.mappings["p1"].sync_status == SyncStatus.conflict
    (notice,) = services.notifier.of_type("sync_conflict")
    assert notice.details == {"fields": ["gender"]}


@pytest.mark.anyio
async def test_version_race_aborts_without_writing(services, uow, settings, clock):
    class _RacingClient:
        def __init__(self, inner):
            self._inner = inner

        async def fetch_patient_record(self, identifier):
            bundle = await self._inner.fetch_patient_record(identifier)
            uow.mappings["p1"].version += 1
            return bundle

    orchestrator = _orchestrator(
        services,
        uow,
        settings,
        clock,
        client_for=lambda connection_id: _RacingClient(services.client_for(connection_id)),
    )

    with pytest.raises(IntegrationError, match="version moved"):
        await orchestrator.reconcile("p1")

    assert uow.local_fields["p1"] == LOCAL_FIELDS
    (failure,) = await _reconcile_failures(services)
    assert json.loads(failure.detail)["details"] == {"expected_version": 0}


@pytest.mark.anyio
async def test_fetch_failure_writes_nothing_and_is_audited(orchestrator, uow, nhs, services):
    nhs.fhir_responses = [httpx.Response(403)]

    with pytest.raises(RejectedError):
        await orchestrator.reconcile("p1")

    assert uow.local_fields["p1"] == LOCAL_FIELDS
    assert uow.mappings["p1"].version == 0
    failures = [
        record
        for record in await services.audit.recent(100)
        if record.action == "sync.reconcile" and record.outcome == "failure"
    ]
    assert len(failures) == 1


@pytest.mark.anyio
async def test_missing_local_identifier_is_not_found(orchestrator):
    with pytest.raises(NotFound):
        await orchestrator.reconcile("unknown")


@pytest.mark.anyio
async def test_invalid_local_identifier_is_rejected_before_fetch(orchestrator, uow, nhs, services):
    uow.add_local_record("p2", "9434765918", {})

    with pytest.raises(InvalidIdentifier):
        await orchestrator.reconcile("p2")
    assert nhs.requests_to("fhir.test") == []
    (failure,) = await _reconcile_failures(services)
    assert failure.target == "patient:p2"


@pytest.mark.anyio
async def test_deactivated_mapping_is_never_reconciled(orchestrator, nhs):
    await orchestrator.reconcile("p1")
    assert await orchestrator.deactivate("p1", actor="operator")
    before = len(nhs.requests_to("fhir.test"))

    with pytest.raises(RejectedError, match="deactivated"):
        await orchestrator.reconcile("p1")
    assert len(nhs.requests_to("fhir.test")) == before


@pytest.mark.anyio
async def test_reconcile_many_reports_per_patient_outcomes(orchestrator, uow, nhs):
    uow.add_local_record("p2", OTHER_NHS_NUMBER, {})
    nhs.add_patient(OTHER_NHS_NUMBER, patient_id="pat-2", family="Jones")

    outcomes = await orchestrator.reconcile_many(["p1", "p2", "missing"], concurrency=2)

    assert isinstance(outcomes["p1"], SyncResult)
    assert isinstance(outcomes["p2"], SyncResult)
    assert isinstance(outcomes["missing"], NotFound)
    assert uow.local_fields["p2"]["family_name"] == "Jones"


@pytest.mark.anyio
async def test_due_patient_ids_uses_last_sync_time(orchestrator, clock):
    await orchestrator.reconcile("p1")

    assert await orchestrator.due_patient_ids(clock.now - timedelta(hours=1), 10) == []
    assert await orchestrator.due_patient_ids(clock.now + timedelta(hours=1), 10) == ["p1"]

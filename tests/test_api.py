import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import (
    VALID_NHS_NUMBER,
    FixedClock,
    RecordingSleep,
    make_settings,
    medication_request,
)
from nhs_interop.api import deps
from nhs_interop.exceptions import (
    InvalidIdentifier,
    NotFound,
    RateLimited,
    SubmissionRejected,
    TerminalAuthError,
    TransientNetworkError,
)
from nhs_interop.main import create_app, status_for
from nhs_interop.repositories.audit import InMemoryAuditLog
from nhs_interop.repositories.compliance import InMemoryComplianceStore
from nhs_interop.repositories.connections import InMemoryConnectionStore
from nhs_interop.repositories.sync import InMemorySyncUnitOfWork
from nhs_interop.repositories.transfers import InMemoryTransferStore
from nhs_interop.services.container import build_services
from nhs_interop.services.notifications import InMemoryNotificationSink

API = "/api/v1"


@pytest.fixture()
def sync_uow():
    uow = InMemorySyncUnitOfWork()
    uow.add_local_record("p1", VALID_NHS_NUMBER, {"address": "Room 4"})
    return uow


@pytest.fixture()
def api_client(nhs, sync_uow):
    services = build_services(
        make_settings(),
        audit_log=InMemoryAuditLog(),
        connections=InMemoryConnectionStore(),
        sync_uow=sync_uow,
        transfers=InMemoryTransferStore(),
        compliance=InMemoryComplianceStore(),
        notifier=InMemoryNotificationSink(),
        http_client=httpx.AsyncClient(transport=nhs.transport()),
        sleep=RecordingSleep(),
        clock=FixedClock(),
    )
    with TestClient(create_app(services), raise_server_exceptions=False) as client:
        yield client


@pytest.fixture()
def connected(api_client):
    response = api_client.post(
        f"{API}/connections/",
        json={
            "connection_id": "default",
            "organization_code": "RX1",
            "client_id": "client",
            "client_secret": "secret",
        },
    )
    assert response.status_code == 201
    return api_client


def _transfer_body(**overrides):
    body = {
        "patient_id": "p1",
        "medication_list_version": 1,
        "nhs_number": VALID_NHS_NUMBER,
        "medications": [{"name": "Paracetamol 500mg tablets", "snomed_code": "322236009"}],
    }
    body.update(overrides)
    return body


def test_status_mapping():
    assert status_for(InvalidIdentifier("bad")) == 400
    assert status_for(TerminalAuthError("no")) == 409
    assert status_for(NotFound("gone")) == 404
    assert status_for(SubmissionRejected("no")) == 422
    assert status_for(RateLimited("slow")) == 429
    assert status_for(TransientNetworkError("down")) == 502


def test_health_endpoint(api_client):
    response = api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "nhs-interop-core",
        "scheduler_running": False,
    }


def test_security_and_correlation_headers(api_client):
    response = api_client.get("/health", headers={"X-Correlation-ID": "corr-1"})

    assert response.headers["X-Correlation-ID"] == "corr-1"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_api_key_is_enforced_when_configured(api_client, monkeypatch):
    monkeypatch.setattr(deps.settings, "api_key", "operator-key")

    denied = api_client.get(f"{API}/audit/")
    allowed = api_client.get(f"{API}/audit/", headers={"X-API-Key": "operator-key"})

    assert denied.status_code == 401
    assert denied.json()["error"]["type"] == "http_error"
    assert allowed.status_code == 200


def test_connection_response_hides_secrets(connected):
    response = connected.post(f"{API}/connections/default/token")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "active"
    assert body["refresh_count"] == 1
    assert "client_secret" not in body
    assert "access_token" not in body


def test_unknown_connection_uses_error_envelope(api_client):
    response = api_client.post(f"{API}/connections/missing/token")

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["type"] == "terminal_auth_error"
    assert error["context"]["connection_id"] == "missing"
    assert error["correlation_id"]


def test_reconcile_patient_and_read_mapping(connected, nhs, sync_uow):
    nhs.add_patient(VALID_NHS_NUMBER)

    response = connected.post(f"{API}/patients/p1/reconcile")

    assert response.status_code == 200
    assert response.json()["version"] == 1
    mapping = connected.get(f"{API}/patients/p1/mapping").json()
    assert mapping["sync_status"] == "synced"
    assert sync_uow.local_fields["p1"]["family_name"] == "Smith"
    assert sync_uow.local_fields["p1"]["address"] == "Room 4"


def test_rate_limited_reconcile_sets_retry_after(connected, nhs):
    nhs.fhir_responses = [httpx.Response(429, headers={"Retry-After": "30"}) for _ in range(4)]

    response = connected.post(f"{API}/patients/p1/reconcile")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "30"
    assert response.json()["error"]["type"] == "rate_limited"


def test_reconcile_many_reports_failures(connected, nhs):
    nhs.add_patient(VALID_NHS_NUMBER)

    response = connected.post(f"{API}/patients/reconcile", json={"patient_ids": ["p1", "nobody"]})

    body = response.json()
    assert [result["patient_id"] for result in body["results"]] == ["p1"]
    assert body["failures"][0]["patient_id"] == "nobody"
    assert body["failures"][0]["error"]["error"] == "NotFound"


def test_inbound_medications_for_patient(connected, nhs):
    nhs.medication_requests[VALID_NHS_NUMBER] = [
        medication_request("322236009", "Paracetamol 500mg tablets"),
    ]

    response = connected.get(f"{API}/patients/inbound-medications/{VALID_NHS_NUMBER}")

    assert response.status_code == 200
    (row,) = response.json()
    assert row["code"] == "322236009"
    assert row["status"] == "active"
    assert row["dosage"] == "Two tablets at night"


def test_inbound_medications_rejects_bad_identifier(connected):
    response = connected.get(f"{API}/patients/inbound-medications/9434765918")

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_identifier"


def test_care_record_push_rejects_bad_identifier(connected):
    response = connected.post(
        f"{API}/patients/care-record",
        json={"nhs_number": "9434765918", "sections": [{"title": "Notes", "text": "Well."}]},
    )

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_identifier"


def test_transfer_submit_and_fetch(connected):
    response = connected.post(f"{API}/transfers/", json=_transfer_body())

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "acked"

    again = connected.post(f"{API}/transfers/", json=_transfer_body())
    assert again.json()["idempotency_key"] == body["idempotency_key"]

    fetched = connected.get(f"{API}/transfers/{body['idempotency_key']}")
    assert fetched.status_code == 200
    assert fetched.json()["ack_id"] == "ack-1"


def test_transfer_validation_error_envelope(connected):
    response = connected.post(f"{API}/transfers/", json=_transfer_body(medications=[]))

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["type"] == "validation_error"
    assert error["details"]


def test_unknown_transfer_is_404(connected):
    response = connected.get(f"{API}/transfers/unknown")

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Transfer not found"


def test_compliance_cycle(connected, nhs):
    def _accept(request):
        bundle = json.loads(request.content)
        items = [{"itemId": e["resource"]["id"], "status": "accepted"} for e in bundle["entry"]]
        return httpx.Response(200, json={"items": items})

    nhs.compliance_handler = _accept
    assembled = connected.put(
        f"{API}/compliance/2026-10",
        json={
            "items": [
                {
                    "item_id": "item-1",
                    "payload": {
                        "patient_id": "p1",
                        "record_date": "2026-10-02",
                        "sections": [{"title": "Notes", "text": "Settled night."}],
                    },
                },
                {"item_id": "item-2", "payload": {"patient_id": "p2"}},
            ]
        },
    )
    assert assembled.status_code == 200

    run = connected.post(f"{API}/compliance/2026-10/run").json()
    assert run["submitted"] == ["item-1"]
    assert run["invalid"] == ["item-2"]

    batch = connected.get(f"{API}/compliance/2026-10").json()
    assert [item["status"] for item in batch["items"]] == ["submitted", "invalid"]


def test_compliance_period_must_be_a_month(connected):
    response = connected.post(f"{API}/compliance/2026-13/run")

    assert response.status_code == 422


def test_audit_trail_is_verifiable(connected):
    connected.post(f"{API}/connections/default/token", headers={"X-Correlation-ID": "corr-9"})

    entries = connected.get(f"{API}/audit/", params={"correlation_id": "corr-9"}).json()
    assert [entry["action"] for entry in entries] == ["auth.token_exchange"]

    verification = connected.get(f"{API}/audit/verify").json()
    assert verification["ok"] is True
    assert verification["checked"] >= 2


def test_revoke_connection(connected):
    response = connected.post(f"{API}/connections/default/revoke")

    assert response.status_code == 200
    assert response.json()["status"] == "revoked"
    refused = connected.post(f"{API}/connections/default/token")
    assert refused.status_code == 409

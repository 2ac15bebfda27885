"""FHIR R4 client for the national clinical-record exchange.

Reads follow ``link[relation=next]`` up to ``fhir_max_pages`` per search and
validate each resource into the variants in ``nhs_interop.schemas.fhir``.
Every request carries GP Connect ``Ssp-*`` headers plus ``X-Correlation-ID``
and is written to the audit log with its outcome.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import httpx

from nhs_interop.config import Settings
from nhs_interop.exceptions import (
    IntegrationError,
    MappingError,
    NotFound,
    RateLimited,
    RejectedError,
    TransientNetworkError,
)
from nhs_interop.logging import ensure_correlation_id
from nhs_interop.schemas.fhir import (
    AllergyIntolerance,
    CodeableConcept,
    Condition,
    FHIRResourceBundle,
    MedicationRequest,
    MedicationStatement,
    OperationOutcome,
    Patient,
    parse_resource,
    parse_search_bundle,
)
from nhs_interop.services import identifiers
from nhs_interop.services.audit import AuditRecorder
from nhs_interop.services.auth import AuthManager
from nhs_interop.services.retry import BackoffPolicy, Sleep, parse_retry_after, retry_async

logger = logging.getLogger(__name__)

FHIR_CONTENT_TYPE = "application/fhir+json"

INTERACTION_PATIENT_SEARCH = "urn:nhs:names:services:gpconnect:fhir:rest:search:patient-1"
INTERACTION_RESOURCE_SEARCH = "urn:nhs:names:services:gpconnect:fhir:rest:search:resource-1"
INTERACTION_CREATE_COMPOSITION = "urn:nhs:names:services:gpconnect:fhir:rest:create:composition-1"
INTERACTION_MEDICATION_REQUEST_SEARCH = (
    "urn:nhs:names:services:eredbag:fhir:rest:search:medicationrequest-1"
)

CLINICAL_RESOURCE_TYPES = ("MedicationStatement", "AllergyIntolerance", "Condition")

SNOMED_SYSTEM = "http://snomed.info/sct"


def content_hash(canonical: dict[str, Any]) -> str:
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _clean(value: str | None) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _status_code(concept: CodeableConcept | None) -> str | None:
    if concept is None:
        return None
    code, display = concept.primary()
    return code or display


def _pick_by_use(items: list, preferred: str):
    for item in items:
        if getattr(item, "use", None) == preferred:
            return item
    return items[0] if items else None


def _gp_practice_code(patient: Patient) -> str | None:
    for ref in patient.general_practitioner:
        if ref.identifier is not None and _clean(ref.identifier.value):
            return _clean(ref.identifier.value)
        reference = _clean(ref.reference)
        if reference and "/" in reference:
            return reference.split("/", 1)[1]
    return None


def canonicalize(
    patient: Patient,
    medications: list[MedicationStatement],
    allergies: list[AllergyIntolerance],
    conditions: list[Condition],
    *,
    nhs_number: str,
) -> dict[str, Any]:
    """Map validated resources onto the flat field set the local record uses."""
    name = _pick_by_use(patient.name, "official")
    address = _pick_by_use(patient.address, "home")
    phone = next((point for point in patient.telecom if point.system == "phone"), None)

    address_text = None
    if address is not None:
        parts = [*address.line, address.city, address.postal_code]
        address_text = ", ".join(part.strip() for part in parts if _clean(part)) or None

    medication_rows = []
    for statement in medications:
        code, display = (
            statement.medication_codeable_concept.primary()
            if statement.medication_codeable_concept
            else (None, None)
        )
        medication_rows.append(
            {
                "code": code,
                "display": display,
                "status": statement.status,
                "dosage": _clean(statement.dosage[0].text) if statement.dosage else None,
            }
        )

    allergy_rows = []
    for allergy in allergies:
        code, display = allergy.code.primary() if allergy.code else (None, None)
        allergy_rows.append(
            {
                "code": code,
                "display": display,
                "clinical_status": _status_code(allergy.clinical_status),
                "criticality": allergy.criticality,
            }
        )

    condition_rows = []
    for condition in conditions:
        code, display = condition.code.primary() if condition.code else (None, None)
        condition_rows.append(
            {
                "code": code,
                "display": display,
                "clinical_status": _status_code(condition.clinical_status),
                "onset": condition.onset_date_time,
            }
        )

    def _sort_key(row: dict[str, Any]) -> tuple[str, str]:
        return (row.get("code") or "", row.get("display") or "")

    return {
        "nhs_number": nhs_number,
        "family_name": _clean(name.family) if name else None,
        "given_names": [given.strip() for given in name.given if _clean(given)] if name else [],
        "birth_date": patient.birth_date,
        "gender": patient.gender,
        "deceased": bool(patient.deceased_boolean) or patient.deceased_date_time is not None,
        "address": address_text,
        "telecom_phone": _clean(phone.value) if phone else None,
        "gp_practice_code": _gp_practice_code(patient),
        "medications": sorted(medication_rows, key=_sort_key),
        "allergies": sorted(allergy_rows, key=_sort_key),
        "conditions": sorted(condition_rows, key=_sort_key),
    }


def classify_response(
    response: httpx.Response,
    *,
    connection_id: str,
    resource_id: str | None,
) -> IntegrationError | None:
    """Map an HTTP answer onto the error taxonomy; ``None`` means success."""
    status_code = response.status_code
    if status_code < 400:
        return None
    snippet = response.text.strip().replace("\n", " ")[:240]
    common = {
        "connection_id": connection_id,
        "resource_id": resource_id,
        "status_code": status_code,
    }
    if status_code == 429:
        return RateLimited(
            "Remote side rate limited the request",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            **common,
        )
    if status_code >= 500:
        return TransientNetworkError(f"Remote side returned HTTP {status_code}", **common)
    if status_code == 404:
        return NotFound("Remote resource not found", **common)
    return RejectedError(
        f"Remote side rejected the request with HTTP {status_code}",
        details={"body": snippet} if snippet else None,
        **common,
    )


def _json_body(response: httpx.Response, *, connection_id: str) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise MappingError(
            "Remote response is not valid JSON",
            connection_id=connection_id,
            status_code=response.status_code,
        ) from exc
    if not isinstance(payload, dict):
        raise MappingError(
            "Remote response is not a JSON object",
            connection_id=connection_id,
            status_code=response.status_code,
        )
    return payload


class FHIRClient:
    """Protocol client bound to one connection."""

    def __init__(
        self,
        connection_id: str,
        *,
        auth: AuthManager,
        audit: AuditRecorder,
        http_client: httpx.AsyncClient,
        settings: Settings,
        base_url: str | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.connection_id = connection_id
        self._auth = auth
        self._audit = audit
        self._http = http_client
        self._settings = settings
        self._base_url = (base_url or settings.nhs_fhir_base_url).rstrip("/")
        self._sleep = sleep
        self._read_policy = BackoffPolicy.for_reads(settings)

    async def _headers(self, interaction_id: str) -> dict[str, str]:
        token = await self._auth.obtain_token(self.connection_id)
        connection = await self._auth.status(self.connection_id)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": f"{FHIR_CONTENT_TYPE}, application/json",
            "Content-Type": FHIR_CONTENT_TYPE,
            "Ssp-TraceID": str(uuid.uuid4()),
            "Ssp-From": connection.asid or self._settings.nhs_asid,
            "Ssp-To": self._settings.nhs_to_asid,
            "Ssp-InteractionID": interaction_id,
            "X-Correlation-ID": ensure_correlation_id(),
        }

    async def _send(
        self,
        method: str,
        url: str,
        *,
        action: str,
        target: str,
        interaction_id: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """One logical request: a 401 invalidates the token and is retried once."""
        reauthenticated = False
        while True:
            headers = await self._headers(interaction_id)
            if extra_headers:
                headers.update(extra_headers)
            try:
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self._settings.nhs_request_timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                error = TransientNetworkError(
                    f"{method} {url} timed out",
                    connection_id=self.connection_id,
                    resource_id=target,
                )
                await self._record(action, target, "failure", error.context())
                raise error from exc
            except httpx.TransportError as exc:
                error = TransientNetworkError(
                    f"{method} {url} failed: {exc}",
                    connection_id=self.connection_id,
                    resource_id=target,
                )
                await self._record(action, target, "failure", error.context())
                raise error from exc

            if response.status_code == 401 and not reauthenticated:
                reauthenticated = True
                await self._record(
                    action,
                    target,
                    "failure",
                    {"status_code": 401, "message": "Token rejected; refreshing once"},
                )
                logger.info(
                    "Token rejected for connection=%s; refreshing and retrying once",
                    self.connection_id,
                )
                await self._auth.invalidate(self.connection_id)
                continue

            error = classify_response(
                response,
                connection_id=self.connection_id,
                resource_id=target,
            )
            if error is not None:
                await self._record(action, target, "failure", error.context())
                raise error
            await self._record(
                action,
                target,
                "success",
                {"method": method, "status_code": response.status_code},
            )
            return response

    async def _record(self, action: str, target: str, outcome: str, detail: dict[str, Any]) -> None:
        await self._audit.append(
            action=action,
            target=target,
            outcome=outcome,
            detail={"connection_id": self.connection_id, **detail},
        )

    async def _get_json(
        self,
        url: str,
        *,
        target: str,
        interaction_id: str,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        async def _attempt() -> dict[str, Any]:
            response = await self._send(
                "GET",
                url,
                action="fhir.read",
                target=target,
                interaction_id=interaction_id,
                params=params,
            )
            return _json_body(response, connection_id=self.connection_id)

        return await retry_async(
            _attempt,
            policy=self._read_policy,
            sleep=self._sleep,
            description=f"GET {url}",
        )

    async def _same_origin_link(self, base_url: str, link: str, *, target: str) -> str:
        """Resolve a next link; links leaving the server's origin are refused."""
        base = httpx.URL(f"{base_url}/")
        resolved = base.join(link)
        if (resolved.scheme, resolved.host, resolved.port) != (base.scheme, base.host, base.port):
            error = MappingError(
                "Search next link points outside the server origin",
                connection_id=self.connection_id,
                resource_id=target,
                details={"host": resolved.host},
            )
            await self._record("fhir.read", target, "failure", error.context())
            raise error
        return str(resolved)

    async def _search(
        self,
        resource_type: str,
        params: dict[str, str],
        *,
        target: str,
        interaction_id: str,
        base_url: str | None = None,
    ) -> list[Any]:
        """Run one search and follow next links up to the configured page bound."""
        base_url = (base_url or self._base_url).rstrip("/")
        resources: list[Any] = []
        next_url: str | None = f"{base_url}/{resource_type}"
        request_params: dict[str, str] | None = {
            **params,
            "_count": str(self._settings.fhir_page_size),
        }
        pages = 0
        while next_url and pages < self._settings.fhir_max_pages:
            raw = await self._get_json(
                next_url,
                target=target,
                interaction_id=interaction_id,
                params=request_params,
            )
            bundle = parse_search_bundle(raw)
            for entry in bundle.entry:
                if entry.search is not None and entry.search.mode == "outcome":
                    logger.info("Skipping search outcome entry for %s on %s", resource_type, target)
                    continue
                if entry.resource is None:
                    continue
                resources.append(parse_resource(entry.resource))
            next_url = bundle.next_url()
            if next_url is not None:
                next_url = await self._same_origin_link(base_url, next_url, target=target)
            # Next links already carry the query string.
            request_params = None
            pages += 1
        if next_url:
            logger.warning(
                "%s search for %s truncated after %d pages",
                resource_type,
                target,
                pages,
            )
        return resources

    async def fetch_patient_record(self, identifier: str) -> FHIRResourceBundle:
        """Fetch the patient and their medication, allergy and condition resources."""
        nhs_number = identifiers.validate(identifier)
        target = f"patient:{nhs_number}"
        logger.info(
            "Fetching patient record for %s via connection=%s",
            identifiers.mask(nhs_number),
            self.connection_id,
        )

        found = await self._search(
            "Patient",
            {"identifier": f"{self._settings.nhs_identifier_system}|{nhs_number}"},
            target=target,
            interaction_id=INTERACTION_PATIENT_SEARCH,
        )
        patients = [resource for resource in found if isinstance(resource, Patient)]
        if not patients:
            raise NotFound(
                "No patient matches the identifier",
                connection_id=self.connection_id,
                resource_id=identifiers.mask(nhs_number),
            )
        patient = patients[0]
        if not patient.id:
            raise MappingError(
                "Patient resource has no id",
                connection_id=self.connection_id,
                resource_id=identifiers.mask(nhs_number),
            )

        related: dict[str, list[Any]] = {}
        for resource_type in CLINICAL_RESOURCE_TYPES:
            resources = await self._search(
                resource_type,
                {"patient": f"Patient/{patient.id}"},
                target=target,
                interaction_id=INTERACTION_RESOURCE_SEARCH,
            )
            related[resource_type] = [
                resource for resource in resources if not isinstance(resource, OperationOutcome)
            ]

        medications = related["MedicationStatement"]
        allergies = related["AllergyIntolerance"]
        conditions = related["Condition"]
        for resource_type, expected, items in (
            ("MedicationStatement", MedicationStatement, medications),
            ("AllergyIntolerance", AllergyIntolerance, allergies),
            ("Condition", Condition, conditions),
        ):
            stray = [item for item in items if not isinstance(item, expected)]
            if stray:
                raise MappingError(
                    f"{resource_type} search returned {type(stray[0]).__name__} resources",
                    connection_id=self.connection_id,
                    resource_id=identifiers.mask(nhs_number),
                )

        canonical = canonicalize(
            patient,
            medications,
            allergies,
            conditions,
            nhs_number=nhs_number,
        )
        return FHIRResourceBundle(
            resource_type="Patient",
            resource_id=patient.id,
            version_id=patient.meta.version_id if patient.meta else None,
            raw=[
                item.model_dump(by_alias=True, exclude_none=True)
                for item in [patient, *medications, *allergies, *conditions]
            ],
            canonical=canonical,
            content_hash=content_hash(canonical),
        )

    async def receive_medications(self, identifier: str) -> list[dict[str, Any]]:
        """Read active inbound MedicationRequests for a patient from the medication exchange."""
        nhs_number = identifiers.validate(identifier)
        target = f"patient:{nhs_number}"
        found = await self._search(
            "MedicationRequest",
            {
                "patient.identifier": f"{self._settings.nhs_identifier_system}|{nhs_number}",
                "status": "active",
            },
            target=target,
            interaction_id=INTERACTION_MEDICATION_REQUEST_SEARCH,
            base_url=self._settings.nhs_medication_exchange_base_url,
        )
        requests = [resource for resource in found if not isinstance(resource, OperationOutcome)]
        stray = [item for item in requests if not isinstance(item, MedicationRequest)]
        if stray:
            error = MappingError(
                f"MedicationRequest search returned {type(stray[0]).__name__} resources",
                connection_id=self.connection_id,
                resource_id=identifiers.mask(nhs_number),
            )
            await self._record("fhir.read", target, "failure", error.context())
            raise error

        rows = []
        for request in requests:
            code, display = (
                request.medication_codeable_concept.primary()
                if request.medication_codeable_concept
                else (None, None)
            )
            rows.append(
                {
                    "id": request.id,
                    "code": code,
                    "display": display,
                    "status": request.status,
                    "intent": request.intent,
                    "authored_on": request.authored_on,
                    "dosage": (
                        _clean(request.dosage_instruction[0].text)
                        if request.dosage_instruction
                        else None
                    ),
                }
            )
        logger.info(
            "Received %d inbound medications for %s via connection=%s",
            len(rows),
            identifiers.mask(nhs_number),
            self.connection_id,
        )
        return rows

    async def post_bundle(
        self,
        url: str,
        bundle: dict[str, Any],
        *,
        action: str,
        target: str,
        interaction_id: str,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Single POST attempt; callers decide whether and how to retry."""
        response = await self._send(
            "POST",
            url,
            action=action,
            target=target,
            interaction_id=interaction_id,
            json_body=bundle,
            extra_headers=extra_headers,
        )
        return _json_body(response, connection_id=self.connection_id)

    async def push_care_record(
        self,
        identifier: str,
        sections: list[dict[str, Any]],
        *,
        author_reference: str | None = None,
    ) -> dict[str, Any]:
        """Post a care-home care record Composition back to the GP system."""
        nhs_number = identifiers.validate(identifier)
        composition: dict[str, Any] = {
            "resourceType": "Composition",
            "status": "final",
            "type": {
                "coding": [
                    {
                        "system": SNOMED_SYSTEM,
                        "code": "371531000",
                        "display": "Report of clinical encounter",
                    }
                ]
            },
            "subject": {
                "identifier": {
                    "system": self._settings.nhs_identifier_system,
                    "value": nhs_number,
                }
            },
            "date": datetime.now(UTC).replace(microsecond=0).isoformat(),
            "title": "Care Home Care Record",
            "section": sections,
        }
        if author_reference:
            composition["author"] = [{"reference": author_reference}]
        bundle = {
            "resourceType": "Bundle",
            "type": "collection",
            "entry": [{"resource": composition}],
        }
        # Retries resend the same bundle, so the receiver can discard a repeat.
        idempotency_key = content_hash(bundle)

        async def _attempt() -> dict[str, Any]:
            return await self.post_bundle(
                f"{self._base_url}/",
                bundle,
                action="fhir.write",
                target=f"patient:{nhs_number}",
                interaction_id=INTERACTION_CREATE_COMPOSITION,
                extra_headers={"Idempotency-Key": idempotency_key},
            )

        return await retry_async(
            _attempt,
            policy=self._read_policy,
            sleep=self._sleep,
            description=f"care record update for {identifiers.mask(nhs_number)}",
        )

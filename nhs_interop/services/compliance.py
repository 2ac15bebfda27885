"""Periodic compliance submissions with per-item partial failure.

Items are validated independently. Valid items go out together in one
collection Bundle and each item's outcome is persisted on its own, so a run
interrupted half way resumes from the items that are still unresolved.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from nhs_interop.config import Settings
from nhs_interop.exceptions import MappingError, NotFound, RejectedError
from nhs_interop.models import ComplianceItemStatus
from nhs_interop.repositories.compliance import (
    ComplianceBatchRecord,
    ComplianceItemRecord,
    ComplianceStore,
)
from nhs_interop.schemas.compliance import (
    ComplianceItemIn,
    ComplianceItemPayload,
    ComplianceRunResponse,
    RemoteSubmissionResult,
)
from nhs_interop.services.audit import AuditRecorder
from nhs_interop.services.fhir_client import SNOMED_SYSTEM, FHIRClient
from nhs_interop.services.locks import KeyedLocks
from nhs_interop.services.notifications import (
    IntegrationNotice,
    LoggingNotificationSink,
    NotificationSink,
    emit_safely,
)
from nhs_interop.services.retry import BackoffPolicy, Sleep, retry_async

logger = logging.getLogger(__name__)

INTERACTION_DSCR_SUBMISSION = "urn:nhs:names:services:dscr:fhir:rest:create:bundle-1"

UNRESOLVED = (ComplianceItemStatus.valid, ComplianceItemStatus.invalid)

_RECORD_TYPE_CODES = {
    "care_plan": ("734163000", "Care plan"),
    "care_note": ("371531000", "Report of clinical encounter"),
    "assessment": ("386053000", "Evaluation procedure"),
    "incident": ("405607001", "Incident"),
}


def current_period(now: datetime | None = None) -> str:
    """Calendar-month reporting period identifier, e.g. ``2026-10``."""
    now = now or datetime.now(UTC)
    return f"{now.year:04d}-{now.month:02d}"


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(part) for part in error["loc"]) or "payload"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)[:1000]


def build_collection_bundle(
    items: list[tuple[ComplianceItemRecord, ComplianceItemPayload]],
    *,
    period_id: str,
    identifier_system: str,
) -> dict[str, Any]:
    entries = []
    for record, payload in items:
        code, display = _RECORD_TYPE_CODES[payload.record_type]
        subject: dict[str, Any] = {"reference": f"Patient/{payload.patient_id}"}
        if payload.nhs_number:
            subject["identifier"] = {"system": identifier_system, "value": payload.nhs_number}
        entries.append(
            {
                "resource": {
                    "resourceType": "Composition",
                    "id": record.item_id,
                    "status": "final",
                    "type": {"coding": [{"system": SNOMED_SYSTEM, "code": code, "display": display}]},
                    "subject": subject,
                    "date": payload.record_date.isoformat(),
                    "title": "Digital Social Care Record",
                    "section": [
                        {
                            "title": section.title,
                            "text": {"status": "generated", "div": section.text},
                            **(
                                {"code": {"coding": [{"system": SNOMED_SYSTEM, "code": section.code}]}}
                                if section.code
                                else {}
                            ),
                        }
                        for section in payload.sections
                    ],
                }
            }
        )
    return {
        "resourceType": "Bundle",
        "type": "collection",
        "meta": {"tag": [{"code": period_id}]},
        "entry": entries,
    }


def submission_hash(bundle: dict[str, Any]) -> str:
    payload = json.dumps(bundle, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ComplianceSubmitter:
    def __init__(
        self,
        *,
        store: ComplianceStore,
        client_for: Callable[[str], FHIRClient],
        audit: AuditRecorder,
        settings: Settings,
        notifier: NotificationSink | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._client_for = client_for
        self._audit = audit
        self._settings = settings
        self._notifier = notifier or LoggingNotificationSink()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))
        self._policy = BackoffPolicy.for_compliance(settings)
        self._locks = KeyedLocks()

    def current_period(self) -> str:
        return current_period(self._clock())

    async def get_batch(self, period_id: str) -> ComplianceBatchRecord | None:
        return await self._store.get_batch(period_id)

    async def assemble_batch(
        self,
        period_id: str,
        items: list[ComplianceItemIn],
        *,
        connection_id: str | None = None,
    ) -> ComplianceBatchRecord:
        """Record items for a period; known items keep their state unless the payload changed."""
        async with self._locks.hold(period_id):
            batch = await self._store.get_batch(period_id)
            if batch is None:
                batch = ComplianceBatchRecord(
                    period_id=period_id,
                    connection_id=connection_id or self._settings.nhs_default_connection_id,
                )
            elif connection_id:
                batch.connection_id = connection_id

            next_position = max((item.position for item in batch.items), default=-1) + 1
            for incoming in items:
                existing = batch.item(incoming.item_id)
                if existing is None:
                    batch.items.append(
                        ComplianceItemRecord(
                            item_id=incoming.item_id,
                            position=next_position,
                            payload=incoming.payload,
                        )
                    )
                    next_position += 1
                elif existing.payload != incoming.payload:
                    if existing.status == ComplianceItemStatus.submitted:
                        error = RejectedError(
                            "Submitted compliance items cannot be changed",
                            resource_id=incoming.item_id,
                        )
                        await self._audit.append(
                            action="compliance.assemble",
                            target=f"compliance:{period_id}",
                            outcome="failure",
                            detail=error.context(),
                        )
                        raise error
                    existing.payload = incoming.payload
                    existing.status = ComplianceItemStatus.valid.value
                    existing.reason = None
            await self._store.save_batch(batch)
        await self._audit.append(
            action="compliance.assemble",
            target=f"compliance:{period_id}",
            outcome="success",
            detail={"items": len(batch.items)},
        )
        return batch

    async def run(self, period_id: str) -> ComplianceRunResponse:
        """Validate and submit every unresolved item of the period."""
        async with self._locks.hold(period_id):
            batch = await self._store.get_batch(period_id)
            if batch is None:
                error = NotFound("Compliance period not assembled", resource_id=period_id)
                await self._audit.append(
                    action="compliance.run",
                    target=f"compliance:{period_id}",
                    outcome="failure",
                    detail=error.context(),
                )
                raise error

            result = ComplianceRunResponse(period_id=period_id)
            ready: list[tuple[ComplianceItemRecord, ComplianceItemPayload]] = []
            for item in batch.items:
                if item.status not in UNRESOLVED:
                    continue
                try:
                    payload = ComplianceItemPayload.model_validate(item.payload)
                except ValidationError as exc:
                    item.status = ComplianceItemStatus.invalid.value
                    item.reason = describe_validation_error(exc)
                    await self._store.save_item(period_id, item)
                    result.invalid.append(item.item_id)
                    continue
                if item.status != ComplianceItemStatus.valid or item.reason:
                    item.status = ComplianceItemStatus.valid.value
                    item.reason = None
                    await self._store.save_item(period_id, item)
                ready.append((item, payload))

            if ready:
                await self._submit(batch, ready, result)

            if result.invalid:
                await emit_safely(
                    self._notifier,
                    IntegrationNotice(
                        event_type="compliance_items_invalid",
                        subject=f"compliance:{period_id}",
                        connection_id=batch.connection_id,
                        details={"items": result.invalid},
                    ),
                )
            await self._audit.append(
                action="compliance.run",
                target=f"compliance:{period_id}",
                outcome="partial" if (result.invalid or result.rejected or result.pending) else "success",
                detail=result.model_dump(exclude={"period_id"}),
            )
            logger.info(
                "Compliance run %s: submitted=%d invalid=%d rejected=%d pending=%d",
                period_id,
                len(result.submitted),
                len(result.invalid),
                len(result.rejected),
                len(result.pending),
            )
            return result

    async def _submit(
        self,
        batch: ComplianceBatchRecord,
        ready: list[tuple[ComplianceItemRecord, ComplianceItemPayload]],
        result: ComplianceRunResponse,
    ) -> None:
        period_id = batch.period_id
        bundle = build_collection_bundle(
            ready,
            period_id=period_id,
            identifier_system=self._settings.nhs_identifier_system,
        )
        result.submission_hash = submission_hash(bundle)
        client = self._client_for(batch.connection_id)

        async def _post() -> dict[str, Any]:
            return await client.post_bundle(
                self._settings.nhs_compliance_url,
                bundle,
                action="compliance.submit",
                target=f"compliance:{period_id}",
                interaction_id=INTERACTION_DSCR_SUBMISSION,
                extra_headers={"X-Submission-Hash": result.submission_hash},
            )

        try:
            body = await retry_async(
                _post,
                policy=self._policy,
                sleep=self._sleep,
                description=f"compliance submission {period_id}",
            )
        except (RejectedError, MappingError) as exc:
            # The endpoint refused the whole bundle; each item carries the reason.
            for item, _ in ready:
                item.status = ComplianceItemStatus.rejected.value
                item.reason = exc.message
                await self._store.save_item(period_id, item)
                result.rejected.append(item.item_id)
            await emit_safely(
                self._notifier,
                IntegrationNotice(
                    event_type="compliance_batch_rejected",
                    subject=f"compliance:{period_id}",
                    severity="critical",
                    connection_id=batch.connection_id,
                    details=exc.context(),
                ),
            )
            return

        try:
            outcome = RemoteSubmissionResult.model_validate(body)
        except ValidationError as exc:
            error = MappingError(
                "Compliance response does not match the per-item result contract",
                connection_id=batch.connection_id,
                resource_id=period_id,
                details={"errors": describe_validation_error(exc)},
            )
            await self._audit.append(
                action="compliance.run",
                target=f"compliance:{period_id}",
                outcome="failure",
                detail={"submission_hash": result.submission_hash, **error.context()},
            )
            raise error from exc

        by_item = {item_result.item_id: item_result for item_result in outcome.items}
        now = self._clock()
        for item, _ in ready:
            item_result = by_item.get(item.item_id)
            if item_result is None:
                logger.warning(
                    "Compliance response for %s has no result for item %s; left for the next run",
                    period_id,
                    item.item_id,
                )
                result.pending.append(item.item_id)
                continue
            if item_result.status == "accepted":
                item.status = ComplianceItemStatus.submitted.value
                item.reason = None
                item.remote_reference = item_result.reference
                item.submitted_at = now
                result.submitted.append(item.item_id)
            else:
                item.status = ComplianceItemStatus.rejected.value
                item.reason = item_result.reason or "Rejected by remote validation"
                result.rejected.append(item.item_id)
            await self._store.save_item(period_id, item)

        if result.submitted:
            await self._store.mark_submitted(period_id, now)
        if result.rejected:
            await emit_safely(
                self._notifier,
                IntegrationNotice(
                    event_type="compliance_items_rejected",
                    subject=f"compliance:{period_id}",
                    connection_id=batch.connection_id,
                    details={"items": result.rejected},
                ),
            )

"""Outbound medication transfers with at-most-once delivery per idempotency key.

State machine::

    Pending -> Sent -> Acked
    Sent -> Pending          (transient failure, retry scheduled)
    Pending -> FailedTerminal (attempt budget exhausted)
    Sent -> Failed           (remote rejection, never retried)
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from nhs_interop.config import Settings
from nhs_interop.exceptions import (
    IntegrationError,
    MappingError,
    NotFound,
    RejectedError,
    SubmissionRejected,
    TerminalAuthError,
)
from nhs_interop.models import TransferStatus
from nhs_interop.repositories.transfers import TransferRecord, TransferStore
from nhs_interop.schemas.transfers import MedicationTransferSubmit
from nhs_interop.services.audit import AuditRecorder
from nhs_interop.services.fhir_client import SNOMED_SYSTEM, FHIRClient
from nhs_interop.services.locks import KeyedLocks
from nhs_interop.services.notifications import (
    IntegrationNotice,
    LoggingNotificationSink,
    NotificationSink,
    emit_safely,
)
from nhs_interop.services.retry import BackoffPolicy, RetryScheduler

logger = logging.getLogger(__name__)

INTERACTION_MEDICATION_TRANSFER = "urn:nhs:names:services:eredbag:fhir:rest:create:bundle-1"


def idempotency_key(
    patient_id: str,
    medication_list_version: int,
    at: datetime,
    *,
    bucket_seconds: int,
) -> str:
    bucket = int(at.timestamp()) // bucket_seconds
    material = f"{patient_id}:{medication_list_version}:{bucket}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def build_medication_bundle(
    request: MedicationTransferSubmit,
    *,
    identifier_system: str,
) -> dict[str, Any]:
    """FHIR transaction Bundle with one MedicationRequest per medication."""
    subject: dict[str, Any] = {"reference": f"Patient/{request.patient_id}"}
    if request.nhs_number:
        subject["identifier"] = {"system": identifier_system, "value": request.nhs_number}

    entries = []
    for medication in request.medications:
        dosage: dict[str, Any] = {}
        if medication.dosage_instructions:
            dosage["text"] = medication.dosage_instructions
        if medication.timing:
            dosage["timing"] = medication.timing
        resource: dict[str, Any] = {
            "resourceType": "MedicationRequest",
            "status": "active",
            "intent": "order",
            "medicationCodeableConcept": {
                "coding": [
                    {
                        "system": SNOMED_SYSTEM,
                        "code": medication.snomed_code,
                        "display": medication.name,
                    }
                ]
            },
            "subject": subject,
        }
        if dosage:
            resource["dosageInstruction"] = [dosage]
        entries.append({"resource": resource, "request": {"method": "POST", "url": "MedicationRequest"}})

    return {"resourceType": "Bundle", "type": "transaction", "entry": entries}


def _ack_id(body: dict[str, Any]) -> str | None:
    if isinstance(body.get("id"), str) and body["id"]:
        return body["id"]
    for entry in body.get("entry") or []:
        response = entry.get("response") if isinstance(entry, dict) else None
        location = response.get("location") if isinstance(response, dict) else None
        if isinstance(location, str) and location:
            return location
    return None


class MedicationTransferGateway:
    def __init__(
        self,
        *,
        store: TransferStore,
        client_for: Callable[[str], FHIRClient],
        audit: AuditRecorder,
        settings: Settings,
        scheduler: RetryScheduler | None = None,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._client_for = client_for
        self._audit = audit
        self._settings = settings
        self._scheduler = scheduler or RetryScheduler()
        self._notifier = notifier or LoggingNotificationSink()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._policy = BackoffPolicy.for_transfers(settings)
        self._locks = KeyedLocks()

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    async def submit_transfer(self, request: MedicationTransferSubmit) -> TransferRecord:
        """Create (or return the existing) transfer for this key and attempt delivery."""
        key = idempotency_key(
            request.patient_id,
            request.medication_list_version,
            self._clock(),
            bucket_seconds=self._settings.transfer_time_bucket_seconds,
        )
        connection_id = request.connection_id or self._settings.nhs_default_connection_id
        async with self._locks.hold(key):
            existing = await self._store.get(key)
            if existing is not None:
                logger.info("Transfer %s already %s; returning cached outcome", key[:12], existing.status)
                await self._audit.append(
                    action="transfer.submit",
                    target=f"transfer:{key}",
                    outcome="duplicate",
                    detail={"status": existing.status},
                )
                return existing
            record, created = await self._store.insert_or_get(
                TransferRecord(
                    idempotency_key=key,
                    connection_id=connection_id,
                    patient_id=request.patient_id,
                    medication_list_version=request.medication_list_version,
                    payload=build_medication_bundle(
                        request,
                        identifier_system=self._settings.nhs_identifier_system,
                    ),
                )
            )
            if not created:
                return record
            await self._audit.append(
                action="transfer.submit",
                target=f"transfer:{key}",
                outcome="accepted",
                detail={
                    "patient_id": request.patient_id,
                    "medication_list_version": request.medication_list_version,
                    "medications": len(request.medications),
                },
            )
        return await self._attempt(key)

    async def _attempt(self, key: str, *, retry_timer: bool = False) -> TransferRecord:
        async with self._locks.hold(key):
            record = await self._store.get(key)
            if record is None:
                raise NotFound("Transfer not found", resource_id=key)
            if record.status not in (TransferStatus.pending, TransferStatus.sent):
                return record
            if (
                not retry_timer
                and record.status == TransferStatus.pending
                and record.next_attempt_at is not None
                and record.next_attempt_at > self._clock()
            ):
                # Backing off; the scheduled retry owns the next attempt.
                return record

            record.status = TransferStatus.sent.value
            record.last_attempt_at = self._clock()
            record.next_attempt_at = None
            await self._store.save(record)

            try:
                body = await self._client_for(record.connection_id).post_bundle(
                    self._settings.nhs_transfer_url,
                    record.payload,
                    action="transfer.deliver",
                    target=f"transfer:{key}",
                    interaction_id=INTERACTION_MEDICATION_TRANSFER,
                    extra_headers={"Idempotency-Key": key},
                )
            except (RejectedError, NotFound, MappingError) as exc:
                rejection = SubmissionRejected(
                    exc.message,
                    connection_id=record.connection_id,
                    resource_id=key,
                    status_code=exc.status_code,
                    details=exc.details,
                )
                return await self._fail(record, rejection, event_type="transfer_rejected")
            except TerminalAuthError as exc:
                return await self._fail(record, exc, event_type="transfer_auth_failed")
            except IntegrationError as exc:
                if not exc.retryable:
                    raise
                return await self._retry_later(record, exc)

            record.status = TransferStatus.acked.value
            record.ack_id = _ack_id(body)
            record.last_error = None
            await self._store.save(record)
            logger.info(
                "Transfer %s acknowledged after %d retries (ack=%s)",
                key[:12],
                record.retry_count,
                record.ack_id,
            )
            return record

    async def _fail(
        self,
        record: TransferRecord,
        error: IntegrationError,
        *,
        event_type: str,
    ) -> TransferRecord:
        record.status = TransferStatus.failed.value
        record.last_error = error.message
        await self._store.save(record)
        logger.warning("Transfer %s failed: %s", record.idempotency_key[:12], error.message)
        await self._audit.append(
            action="transfer.fail",
            target=f"transfer:{record.idempotency_key}",
            outcome="failure",
            detail=error.context(),
        )
        await emit_safely(
            self._notifier,
            IntegrationNotice(
                event_type=event_type,
                subject=f"transfer:{record.idempotency_key}",
                connection_id=record.connection_id,
                details=error.context(),
            ),
        )
        return record

    async def _retry_later(self, record: TransferRecord, error: IntegrationError) -> TransferRecord:
        key = record.idempotency_key
        record.retry_count += 1
        record.last_error = error.message
        if record.retry_count >= self._policy.max_attempts:
            record.status = TransferStatus.failed_terminal.value
            record.next_attempt_at = None
            await self._store.save(record)
            logger.error(
                "Transfer %s failed terminally after %d attempts",
                key[:12],
                record.retry_count,
            )
            await self._audit.append(
                action="transfer.fail",
                target=f"transfer:{key}",
                outcome="failed_terminal",
                detail={"attempts": record.retry_count, **error.context()},
            )
            await emit_safely(
                self._notifier,
                IntegrationNotice(
                    event_type="transfer_failed_terminal",
                    subject=f"transfer:{key}",
                    severity="critical",
                    connection_id=record.connection_id,
                    details={"attempts": record.retry_count, "last_error": error.message},
                ),
            )
            return record

        delay = self._policy.delay_for(
            record.retry_count,
            retry_after=getattr(error, "retry_after", None),
        )
        record.status = TransferStatus.pending.value
        record.next_attempt_at = self._clock() + timedelta(seconds=delay)
        await self._store.save(record)
        self._scheduler.schedule(
            key,
            group=record.connection_id,
            delay=delay,
            action=lambda: self._attempt(key, retry_timer=True),
        )
        logger.info(
            "Transfer %s attempt %d failed (%s); retry in %.2fs",
            key[:12],
            record.retry_count,
            type(error).__name__,
            delay,
        )
        return record

    async def resume_due(self, *, limit: int | None = None) -> int:
        """Re-drive pending transfers whose retry is due and not already scheduled."""
        due = await self._store.list_due(self._clock(), limit or self._settings.scheduler_batch_size)
        scheduled = set(self._scheduler.pending())
        resumed = 0
        for record in due:
            if record.idempotency_key in scheduled:
                continue
            await self._attempt(record.idempotency_key)
            resumed += 1
        if resumed:
            logger.info("Resumed %d due medication transfers", resumed)
        return resumed

    async def requeue(self, key: str, *, actor: str | None = None) -> TransferRecord:
        """Operator action: give a Failed or FailedTerminal transfer a fresh budget."""
        async with self._locks.hold(key):
            record = await self._store.get(key)
            if record is None:
                raise NotFound("Transfer not found", resource_id=key)
            if record.status not in (TransferStatus.failed, TransferStatus.failed_terminal):
                raise RejectedError(
                    f"Transfer in status {record.status} cannot be requeued",
                    connection_id=record.connection_id,
                    resource_id=key,
                )
            previous = record.status
            record.status = TransferStatus.pending.value
            record.retry_count = 0
            record.next_attempt_at = None
            record.last_error = None
            await self._store.save(record)
        await self._audit.append(
            action="transfer.requeue",
            target=f"transfer:{key}",
            outcome="success",
            actor=actor,
            detail={"status_before": previous},
        )
        return await self._attempt(key)

    async def get_transfer(self, key: str) -> TransferRecord | None:
        return await self._store.get(key)

    async def on_connection_revoked(self, connection_id: str) -> None:
        """Cancel scheduled retries of a revoked connection and fail their transfers."""
        keys = self._scheduler.pending(connection_id)
        self._scheduler.cancel_group(connection_id)
        for key in keys:
            async with self._locks.hold(key):
                record = await self._store.get(key)
                if record is None or record.status not in (TransferStatus.pending, TransferStatus.sent):
                    continue
                record.status = TransferStatus.failed.value
                record.next_attempt_at = None
                record.last_error = "Connection revoked"
                await self._store.save(record)
            await self._audit.append(
                action="transfer.cancel",
                target=f"transfer:{key}",
                outcome="cancelled",
                detail={"connection_id": connection_id},
            )
        if keys:
            await emit_safely(
                self._notifier,
                IntegrationNotice(
                    event_type="transfers_cancelled",
                    subject=f"connection:{connection_id}",
                    connection_id=connection_id,
                    details={"count": len(keys)},
                ),
            )

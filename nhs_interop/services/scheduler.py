"""Background scheduler that keeps transfers, compliance and reconciliation moving."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from nhs_interop.config import Settings
from nhs_interop.exceptions import IntegrationError
from nhs_interop.services.compliance import ComplianceSubmitter
from nhs_interop.services.medication_transfer import MedicationTransferGateway
from nhs_interop.services.sync import SyncOrchestrator

logger = logging.getLogger("nhs_interop.scheduler")


@dataclass
class IntegrationRunStats:
    """Telemetry emitted for one scheduler cycle."""

    resumed_transfers: int = 0
    compliance_submitted: int = 0
    compliance_unresolved: int = 0
    reconciled_patients: int = 0
    failed_patients: int = 0


class IntegrationScheduler:
    """Polling loop; each cycle re-drives due work and never raises out of the loop."""

    def __init__(
        self,
        *,
        settings: Settings,
        transfers: MedicationTransferGateway,
        compliance: ComplianceSubmitter,
        sync: SyncOrchestrator,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._transfers = transfers
        self._compliance = compliance
        self._sync = sync
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self._settings.scheduler_enabled:
            logger.info("Integration scheduler disabled by configuration")
            return
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="integration-scheduler")
        logger.info(
            "Integration scheduler started (poll=%ss reconcile_due_hours=%s batch=%s)",
            self._settings.scheduler_poll_interval_seconds,
            self._settings.scheduler_reconcile_due_hours,
            self._settings.scheduler_batch_size,
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Integration scheduler stopped")

    async def run_once(self) -> IntegrationRunStats:
        """Run one cycle (used by the background loop and tests)."""
        stats = IntegrationRunStats()

        try:
            stats.resumed_transfers = await self._transfers.resume_due(
                limit=self._settings.scheduler_batch_size
            )
        except IntegrationError as exc:
            logger.error("Transfer resume failed: %s", exc.message)

        period_id = self._compliance.current_period()
        batch = await self._compliance.get_batch(period_id)
        if batch is not None and any(item.status in ("valid", "invalid") for item in batch.items):
            try:
                result = await self._compliance.run(period_id)
                stats.compliance_submitted = len(result.submitted)
                stats.compliance_unresolved = len(result.invalid) + len(result.pending)
            except IntegrationError as exc:
                logger.error("Compliance run for %s failed: %s", period_id, exc.message)

        due_before = self._clock() - timedelta(hours=self._settings.scheduler_reconcile_due_hours)
        patient_ids = await self._sync.due_patient_ids(due_before, self._settings.scheduler_batch_size)
        if patient_ids:
            outcomes = await self._sync.reconcile_many(patient_ids)
            for outcome in outcomes.values():
                if isinstance(outcome, IntegrationError):
                    stats.failed_patients += 1
                else:
                    stats.reconciled_patients += 1
        return stats

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started_at = loop.time()
            try:
                stats = await self.run_once()
                if (
                    stats.resumed_transfers
                    or stats.compliance_submitted
                    or stats.reconciled_patients
                    or stats.failed_patients
                ):
                    logger.info(
                        "Integration cycle: transfers=%s compliance_submitted=%s "
                        "compliance_unresolved=%s reconciled=%s failed=%s",
                        stats.resumed_transfers,
                        stats.compliance_submitted,
                        stats.compliance_unresolved,
                        stats.reconciled_patients,
                        stats.failed_patients,
                    )
            except Exception:
                logger.exception("Integration scheduler cycle failed")

            elapsed = loop.time() - started_at
            sleep_seconds = max(1, self._settings.scheduler_poll_interval_seconds - int(elapsed))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except TimeoutError:
                continue

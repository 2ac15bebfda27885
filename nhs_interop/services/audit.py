"""Tamper-evident audit recorder shared by every outbound component."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from nhs_interop.exceptions import AuditWriteFailure
from nhs_interop.logging import ensure_correlation_id
from nhs_interop.repositories.audit import AuditLog, AuditRecord, compute_entry_hash

logger = logging.getLogger(__name__)


@dataclass
class ChainVerification:
    ok: bool
    checked: int
    broken_at: int | None = None


class AuditRecorder:
    """Appends hash-chained entries; a failed write raises AuditWriteFailure."""

    def __init__(
        self,
        log: AuditLog,
        *,
        actor: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._log = log
        self._actor = actor
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()

    async def append(
        self,
        *,
        action: str,
        target: str,
        outcome: str,
        detail: dict[str, Any] | str | None = None,
        actor: str | None = None,
        correlation_id: str | None = None,
    ) -> AuditRecord:
        correlation_id = correlation_id or ensure_correlation_id()
        if isinstance(detail, dict):
            detail_text = json.dumps(detail, sort_keys=True, separators=(",", ":"), default=str)
        else:
            detail_text = detail
        async with self._lock:
            try:
                prev_hash = await self._log.last_hash()
                recorded_at = self._clock()
                resolved_actor = actor or self._actor
                record = AuditRecord(
                    correlation_id=correlation_id,
                    actor=resolved_actor,
                    action=action,
                    target=target,
                    outcome=outcome,
                    recorded_at=recorded_at,
                    detail=detail_text,
                    prev_hash=prev_hash,
                    entry_hash=compute_entry_hash(
                        prev_hash=prev_hash,
                        correlation_id=correlation_id,
                        actor=resolved_actor,
                        action=action,
                        target=target,
                        outcome=outcome,
                        recorded_at=recorded_at,
                        detail=detail_text,
                    ),
                )
                await self._log.append(record)
            except Exception as exc:
                logger.error(
                    "Audit write failed action=%s target=%s outcome=%s: %s",
                    action,
                    target,
                    outcome,
                    exc,
                )
                raise AuditWriteFailure(
                    f"Audit write failed for {action}",
                    resource_id=target,
                    details={"outcome": outcome},
                ) from exc
        return record

    async def entries_for(self, correlation_id: str) -> list[AuditRecord]:
        return await self._log.list_by_correlation(correlation_id)

    async def recent(self, limit: int = 100) -> list[AuditRecord]:
        return await self._log.list_recent(limit)

    async def verify_chain(self) -> ChainVerification:
        """Recompute every hash and link; report the first broken position."""
        records = await self._log.list_all()
        prev_hash: str | None = None
        for index, record in enumerate(records):
            expected = compute_entry_hash(
                prev_hash=record.prev_hash,
                correlation_id=record.correlation_id,
                actor=record.actor,
                action=record.action,
                target=record.target,
                outcome=record.outcome,
                recorded_at=record.recorded_at,
                detail=record.detail,
            )
            if record.prev_hash != prev_hash or record.entry_hash != expected:
                logger.warning("Audit chain broken at position %d", index)
                return ChainVerification(ok=False, checked=index + 1, broken_at=index)
            prev_hash = record.entry_hash
        return ChainVerification(ok=True, checked=len(records))

"""Notification sink adapters for failure and conflict events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nhs_interop.logging import correlation_id_var
from nhs_interop.models import IntegrationEvent

logger = logging.getLogger(__name__)


@dataclass
class IntegrationNotice:
    """Event emitted by the core; delivery is the sink's concern."""

    event_type: str
    subject: str
    severity: str = "warning"
    connection_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    async def emit(self, notice: IntegrationNotice) -> None:
        """Deliver one notice."""


class LoggingNotificationSink:
    """Sink that only writes notices to the service log."""

    async def emit(self, notice: IntegrationNotice) -> None:
        level = logging.ERROR if notice.severity == "critical" else logging.WARNING
        logger.log(
            level,
            "Integration event %s subject=%s connection=%s details=%s",
            notice.event_type,
            notice.subject,
            notice.connection_id,
            notice.details,
        )


class SQLNotificationSink:
    """Persist notices to ``integration_events`` for the audit viewer."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def emit(self, notice: IntegrationNotice) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                session.add(
                    IntegrationEvent(
                        event_type=notice.event_type,
                        severity=notice.severity,
                        connection_id=notice.connection_id,
                        subject=notice.subject,
                        correlation_id=correlation_id_var.get(),
                        details=json.dumps(notice.details, separators=(",", ":"), default=str)
                        if notice.details
                        else None,
                    )
                )
        await LoggingNotificationSink().emit(notice)


class InMemoryNotificationSink:
    """Collects notices for tests and local demos."""

    def __init__(self):
        self.notices: list[IntegrationNotice] = []

    async def emit(self, notice: IntegrationNotice) -> None:
        self.notices.append(notice)

    def of_type(self, event_type: str) -> list[IntegrationNotice]:
        return [notice for notice in self.notices if notice.event_type == event_type]


async def emit_safely(sink: NotificationSink, notice: IntegrationNotice) -> None:
    """Emit a notice; a sink failure is logged and never masks the original outcome."""
    try:
        await sink.emit(notice)
    except Exception:
        logger.exception(
            "Notification sink failed for event=%s subject=%s",
            notice.event_type,
            notice.subject,
        )

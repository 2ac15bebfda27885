"""Bearer credential management per connected organization.

Each connection has an explicit ``ConnectionState`` holding its persisted
record, a refresh lock and the in-flight refresh task. Concurrent callers that
find an expired token all await the same refresh task, so one connection never
issues two token exchanges at once.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from nhs_interop.config import Settings
from nhs_interop.exceptions import RetryableAuthError, TerminalAuthError
from nhs_interop.models import ConnectionStatus
from nhs_interop.repositories.connections import ConnectionRecord, ConnectionStore
from nhs_interop.services.audit import AuditRecorder
from nhs_interop.services.notifications import (
    IntegrationNotice,
    LoggingNotificationSink,
    NotificationSink,
    emit_safely,
)
from nhs_interop.services.retry import BackoffPolicy, Sleep, retry_async

logger = logging.getLogger(__name__)

RevocationListener = Callable[[str], Awaitable[None] | None]

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


@dataclass
class ConnectionState:
    """Runtime state for one connection; mutated only under ``lock``."""

    record: ConnectionRecord
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refresh_task: asyncio.Task[str] | None = None

    def token_is_fresh(self, now: datetime, margin: timedelta) -> bool:
        record = self.record
        if not record.access_token or record.token_expires_at is None:
            return False
        return record.token_expires_at - now > margin


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    scope: str | None


class AuthManager:
    """Acquires, caches and refreshes bearer tokens with single-flight refresh."""

    def __init__(
        self,
        *,
        store: ConnectionStore,
        audit: AuditRecorder,
        http_client: httpx.AsyncClient,
        settings: Settings,
        notifier: NotificationSink | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._http = http_client
        self._settings = settings
        self._notifier = notifier or LoggingNotificationSink()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))
        self._policy = BackoffPolicy.for_auth(settings)
        self._margin = timedelta(seconds=settings.auth_token_safety_margin_seconds)
        self._states: dict[str, ConnectionState] = {}
        self._states_lock = asyncio.Lock()
        self._revocation_listeners: list[RevocationListener] = []

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        self._revocation_listeners.append(listener)

    async def register(self, record: ConnectionRecord) -> ConnectionRecord:
        """Store a new credential set (or replace one) and reset its runtime state."""
        await self._store.save(record)
        async with self._states_lock:
            self._states[record.connection_id] = ConnectionState(record=record.copy())
        await self._audit.append(
            action="auth.register",
            target=f"connection:{record.connection_id}",
            outcome="success",
            detail={"organization_code": record.organization_code},
        )
        return record.copy()

    async def _state(self, connection_id: str) -> ConnectionState:
        state = self._states.get(connection_id)
        if state is not None:
            return state
        async with self._states_lock:
            state = self._states.get(connection_id)
            if state is None:
                record = await self._store.get(connection_id)
                if record is None:
                    error = TerminalAuthError("Unknown connection", connection_id=connection_id)
                    await self._audit.append(
                        action="auth.obtain_token",
                        target=f"connection:{connection_id}",
                        outcome="refused",
                        detail=error.context(),
                    )
                    raise error
                state = ConnectionState(record=record)
                self._states[connection_id] = state
        return state

    async def _ensure_refreshable(self, state: ConnectionState) -> None:
        record = state.record
        if record.status == ConnectionStatus.revoked:
            error = TerminalAuthError("Connection revoked", connection_id=record.connection_id)
        elif record.status == ConnectionStatus.degraded:
            error = TerminalAuthError(
                "Connection degraded; operator reconnect required",
                connection_id=record.connection_id,
                details={"last_error": record.last_error},
            )
        else:
            return
        await self._audit.append(
            action="auth.obtain_token",
            target=f"connection:{record.connection_id}",
            outcome="refused",
            detail=error.context(),
        )
        raise error

    async def obtain_token(self, connection_id: str) -> str:
        """Return a bearer token valid for longer than the safety margin."""
        state = await self._state(connection_id)
        await self._ensure_refreshable(state)
        if state.token_is_fresh(self._clock(), self._margin):
            return state.record.access_token

        async with state.lock:
            if state.token_is_fresh(self._clock(), self._margin):
                return state.record.access_token
            await self._ensure_refreshable(state)
            task = state.refresh_task
            if task is None or task.done():
                task = asyncio.create_task(
                    self._refresh(state),
                    name=f"token-refresh:{connection_id}",
                )
                state.refresh_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not task.cancelled() or (current is not None and current.cancelling()):
                raise
        # The shared refresh was cancelled by revoke(), not this caller.
        await self._ensure_refreshable(state)
        raise TerminalAuthError("Token refresh cancelled", connection_id=connection_id)

    async def _refresh(self, state: ConnectionState) -> str:
        record = state.record
        record.status = ConnectionStatus.refreshing.value
        await self._store.save(record)
        try:
            grant = await retry_async(
                lambda: self._exchange(record),
                policy=self._policy,
                sleep=self._sleep,
                description=f"token exchange for {record.connection_id}",
            )
        except TerminalAuthError as exc:
            record.status = ConnectionStatus.degraded.value
            record.access_token = None
            record.token_expires_at = None
            record.last_error = exc.message
            await self._store.save(record)
            logger.error(
                "Connection %s degraded after credential rejection: %s",
                record.connection_id,
                exc.message,
            )
            await emit_safely(
                self._notifier,
                IntegrationNotice(
                    event_type="auth_degraded",
                    subject=f"connection:{record.connection_id}",
                    severity="critical",
                    connection_id=record.connection_id,
                    details=exc.context(),
                ),
            )
            raise
        except Exception as exc:
            if record.status == ConnectionStatus.refreshing:
                record.status = ConnectionStatus.active.value
            record.last_error = str(exc)[:500]
            await self._store.save(record)
            raise

        now = self._clock()
        record.access_token = grant.access_token
        record.token_expires_at = now + timedelta(seconds=grant.expires_in)
        if grant.scope:
            record.scope = grant.scope
        record.status = ConnectionStatus.active.value
        record.last_error = None
        record.last_refreshed_at = now
        record.refresh_count += 1
        await self._store.save(record)
        logger.info(
            "Token refreshed for connection=%s (expires_in=%ss)",
            record.connection_id,
            grant.expires_in,
        )
        return grant.access_token

    async def _exchange(self, record: ConnectionRecord) -> TokenGrant:
        url = record.token_url or self._settings.nhs_token_url
        target = f"connection:{record.connection_id}"
        try:
            response = await self._http.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": record.client_id,
                    "client_secret": record.client_secret,
                    "scope": record.scope,
                },
                headers={"Accept": "application/json"},
                timeout=self._settings.nhs_request_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            error = RetryableAuthError(
                "Token exchange timed out",
                connection_id=record.connection_id,
            )
            await self._audit_failure(target, error)
            raise error from exc
        except httpx.TransportError as exc:
            error = RetryableAuthError(
                f"Token exchange transport error: {exc}",
                connection_id=record.connection_id,
            )
            await self._audit_failure(target, error)
            raise error from exc

        status_code = response.status_code
        if status_code >= 500 or status_code == 429:
            error = RetryableAuthError(
                f"Token endpoint returned HTTP {status_code}",
                connection_id=record.connection_id,
                status_code=status_code,
            )
            await self._audit_failure(target, error)
            raise error
        if status_code >= 400:
            error = TerminalAuthError(
                f"Credentials rejected with HTTP {status_code}",
                connection_id=record.connection_id,
                status_code=status_code,
                details={"body": response.text.strip().replace("\n", " ")[:240]},
            )
            await self._audit_failure(target, error)
            raise error

        grant = self._parse_grant(record, response)
        await self._audit.append(
            action="auth.token_exchange",
            target=target,
            outcome="success",
            detail={"status_code": status_code, "expires_in": grant.expires_in},
        )
        return grant

    def _parse_grant(self, record: ConnectionRecord, response: httpx.Response) -> TokenGrant:
        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise RetryableAuthError(
                "Token endpoint returned non-JSON body",
                connection_id=record.connection_id,
            ) from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise RetryableAuthError(
                "Token endpoint response missing access_token",
                connection_id=record.connection_id,
            )
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else DEFAULT_TOKEN_LIFETIME_SECONDS
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        scope = payload.get("scope")
        return TokenGrant(
            access_token=token,
            expires_in=expires_in,
            scope=scope if isinstance(scope, str) and scope else None,
        )

    async def _audit_failure(self, target: str, error: Exception) -> None:
        await self._audit.append(
            action="auth.token_exchange",
            target=target,
            outcome="failure",
            detail=error.context() if hasattr(error, "context") else str(error),
        )

    async def invalidate(self, connection_id: str) -> None:
        """Drop a cached token, e.g. after the remote side answered 401."""
        state = await self._state(connection_id)
        async with state.lock:
            state.record.access_token = None
            state.record.token_expires_at = None
            await self._store.save(state.record)

    async def reconnect(
        self,
        connection_id: str,
        *,
        client_secret: str | None = None,
        actor: str | None = None,
    ) -> ConnectionRecord:
        """Operator action: clear a Degraded/Revoked state so refresh resumes."""
        state = await self._state(connection_id)
        async with state.lock:
            record = state.record
            previous = record.status
            if client_secret:
                record.client_secret = client_secret
            record.status = ConnectionStatus.active.value
            record.access_token = None
            record.token_expires_at = None
            record.last_error = None
            await self._store.save(record)
        await self._audit.append(
            action="auth.reconnect",
            target=f"connection:{connection_id}",
            outcome="success",
            actor=actor,
            detail={"status_before": previous},
        )
        return record.copy()

    async def revoke(self, connection_id: str, *, actor: str | None = None) -> ConnectionRecord:
        """Revoke a connection and cancel everything pending against it."""
        state = await self._state(connection_id)
        async with state.lock:
            record = state.record
            previous = record.status
            record.status = ConnectionStatus.revoked.value
            record.access_token = None
            record.token_expires_at = None
            if state.refresh_task is not None and not state.refresh_task.done():
                state.refresh_task.cancel()
            await self._store.save(record)
        await self._audit.append(
            action="auth.revoke",
            target=f"connection:{connection_id}",
            outcome="success",
            actor=actor,
            detail={"status_before": previous},
        )
        for listener in self._revocation_listeners:
            result = listener(connection_id)
            if inspect.isawaitable(result):
                await result
        return record.copy()

    async def status(self, connection_id: str) -> ConnectionRecord:
        state = await self._state(connection_id)
        return state.record.copy()

"""Backoff policy and cancellable retry scheduling."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

from nhs_interop.config import Settings
from nhs_interop.exceptions import IntegrationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

RETRY_AFTER_CEILING_SECONDS = 900.0


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff (base * 2**(n-1)) capped at ``max_delay`` plus jitter."""

    base_delay: float
    max_delay: float
    max_attempts: int
    jitter_ratio: float = 0.0

    @classmethod
    def for_reads(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            max_attempts=settings.retry_max_attempts,
            jitter_ratio=settings.retry_jitter_ratio,
        )

    @classmethod
    def for_auth(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            max_attempts=settings.auth_max_attempts,
            jitter_ratio=settings.retry_jitter_ratio,
        )

    @classmethod
    def for_transfers(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.transfer_backoff_base_seconds,
            max_delay=settings.transfer_backoff_max_seconds,
            max_attempts=settings.transfer_max_attempts,
            jitter_ratio=settings.retry_jitter_ratio,
        )

    @classmethod
    def for_compliance(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            max_attempts=settings.compliance_max_attempts,
            jitter_ratio=settings.retry_jitter_ratio,
        )

    def delay_for(
        self,
        attempt: int,
        *,
        retry_after: float | None = None,
        rng: random.Random | None = None,
    ) -> float:
        """Delay before the retry that follows failed attempt number ``attempt``.

        A server-supplied hint wins over the computed backoff.
        """
        if retry_after is not None:
            return min(max(retry_after, 0.0), RETRY_AFTER_CEILING_SECONDS)
        delay = min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter_ratio > 0:
            delay += (rng or random).uniform(0, delay * self.jitter_ratio)
        return min(delay, self.max_delay)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return max(float(text), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max((when - reference).total_seconds(), 0.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` retrying retryable IntegrationErrors per ``policy``."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except IntegrationError as exc:
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt, retry_after=getattr(exc, "retry_after", None))
            logger.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                description,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            await sleep(delay)


class CancellationToken:
    """Cooperative cancellation flag shared between a scheduler and its task."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ScheduledRetry:
    """A retry waiting for its backoff timer."""

    key: str
    group: str
    delay: float
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        self.token.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class RetryScheduler:
    """Runs retries as explicit timer tasks, cancellable per key or per group."""

    def __init__(self, *, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep
        self._retries: dict[str, ScheduledRetry] = {}

    def schedule(
        self,
        key: str,
        *,
        group: str,
        delay: float,
        action: Callable[[], Awaitable[None]],
    ) -> ScheduledRetry:
        existing = self._retries.get(key)
        if existing is not None and existing.task is not asyncio.current_task():
            existing.cancel()
        retry = ScheduledRetry(key=key, group=group, delay=delay)
        retry.task = asyncio.create_task(self._run(retry, action), name=f"retry:{key}")
        self._retries[key] = retry
        return retry

    async def _run(self, retry: ScheduledRetry, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await self._sleep(retry.delay)
            if retry.token.cancelled:
                return
            await action()
        except asyncio.CancelledError:
            logger.info("Retry %s (group=%s) cancelled", retry.key, retry.group)
            raise
        except Exception:
            logger.exception("Scheduled retry %s (group=%s) failed", retry.key, retry.group)
        finally:
            if self._retries.get(retry.key) is retry:
                self._retries.pop(retry.key, None)

    def cancel(self, key: str) -> bool:
        retry = self._retries.pop(key, None)
        if retry is None:
            return False
        retry.cancel()
        return True

    def cancel_group(self, group: str) -> int:
        keys = [key for key, retry in self._retries.items() if retry.group == group]
        for key in keys:
            self.cancel(key)
        if keys:
            logger.info("Cancelled %d pending retries for group=%s", len(keys), group)
        return len(keys)

    def pending(self, group: str | None = None) -> list[str]:
        return sorted(
            key
            for key, retry in self._retries.items()
            if group is None or retry.group == group
        )

    async def drain(self) -> None:
        """Wait until no retries remain scheduled (retries may chain)."""
        while self._retries:
            tasks = [retry.task for retry in self._retries.values() if retry.task is not None]
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [retry.task for retry in self._retries.values() if retry.task is not None]
        for key in list(self._retries):
            self.cancel(key)
        await asyncio.gather(*tasks, return_exceptions=True)

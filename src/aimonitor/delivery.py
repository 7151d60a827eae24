"""Notification delivery with retry, backoff and escalation.

Each receiver has its own FIFO queue and worker, so a slow or failing
receiver only delays its own notifications. Driver I/O across all receivers
is bounded by one semaphore. Backoff sleeps happen outside the semaphore.

A notification that exhausts its attempts is dropped, never silently:
DeliveryFailed is always emitted, and the notification is sent once to the
escalation driver when one is configured.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass

from aimonitor.core.clock import Clock, SystemClock
from aimonitor.core.errors import DeliveryError
from aimonitor.core.models import Notification
from aimonitor.drivers.base import Driver
from aimonitor.observability import emit
from aimonitor.observability.events import (
    DeliveryFailed,
    DeliveryRetried,
    NotificationDelivered,
    NotificationsAbandoned,
)
from aimonitor.observability.logging import get_logger


def _logger(**context):
    return get_logger("aimonitor.delivery", **context)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: initial * multiplier^(n-1), capped at max_backoff."""

    max_attempts: int = 5
    initial_backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def backoff(self, failures: int) -> float:
        """Delay after the given number of consecutive failures (1-based)."""
        return min(self.initial_backoff * self.multiplier ** (failures - 1), self.max_backoff)


class DeliveryManager:
    """Per-receiver queues feeding a bounded pool of driver calls."""

    def __init__(
        self,
        drivers: Mapping[str, Driver],
        policy: RetryPolicy | None = None,
        max_concurrency: int = 8,
        clock: Clock | None = None,
        escalation: Driver | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._drivers = dict(drivers)
        self.policy = policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._escalation = escalation
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._queues: dict[str, asyncio.Queue[Notification]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self.stats = {"delivered": 0, "failed": 0, "retried": 0, "abandoned": 0}

    def update(
        self,
        drivers: Mapping[str, Driver],
        policy: RetryPolicy | None = None,
        escalation: Driver | None = None,
    ) -> dict[str, Driver]:
        """Swap drivers on reload. Returns the replaced drivers for closing."""
        replaced = {n: d for n, d in self._drivers.items() if drivers.get(n) is not d}
        self._drivers = dict(drivers)
        if policy is not None:
            self.policy = policy
        self._escalation = escalation
        return replaced

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def submit(self, notification: Notification) -> None:
        """Enqueue for the receiver's worker. Must be called inside a running loop."""
        queue = self._queues.get(notification.receiver)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[notification.receiver] = queue
        worker = self._workers.get(notification.receiver)
        if worker is None or worker.done():
            self._workers[notification.receiver] = asyncio.create_task(
                self._worker(notification.receiver, queue),
                name=f"deliver:{notification.receiver}",
            )
        queue.put_nowait(notification)

    async def _worker(self, receiver: str, queue: asyncio.Queue[Notification]) -> None:
        while True:
            notification = await queue.get()
            try:
                await self.deliver(notification)
            except Exception:
                _logger(receiver=receiver, group_key=notification.group_key).exception(
                    "delivery.driver_crashed"
                )
            finally:
                queue.task_done()

    def backlog(self) -> dict[str, int]:
        return {r: q.qsize() for r, q in self._queues.items() if q.qsize()}

    async def join(self) -> None:
        """Wait until every queued notification reached a terminal outcome."""
        await asyncio.gather(*(q.join() for q in self._queues.values()))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, notification: Notification) -> bool:
        """Send with retries. True on success, False once escalated."""
        driver = self._drivers.get(notification.receiver)
        if driver is None:
            await self._exhausted(notification, f"no driver for receiver {notification.receiver!r}")
            return False

        started = time.perf_counter()
        error: DeliveryError | None = None
        for attempt in range(1, self.policy.max_attempts + 1):
            notification.attempts = attempt
            try:
                async with self._semaphore:
                    await driver.send(notification)
            except DeliveryError as exc:
                error = exc
                if attempt == self.policy.max_attempts:
                    break
                delay = self.policy.backoff(attempt)
                self.stats["retried"] += 1
                emit(
                    DeliveryRetried(
                        group_key=notification.group_key,
                        receiver=notification.receiver,
                        attempt=attempt,
                        backoff_seconds=delay,
                        error=str(exc),
                    )
                )
                await self._clock.sleep(delay)
                continue

            self.stats["delivered"] += 1
            emit(
                NotificationDelivered(
                    group_key=notification.group_key,
                    receiver=notification.receiver,
                    status=notification.status,
                    attempts=attempt,
                    latency_ms=(time.perf_counter() - started) * 1000,
                )
            )
            return True

        await self._exhausted(notification, str(error))
        return False

    async def _exhausted(self, notification: Notification, error: str) -> None:
        self.stats["failed"] += 1
        log = _logger(receiver=notification.receiver, group_key=notification.group_key)
        escalated_to: str | None = None
        escalation = self._escalation
        if escalation is not None and escalation.name != notification.receiver:
            try:
                await escalation.send(notification)
                escalated_to = escalation.name
            except DeliveryError as exc:
                log.error(
                    "delivery.escalation_failed",
                    escalation=escalation.name,
                    error=str(exc),
                )
        if escalated_to is None:
            log.error(
                "delivery.exhausted",
                attempts=notification.attempts,
                error=error,
                alerts=[a.fingerprint for a in notification.alerts],
            )
        emit(
            DeliveryFailed(
                group_key=notification.group_key,
                receiver=notification.receiver,
                attempts=notification.attempts,
                error=error,
                escalated_to=escalated_to,
            )
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self, flush: bool = True) -> None:
        """Stop workers. flush=True waits for queued notifications first."""
        if flush:
            await self.join()
        else:
            for receiver, queue in self._queues.items():
                dropped = 0
                while not queue.empty():
                    queue.get_nowait()
                    queue.task_done()
                    dropped += 1
                if dropped:
                    self.stats["abandoned"] += dropped
                    emit(NotificationsAbandoned(receiver=receiver, count=dropped))
                    _logger().warning("delivery.abandoned", receiver=receiver, count=dropped)

        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

        for driver in {id(d): d for d in [*self._drivers.values(), self._escalation] if d}.values():
            await driver.aclose()

"""
Vigil — Reminder Delivery Queue.

An in-memory priority queue in front of the chat transport:

- lower priority number goes first, FIFO within a priority
- one drain pass at a time; a drain tick during a pass returns immediately
- a pause between sends keeps us under the transport's rate limits
- a failed send is retried on later passes, up to max_attempts in total,
  then dropped with a DeliveryFailure log event
- a short-lived de-dup set suppresses the same reminder enqueued twice
  within the TTL (e.g. two overlapping reminder ticks)

The queue is not durable: entries pending at shutdown are lost.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Hashable

from vigil.ports.notification_port import DeliveryFailure

if TYPE_CHECKING:
    from vigil.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


@dataclass
class ReminderQueueEntry:
    recipient: str
    message: str
    priority: int = 2
    retry_count: int = 0
    dedup_key: Hashable | None = None
    sequence: int = 0


@dataclass
class DrainReport:
    """What one drain pass did."""

    sent: int = 0
    retried: int = 0
    dropped: list[DeliveryFailure] = field(default_factory=list)


class ReminderQueue:
    """Priority queue of outgoing reminders with retry and de-dup."""

    def __init__(
        self,
        notifier: NotificationPort,
        *,
        max_attempts: int | None = None,
        send_interval: float | None = None,
        dedup_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        from vigil.config import settings

        self._notifier = notifier
        self._max_attempts = max_attempts or settings.QUEUE_MAX_ATTEMPTS
        self._send_interval = (
            settings.QUEUE_SEND_INTERVAL_SECONDS if send_interval is None else send_interval
        )
        self._dedup_ttl = settings.DEDUP_TTL_SECONDS if dedup_ttl is None else dedup_ttl
        self._clock = clock
        self._sleep = sleep

        self._heap: list[tuple[int, int, ReminderQueueEntry]] = []
        self._counter = itertools.count()
        self._dedup: dict[Hashable, float] = {}
        self._draining = False

    def __len__(self) -> int:
        return len(self._heap)

    def _push(self, entry: ReminderQueueEntry) -> None:
        heapq.heappush(self._heap, (entry.priority, entry.sequence, entry))

    def _expire_dedup(self) -> None:
        now = self._clock()
        for key in [k for k, expires in self._dedup.items() if expires <= now]:
            del self._dedup[key]

    def enqueue(
        self,
        recipient: str,
        message: str,
        priority: int = 2,
        dedup_key: Hashable | None = None,
    ) -> bool:
        """Add a reminder. Returns False if an identical key is still in the de-dup set."""
        if dedup_key is not None:
            self._expire_dedup()
            if dedup_key in self._dedup:
                logger.debug("Duplicate reminder suppressed: %s", dedup_key)
                return False
            self._dedup[dedup_key] = self._clock() + self._dedup_ttl

        self._push(ReminderQueueEntry(
            recipient=recipient,
            message=message,
            priority=priority,
            dedup_key=dedup_key,
            sequence=next(self._counter),
        ))
        return True

    async def _attempt(self, entry: ReminderQueueEntry) -> bool:
        try:
            return bool(await self._notifier.send_message(entry.recipient, entry.message))
        except Exception as exc:
            logger.warning("Send to %s raised: %s", entry.recipient, exc)
            return False

    async def drain(self) -> DrainReport:
        """Send everything currently queued, in priority order.

        Entries that fail are put back for the next pass until they have
        used up their attempts. Re-entrant calls return an empty report.
        """
        report = DrainReport()
        if self._draining:
            logger.debug("Drain already in progress; skipping")
            return report

        self._draining = True
        batch = [heapq.heappop(self._heap)[2] for _ in range(len(self._heap))]
        pending = list(batch)
        try:
            for i, entry in enumerate(batch):
                if i:
                    await self._sleep(self._send_interval)

                delivered = await self._attempt(entry)
                pending.pop(0)
                if delivered:
                    report.sent += 1
                    continue

                entry.retry_count += 1
                if entry.retry_count >= self._max_attempts:
                    failure = DeliveryFailure(entry.recipient, entry.retry_count, entry.priority)
                    logger.warning("DeliveryFailure: %s (priority %d)", failure, entry.priority)
                    report.dropped.append(failure)
                else:
                    report.retried += 1
                    self._push(entry)
        finally:
            # A cancelled pass puts back every entry whose send had not resolved
            for entry in pending:
                self._push(entry)
            self._draining = False

        if report.sent or report.retried or report.dropped:
            logger.info(
                "Queue drain: %d sent, %d to retry, %d dropped, %d pending",
                report.sent, report.retried, len(report.dropped), len(self._heap),
            )
        return report

    def status(self) -> dict:
        self._expire_dedup()
        return {
            "queued": len(self._heap),
            "dedup_keys": len(self._dedup),
            "draining": self._draining,
        }

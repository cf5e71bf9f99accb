"""
Notification Dispatcher — Polls the queue and hands due notifications to `send`.

Each poll cycle:
1. Reads pending notifications with scheduled_at <= now.
2. Claims each one individually once a worker slot is free (no lock is
   held across the cycle).
3. Sends with at most `worker_count` concurrent calls, each bounded by
   `send_timeout`.
4. Records the outcome: mark_sent on success, mark_failed on DispatchError,
   timeout, or any other exception.

Nothing is retried here. A failed record stays failed until an external
retry policy calls NotificationQueue.requeue().

Stopping lets the current batch finish its transitions, so no record is
left claimed but unresolved.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from app.core.config import (
    DISPATCH_POLL_INTERVAL_SECONDS,
    DISPATCH_SEND_TIMEOUT_SECONDS,
    DISPATCH_WORKER_COUNT,
)
from app.core.exceptions import DispatchError, InvalidTransitionError
from app.models.notifications import Notification
from app.services.notification_queue import QueueBackend
from app.services.timezone import utc_now

logger = logging.getLogger(__name__)

SendCapability = Callable[[Notification], Awaitable[None]]


@dataclass
class DispatchSummary:
    """Outcome counts for one poll cycle."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0


class NotificationDispatcher:
    """
    Worker pool that drives pending notifications to sent/failed.

    Args:
        queue: The notification queue to poll.
        send: Injected async send capability. Raises DispatchError on failure.
        clock: Returns the current UTC time (injectable for testing).
        poll_interval: Seconds between poll cycles.
        worker_count: Maximum concurrent sends.
        send_timeout: Seconds before a send is abandoned and marked failed.
    """

    def __init__(
        self,
        queue: QueueBackend,
        send: SendCapability,
        *,
        clock: Callable[[], datetime] = utc_now,
        poll_interval: float = DISPATCH_POLL_INTERVAL_SECONDS,
        worker_count: int = DISPATCH_WORKER_COUNT,
        send_timeout: float = DISPATCH_SEND_TIMEOUT_SECONDS,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.queue = queue
        self.send = send
        self.clock = clock
        self.poll_interval = poll_interval
        self.worker_count = worker_count
        self.send_timeout = send_timeout
        self._stop_event = asyncio.Event()

    # ---------------------------------------------------------------
    # Poll loop
    # ---------------------------------------------------------------

    async def run(self) -> None:
        """Poll until stop() is called."""
        logger.info(
            "Dispatcher started (interval=%ss, workers=%d, timeout=%ss)",
            self.poll_interval, self.worker_count, self.send_timeout,
        )
        self._stop_event.clear()
        while not self._stop_event.is_set():
            try:
                summary = await self.run_once()
            except Exception:
                # A failed cycle does not stop the loop
                logger.exception("Dispatch cycle failed")
            else:
                if summary.sent or summary.failed:
                    logger.info(
                        "Dispatch cycle: sent=%d failed=%d skipped=%d queue=%s",
                        summary.sent, summary.failed, summary.skipped, self.queue.counts(),
                    )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Dispatcher stopped")

    def stop(self) -> None:
        """Ask the poll loop to exit after the current cycle."""
        self._stop_event.set()

    async def run_once(self) -> DispatchSummary:
        """Dispatch every notification due at the current clock time."""
        now = self.clock()
        summary = DispatchSummary()
        semaphore = asyncio.Semaphore(self.worker_count)

        due = list(self.queue.due_before(now))

        async def worker(notification: Notification) -> None:
            async with semaphore:
                # Claimed only once a slot is free, so a cancelled wait holds no claim
                if not self.queue.claim(notification.id):
                    summary.skipped += 1
                    return
                outcome = await self._dispatch_one(notification)
            if outcome == "sent":
                summary.sent += 1
            elif outcome == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1

        if due:
            await asyncio.gather(*(worker(n) for n in due))
        return summary

    # ---------------------------------------------------------------
    # Single dispatch
    # ---------------------------------------------------------------

    async def _dispatch_one(self, notification: Notification) -> str:
        """Send one claimed notification and record the outcome."""
        try:
            await asyncio.wait_for(self.send(notification), timeout=self.send_timeout)
        except asyncio.CancelledError:
            self._record_failure(notification, "cancelled")
            raise
        except asyncio.TimeoutError:
            return self._record_failure(
                notification, f"send timed out after {self.send_timeout}s",
            )
        except DispatchError as exc:
            return self._record_failure(notification, str(exc) or "dispatch failed")
        except Exception as exc:
            logger.exception(
                "Unexpected error sending notification id=%d", notification.id,
            )
            return self._record_failure(notification, f"{type(exc).__name__}: {exc}")

        try:
            self.queue.mark_sent(notification.id, self.clock())
        except InvalidTransitionError as exc:
            logger.warning(f"Notification {notification.id} resolved elsewhere: {exc}")
            return "skipped"
        return "sent"

    def _record_failure(self, notification: Notification, reason: str) -> str:
        try:
            self.queue.mark_failed(notification.id, reason)
        except InvalidTransitionError as exc:
            logger.warning(f"Notification {notification.id} resolved elsewhere: {exc}")
            return "skipped"
        return "failed"

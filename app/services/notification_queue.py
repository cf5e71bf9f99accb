"""
Notification Queue — Owns notification records and enforces their lifecycle.

State machine per record:

    pending --mark_sent-->   sent      (terminal, sent_at immutable)
    pending --mark_failed--> failed
    failed  --requeue-->     pending   (decided by an external retry policy)

Every transition is a compare-and-set on the record's current status under
a single lock, so two workers racing on the same record see exactly one
success and one InvalidTransitionError.

Records handed out by the queue are copies. Callers never hold references
into the queue's own storage.

NotificationQueue keeps records in process memory. SupabaseNotificationQueue
(supabase_queue.py) offers the same API on the notification_queue table;
get_notification_queue() picks one per NOTIFICATION_QUEUE_BACKEND.
"""

import itertools
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Iterator, Optional, Union

from app.core.config import NOTIFICATION_QUEUE_BACKEND
from app.core.exceptions import (
    ConfigurationError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
)
from app.models.notifications import Notification
from app.services.supabase_queue import SupabaseNotificationQueue
from app.services.timezone import ensure_utc

logger = logging.getLogger(__name__)


class NotificationQueue:
    """In-process, thread-safe notification queue."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._records: dict[int, Notification] = {}
        # Insertion order for tie-breaking records with equal scheduled_at
        self._sequence: dict[int, int] = {}
        self._seq = itertools.count()
        # (link_id, recipient_user, kind, scheduled_at) -> id, pending records only
        self._pending_keys: dict[tuple, int] = {}
        self._claimed: set[int] = set()

    # ---------------------------------------------------------------
    # Insertion
    # ---------------------------------------------------------------

    def enqueue(self, notification: Notification) -> int:
        """
        Insert a notification in 'pending' state and return its id.

        Raises:
            DuplicateError: If an identical (link_id, recipient_user, kind,
                scheduled_at) record is still pending.
        """
        with self._lock:
            key = notification.dedup_key
            existing_id = self._pending_keys.get(key)
            if existing_id is not None:
                raise DuplicateError(
                    f"Notification '{notification.kind}' for link {notification.link_id} "
                    f"at {notification.scheduled_at.isoformat()} is already pending "
                    f"(id={existing_id})",
                    existing_id=existing_id,
                )

            notification_id = next(self._ids)
            record = notification.model_copy(
                update={
                    "id": notification_id,
                    "status": "pending",
                    "sent_at": None,
                    "failure_reason": None,
                },
                deep=True,
            )
            self._records[notification_id] = record
            self._sequence[notification_id] = next(self._seq)
            self._pending_keys[key] = notification_id

        logger.info(
            "Enqueued notification id=%d kind=%s recipient=%s... scheduled_at=%s",
            notification_id, record.kind, record.recipient_user[:8],
            record.scheduled_at.isoformat(),
        )
        return notification_id

    # ---------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------

    def get(self, notification_id: int) -> Notification:
        """Return a copy of a record. Raises NotFoundError if unknown."""
        with self._lock:
            return self._get_locked(notification_id).model_copy(deep=True)

    def due_before(self, instant: datetime) -> Iterator[Notification]:
        """
        Yield pending records with scheduled_at <= instant.

        Ordered by scheduled_at ascending, ties by insertion order. The
        snapshot is taken when iteration starts; calling again re-queries
        current state.
        """
        instant = ensure_utc(instant)
        with self._lock:
            due = [
                record.model_copy(deep=True)
                for record in self._records.values()
                if record.status == "pending" and record.scheduled_at <= instant
            ]
            due.sort(key=lambda r: (r.scheduled_at, self._sequence[r.id]))
        yield from due

    def counts(self) -> dict[str, int]:
        """Number of records per status."""
        with self._lock:
            return dict(Counter(record.status for record in self._records.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ---------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------

    def claim(self, notification_id: int) -> bool:
        """
        Reserve a pending record for dispatch by this process.

        Returns False if the record is no longer pending or another local
        worker already holds it. The claim is released by mark_sent or
        mark_failed.
        """
        with self._lock:
            record = self._get_locked(notification_id)
            if record.status != "pending" or notification_id in self._claimed:
                return False
            self._claimed.add(notification_id)
            return True

    def mark_sent(self, notification_id: int, sent_at: datetime) -> Notification:
        """pending -> sent. Raises NotFoundError / InvalidTransitionError."""
        sent_at = ensure_utc(sent_at)
        with self._lock:
            record = self._transition_locked(notification_id, "sent")
            record.sent_at = sent_at
            result = record.model_copy(deep=True)

        logger.info("Notification id=%d marked sent at %s", notification_id, sent_at.isoformat())
        return result

    def mark_failed(self, notification_id: int, reason: str) -> Notification:
        """pending -> failed. Raises NotFoundError / InvalidTransitionError."""
        with self._lock:
            record = self._transition_locked(notification_id, "failed")
            record.failure_reason = reason
            record.attempts += 1
            result = record.model_copy(deep=True)

        logger.warning(
            "Notification id=%d marked failed (attempt %d): %s",
            notification_id, result.attempts, reason,
        )
        return result

    def requeue(
        self,
        notification_id: int,
        scheduled_at: Optional[datetime] = None,
    ) -> Notification:
        """
        failed -> pending, optionally at a new scheduled_at.

        The queue never calls this itself; retry timing belongs to the caller.

        Raises:
            NotFoundError, InvalidTransitionError, DuplicateError
        """
        with self._lock:
            record = self._get_locked(notification_id)
            if record.status != "failed":
                raise InvalidTransitionError(notification_id, record.status, "pending")

            new_scheduled_at = (
                ensure_utc(scheduled_at) if scheduled_at is not None else record.scheduled_at
            )
            key = record.dedup_key_at(new_scheduled_at)
            existing_id = self._pending_keys.get(key)
            if existing_id is not None:
                raise DuplicateError(
                    f"Cannot requeue notification {notification_id}: "
                    f"id={existing_id} is already pending for the same event",
                    existing_id=existing_id,
                )

            record.status = "pending"
            record.scheduled_at = new_scheduled_at
            record.failure_reason = None
            self._pending_keys[key] = notification_id
            result = record.model_copy(deep=True)

        logger.info(
            "Notification id=%d requeued for %s",
            notification_id, new_scheduled_at.isoformat(),
        )
        return result

    # ---------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ---------------------------------------------------------------

    def _get_locked(self, notification_id: int) -> Notification:
        record = self._records.get(notification_id)
        if record is None:
            raise NotFoundError(notification_id)
        return record

    def _transition_locked(self, notification_id: int, target: str) -> Notification:
        record = self._get_locked(notification_id)
        if record.status != "pending":
            raise InvalidTransitionError(notification_id, record.status, target)

        self._pending_keys.pop(record.dedup_key, None)
        self._claimed.discard(notification_id)
        record.status = target
        return record


# ===================================================================
# Process-wide Queue
# ===================================================================

QueueBackend = Union[NotificationQueue, SupabaseNotificationQueue]

_queue: QueueBackend | None = None


def get_notification_queue() -> QueueBackend:
    """
    Return the process-wide queue, creating it on first use.

    The backend is chosen by NOTIFICATION_QUEUE_BACKEND.

    Raises:
        ConfigurationError: If the backend name is unknown.
    """
    global _queue
    if _queue is None:
        if NOTIFICATION_QUEUE_BACKEND == "supabase":
            _queue = SupabaseNotificationQueue()
        elif NOTIFICATION_QUEUE_BACKEND == "memory":
            _queue = NotificationQueue()
        else:
            raise ConfigurationError(
                f"Unknown NOTIFICATION_QUEUE_BACKEND '{NOTIFICATION_QUEUE_BACKEND}' "
                "(expected 'supabase' or 'memory')"
            )
        logger.info(f"Notification queue backend: {NOTIFICATION_QUEUE_BACKEND}")
    return _queue

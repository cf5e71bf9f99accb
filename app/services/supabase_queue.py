"""
Supabase Notification Queue — notification_queue table behind the queue API.

Same interface and state machine as the in-process NotificationQueue, but the
records survive restarts and are shared by every worker process:

- Each transition is a conditional UPDATE (`... WHERE id = ? AND status = ?`).
  An update that matches no row means another worker already resolved the
  record, and InvalidTransitionError is raised.
- Duplicate pending events are rejected by a lookup before insert, and the
  partial unique index on (link_id, recipient_user, kind, scheduled_at)
  WHERE status = 'pending' rejects the insert if two processes race.
- claim() is a per-process lease, as in the in-process queue. Cross-process
  exclusivity comes from the conditional updates.
"""

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Iterator, Optional

from supabase import Client

from app.core.exceptions import DuplicateError, InvalidTransitionError, NotFoundError
from app.db.supabase_client import get_service_client
from app.models.notifications import Notification
from app.services.timezone import ensure_utc

logger = logging.getLogger(__name__)

TABLE = "notification_queue"

_UNIQUE_VIOLATION_MARKERS = ("duplicate", "unique", "23505")


class SupabaseNotificationQueue:
    """
    Notification queue persisted in Supabase.

    Args:
        client: Supabase client to use. Defaults to the service-role client,
            resolved on first use.
    """

    def __init__(self, client: Client | None = None):
        self._client = client
        self._lock = threading.Lock()
        self._claimed: set[int] = set()

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

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
        existing_id = self._find_pending(notification.dedup_key)
        if existing_id is not None:
            raise DuplicateError(
                f"Notification '{notification.kind}' for link {notification.link_id} "
                f"at {notification.scheduled_at.isoformat()} is already pending "
                f"(id={existing_id})",
                existing_id=existing_id,
            )

        row = notification.model_dump(mode="json", exclude={"id"})
        row.update({"status": "pending", "sent_at": None, "failure_reason": None})

        try:
            result = self.client.table(TABLE).insert(row).execute()
        except Exception as exc:
            if any(marker in str(exc).lower() for marker in _UNIQUE_VIOLATION_MARKERS):
                raise DuplicateError(
                    f"Notification '{notification.kind}' for "
                    f"{notification.recipient_user[:8]}... was enqueued concurrently"
                ) from exc
            raise

        notification_id = result.data[0]["id"]
        logger.info(
            "Enqueued notification id=%d kind=%s recipient=%s... scheduled_at=%s",
            notification_id, notification.kind, notification.recipient_user[:8],
            notification.scheduled_at.isoformat(),
        )
        return notification_id

    # ---------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------

    def get(self, notification_id: int) -> Notification:
        """Load one record. Raises NotFoundError if unknown."""
        result = (
            self.client.table(TABLE)
            .select("*")
            .eq("id", notification_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError(notification_id)
        return Notification(**result.data[0])

    def due_before(self, instant: datetime) -> Iterator[Notification]:
        """Yield pending records with scheduled_at <= instant, oldest first."""
        instant = ensure_utc(instant)
        result = (
            self.client.table(TABLE)
            .select("*")
            .eq("status", "pending")
            .lte("scheduled_at", instant.isoformat())
            .order("scheduled_at")
            .order("id")
            .execute()
        )
        for row in result.data or []:
            yield Notification(**row)

    def counts(self) -> dict[str, int]:
        """Number of records per status."""
        result = self.client.table(TABLE).select("status").execute()
        return dict(Counter(row["status"] for row in result.data or []))

    def __len__(self) -> int:
        result = self.client.table(TABLE).select("id", count="exact").execute()
        return result.count or 0

    # ---------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------

    def claim(self, notification_id: int) -> bool:
        """Reserve a pending record for dispatch by this process."""
        record = self.get(notification_id)
        with self._lock:
            if record.status != "pending" or notification_id in self._claimed:
                return False
            self._claimed.add(notification_id)
            return True

    def mark_sent(self, notification_id: int, sent_at: datetime) -> Notification:
        """pending -> sent. Raises NotFoundError / InvalidTransitionError."""
        sent_at = ensure_utc(sent_at)
        try:
            record = self._conditional_update(
                notification_id,
                expected="pending",
                target="sent",
                changes={"status": "sent", "sent_at": sent_at.isoformat()},
            )
        finally:
            self._release(notification_id)

        logger.info("Notification id=%d marked sent at %s", notification_id, sent_at.isoformat())
        return record

    def mark_failed(self, notification_id: int, reason: str) -> Notification:
        """pending -> failed. Raises NotFoundError / InvalidTransitionError."""
        try:
            current = self.get(notification_id)
            if current.status != "pending":
                raise InvalidTransitionError(notification_id, current.status, "failed")
            record = self._conditional_update(
                notification_id,
                expected="pending",
                target="failed",
                changes={
                    "status": "failed",
                    "failure_reason": reason,
                    "attempts": current.attempts + 1,
                },
            )
        finally:
            self._release(notification_id)

        logger.warning(
            "Notification id=%d marked failed (attempt %d): %s",
            notification_id, record.attempts, reason,
        )
        return record

    def requeue(
        self,
        notification_id: int,
        scheduled_at: Optional[datetime] = None,
    ) -> Notification:
        """
        failed -> pending, optionally at a new scheduled_at.

        Raises:
            NotFoundError, InvalidTransitionError, DuplicateError
        """
        current = self.get(notification_id)
        if current.status != "failed":
            raise InvalidTransitionError(notification_id, current.status, "pending")

        new_scheduled_at = (
            ensure_utc(scheduled_at) if scheduled_at is not None else current.scheduled_at
        )
        existing_id = self._find_pending(current.dedup_key_at(new_scheduled_at))
        if existing_id is not None:
            raise DuplicateError(
                f"Cannot requeue notification {notification_id}: "
                f"id={existing_id} is already pending for the same event",
                existing_id=existing_id,
            )

        record = self._conditional_update(
            notification_id,
            expected="failed",
            target="pending",
            changes={
                "status": "pending",
                "scheduled_at": new_scheduled_at.isoformat(),
                "failure_reason": None,
            },
        )
        logger.info(
            "Notification id=%d requeued for %s",
            notification_id, new_scheduled_at.isoformat(),
        )
        return record

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    def _find_pending(self, key: tuple) -> int | None:
        """Return the id of the pending record matching a dedup key, if any."""
        link_id, recipient_user, kind, scheduled_at = key
        query = (
            self.client.table(TABLE)
            .select("id")
            .eq("status", "pending")
            .eq("recipient_user", recipient_user)
            .eq("kind", kind)
            .eq("scheduled_at", scheduled_at.isoformat())
        )
        query = query.is_("link_id", "null") if link_id is None else query.eq("link_id", link_id)
        result = query.limit(1).execute()
        return result.data[0]["id"] if result.data else None

    def _conditional_update(
        self,
        notification_id: int,
        expected: str,
        target: str,
        changes: dict,
    ) -> Notification:
        result = (
            self.client.table(TABLE)
            .update(changes)
            .eq("id", notification_id)
            .eq("status", expected)
            .execute()
        )
        if result.data:
            return Notification(**result.data[0])

        # No row matched: unknown id, or another worker moved it first
        current = self.get(notification_id)
        raise InvalidTransitionError(notification_id, current.status, target)

    def _release(self, notification_id: int) -> None:
        with self._lock:
            self._claimed.discard(notification_id)

"""
Supabase Notification Queue Verification

Tests that:
1. enqueue() inserts a pending row and returns the database id
2. Duplicate pending events are rejected by lookup and by the unique index
3. Self notifications look up duplicates with link_id IS NULL per recipient
4. due_before() filters pending rows up to the instant, oldest first
5. Transitions are conditional updates guarded by the expected status
6. A conditional update that matches nothing raises InvalidTransitionError
   (lost race) or NotFoundError (unknown id)
7. claim() is exclusive per process and released by a transition
8. requeue() refuses to shadow another pending record

The Supabase client is mocked; no database is required.

Run with: pytest tests/test_supabase_queue.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import DuplicateError, InvalidTransitionError, NotFoundError
from app.models.notifications import Notification
from app.services.supabase_queue import TABLE, SupabaseNotificationQueue

T0 = datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc)


def _table(*results) -> MagicMock:
    """
    A table mock whose query builder chain returns itself.

    Each execute() returns the next entry of `results`: a list of rows, or
    an exception to raise.
    """
    table = MagicMock()
    for method in ("select", "insert", "update", "eq", "is_", "lte", "order", "limit"):
        getattr(table, method).return_value = table
    table.execute.side_effect = [
        result if isinstance(result, Exception) else MagicMock(data=result)
        for result in results
    ]
    return table


def _queue(table: MagicMock) -> SupabaseNotificationQueue:
    client = MagicMock()
    client.table.return_value = table
    return SupabaseNotificationQueue(client=client)


def _notification(link_id: str | None = "link-aaaa-1111", **overrides) -> Notification:
    fields = {
        "link_id": link_id,
        "recipient_user": "partner-bbbb-2222",
        "subject_user": "subject-cccc-3333",
        "kind": "ovulation",
        "scheduled_at": T0,
        "payload": {"phase": "ovulation"},
    }
    fields.update(overrides)
    return Notification(**fields)


def _row(notification_id: int = 7, status: str = "pending", **overrides) -> dict:
    row = {
        "id": notification_id,
        "link_id": "link-aaaa-1111",
        "recipient_user": "partner-bbbb-2222",
        "subject_user": "subject-cccc-3333",
        "kind": "ovulation",
        "scheduled_at": "2026-01-15T13:00:00+00:00",
        "payload": {"phase": "ovulation"},
        "status": status,
        "sent_at": None,
        "failure_reason": None,
        "attempts": 0,
        "created_at": "2026-01-10T09:00:00+00:00",
    }
    row.update(overrides)
    return row


# ===================================================================
# 1. enqueue
# ===================================================================

class TestEnqueue:
    """Insert and duplicate detection against the notification_queue table."""

    def test_inserts_pending_row(self):
        table = _table([], [_row(notification_id=42)])
        queue = _queue(table)

        notification_id = queue.enqueue(_notification(status="sent", sent_at=T0))

        assert notification_id == 42
        queue.client.table.assert_called_with(TABLE)
        inserted = table.insert.call_args.args[0]
        assert "id" not in inserted
        assert inserted["status"] == "pending"
        assert inserted["sent_at"] is None
        assert inserted["scheduled_at"].startswith("2026-01-15T13:00:00")
        assert inserted["payload"] == {"phase": "ovulation"}

    def test_pending_duplicate_is_rejected_before_insert(self):
        table = _table([{"id": 5}])
        queue = _queue(table)

        with pytest.raises(DuplicateError) as exc_info:
            queue.enqueue(_notification())

        assert exc_info.value.existing_id == 5
        table.insert.assert_not_called()
        table.eq.assert_any_call("recipient_user", "partner-bbbb-2222")
        table.eq.assert_any_call("link_id", "link-aaaa-1111")

    def test_self_notification_lookup_uses_null_link_and_recipient(self):
        table = _table([], [_row(link_id=None, recipient_user="user-aaaa-1111")])
        queue = _queue(table)

        queue.enqueue(_notification(link_id=None, recipient_user="user-aaaa-1111"))

        table.is_.assert_called_once_with("link_id", "null")
        table.eq.assert_any_call("recipient_user", "user-aaaa-1111")

    def test_unique_violation_on_insert_is_duplicate(self):
        table = _table(
            [],
            Exception('duplicate key value violates unique constraint "notification_queue_pending_key" (23505)'),
        )
        queue = _queue(table)

        with pytest.raises(DuplicateError):
            queue.enqueue(_notification())

    def test_other_insert_errors_propagate(self):
        table = _table([], RuntimeError("connection reset"))
        queue = _queue(table)

        with pytest.raises(RuntimeError):
            queue.enqueue(_notification())


# ===================================================================
# 2. Queries
# ===================================================================

class TestQueries:
    """get, due_before and counts."""

    def test_get_unknown_id(self):
        queue = _queue(_table([]))
        with pytest.raises(NotFoundError):
            queue.get(404)

    def test_due_before_filters_and_orders(self):
        table = _table([_row(1), _row(2, kind="luteal")])
        queue = _queue(table)

        due = list(queue.due_before(T0 + timedelta(hours=1)))

        assert [n.id for n in due] == [1, 2]
        table.eq.assert_called_with("status", "pending")
        table.lte.assert_called_once_with("scheduled_at", "2026-01-15T14:00:00+00:00")
        assert [c.args[0] for c in table.order.call_args_list] == ["scheduled_at", "id"]

    def test_due_before_rejects_naive_instant(self):
        queue = _queue(_table())
        with pytest.raises(ValueError):
            list(queue.due_before(datetime(2026, 1, 15)))

    def test_counts(self):
        table = _table([{"status": "sent"}, {"status": "pending"}, {"status": "sent"}])
        assert _queue(table).counts() == {"sent": 2, "pending": 1}


# ===================================================================
# 3. Transitions
# ===================================================================

class TestTransitions:
    """Conditional updates as compare-and-set."""

    def test_mark_sent_is_conditional_on_pending(self):
        table = _table([_row(status="sent", sent_at="2026-01-15T13:00:05+00:00")])
        queue = _queue(table)

        record = queue.mark_sent(7, T0 + timedelta(seconds=5))

        assert record.status == "sent"
        assert record.sent_at == T0 + timedelta(seconds=5)
        changes = table.update.call_args.args[0]
        assert changes == {"status": "sent", "sent_at": "2026-01-15T13:00:05+00:00"}
        table.eq.assert_any_call("id", 7)
        table.eq.assert_any_call("status", "pending")

    def test_lost_race_raises_invalid_transition(self):
        # The update matches no row; the re-read shows another worker won
        table = _table([], [_row(status="sent", sent_at="2026-01-15T13:00:00+00:00")])
        queue = _queue(table)

        with pytest.raises(InvalidTransitionError) as exc_info:
            queue.mark_sent(7, T0)
        assert exc_info.value.current_status == "sent"
        print("  Conditional update matched nothing → InvalidTransitionError")

    def test_unknown_id_raises_not_found(self):
        queue = _queue(_table([], []))
        with pytest.raises(NotFoundError):
            queue.mark_sent(99, T0)

    def test_mark_failed_increments_attempts(self):
        table = _table(
            [_row(attempts=1)],
            [_row(status="failed", failure_reason="timeout", attempts=2)],
        )
        queue = _queue(table)

        record = queue.mark_failed(7, "timeout")

        assert record.status == "failed"
        assert record.attempts == 2
        changes = table.update.call_args.args[0]
        assert changes == {"status": "failed", "failure_reason": "timeout", "attempts": 2}

    def test_mark_failed_on_sent_record_is_invalid(self):
        table = _table([_row(status="sent", sent_at="2026-01-15T13:00:00+00:00")])
        queue = _queue(table)

        with pytest.raises(InvalidTransitionError):
            queue.mark_failed(7, "late failure")
        table.update.assert_not_called()

    def test_requeue_moves_failed_to_pending(self):
        retry_at = T0 + timedelta(minutes=5)
        table = _table(
            [_row(status="failed", failure_reason="timeout", attempts=1)],
            [],
            [_row(status="pending", scheduled_at=retry_at.isoformat(), attempts=1)],
        )
        queue = _queue(table)

        record = queue.requeue(7, scheduled_at=retry_at)

        assert record.status == "pending"
        assert record.scheduled_at == retry_at
        changes = table.update.call_args.args[0]
        assert changes["failure_reason"] is None
        table.eq.assert_any_call("status", "failed")

    def test_requeue_conflicting_with_pending_duplicate(self):
        table = _table([_row(status="failed", failure_reason="boom")], [{"id": 8}])
        queue = _queue(table)

        with pytest.raises(DuplicateError) as exc_info:
            queue.requeue(7)
        assert exc_info.value.existing_id == 8
        table.update.assert_not_called()


# ===================================================================
# 4. Claims
# ===================================================================

class TestClaims:
    """Per-process claims."""

    def test_claim_is_exclusive(self):
        queue = _queue(_table([_row()], [_row()]))
        assert queue.claim(7) is True
        assert queue.claim(7) is False

    def test_claim_of_resolved_record_fails(self):
        queue = _queue(_table([_row(status="failed", failure_reason="boom")]))
        assert queue.claim(7) is False

    def test_transition_releases_claim(self):
        table = _table(
            [_row()],                                          # claim
            [_row()],                                          # mark_failed: read
            [_row(status="failed", failure_reason="boom", attempts=1)],  # update
            [_row(status="failed", failure_reason="boom", attempts=1)],  # requeue: read
            [],                                                # requeue: duplicate lookup
            [_row()],                                          # requeue: update
            [_row()],                                          # claim
        )
        queue = _queue(table)

        assert queue.claim(7) is True
        queue.mark_failed(7, "boom")
        queue.requeue(7)
        assert queue.claim(7) is True

    def test_failed_update_still_releases_claim(self):
        table = _table([_row()], [], [_row(status="sent", sent_at="2026-01-15T13:00:00+00:00")], [_row()])
        queue = _queue(table)

        assert queue.claim(7) is True
        with pytest.raises(InvalidTransitionError):
            queue.mark_sent(7, T0)
        assert queue.claim(7) is True

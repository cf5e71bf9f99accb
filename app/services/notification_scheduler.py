"""
Notification Scheduler — Computes dispatch times and enqueues notifications.

Handles the core scheduling logic for cycle notifications:
1. Filters a phase event per recipient (user toggle, link share scope and
   per-kind flags).
2. Computes the authoritative UTC dispatch instant, deferring anything that
   lands inside the recipient's quiet hours to the moment they end.
3. Inserts one notification_queue entry per permitted recipient.

The calculator only sees timing inputs. What the notification says is
decided upstream; this module only decides when it is safe to deliver.
"""

import logging
from datetime import datetime, time, timedelta

from app.core.exceptions import ConfigurationError, DuplicateError
from app.models.notifications import (
    Notification,
    PhaseEvent,
    QuietHours,
    RecipientContext,
)
from app.services.dnd import QuietHoursPolicy
from app.services.link_loader import load_recipient_contexts
from app.services.notification_queue import QueueBackend, get_notification_queue
from app.services.share_scope import permits, shape_payload
from app.services.timezone import TimeZoneConverter, ensure_utc

logger = logging.getLogger(__name__)


# ===================================================================
# Dispatch Time Computation
# ===================================================================

class ScheduleCalculator:
    """
    Pure dispatch-time computation.

    Args:
        converter: TimeZoneConverter to use (injectable zone database).
    """

    def __init__(self, converter: TimeZoneConverter | None = None):
        self.converter = converter or TimeZoneConverter()

    def compute(
        self,
        ideal_at: datetime,
        recipient_zone: str,
        quiet_hours: QuietHoursPolicy | QuietHours,
        kind: str | None = None,
    ) -> datetime:
        """
        Return the UTC instant at which the notification should be dispatched.

        Outside quiet hours this is `ideal_at` itself. Inside quiet hours it
        is the next local occurrence of the window's end minute, converted
        back to UTC (DST gaps resolve to the first valid instant).

        Args:
            ideal_at: Ideal delivery instant (timezone-aware).
            recipient_zone: IANA zone of the recipient.
            quiet_hours: The recipient's quiet hours window.
            kind: Event kind, only used for logging.

        Raises:
            ConfigurationError: If `recipient_zone` is not a valid zone.
        """
        ideal_at = ensure_utc(ideal_at)
        policy = (
            quiet_hours
            if isinstance(quiet_hours, QuietHoursPolicy)
            else QuietHoursPolicy.from_quiet_hours(quiet_hours)
        )

        local = self.converter.to_local(ideal_at, recipient_zone)
        local_minutes = local.hour * 60 + local.minute

        if not policy.contains(local_minutes):
            return ideal_at

        end = policy.next_boundary_after(local_minutes)
        target_date = local.date()

        if policy.is_all_day:
            logger.warning(
                "Quiet hours %s cover the whole day in %s — deferring '%s' by one day",
                policy, recipient_zone, kind,
            )
            target_date += timedelta(days=1)
        elif end < local_minutes:
            # Evening side of an overnight window: suppression lifts tomorrow
            target_date += timedelta(days=1)

        deferred_local = datetime.combine(target_date, time(end // 60, end % 60))
        scheduled_at = self.converter.to_utc(deferred_local, recipient_zone)

        # Inside the end minute itself the boundary has already passed
        scheduled_at = max(scheduled_at, ideal_at)

        logger.debug(
            "Deferred '%s' from %s to %s (quiet hours %s, zone %s)",
            kind, ideal_at.isoformat(), scheduled_at.isoformat(), policy, recipient_zone,
        )
        return scheduled_at


# ===================================================================
# Event Scheduling
# ===================================================================

def schedule_phase_event(
    event: PhaseEvent,
    recipients: list[RecipientContext],
    queue: QueueBackend,
    calculator: ScheduleCalculator | None = None,
) -> list[Notification]:
    """
    Schedule one phase event for every eligible recipient.

    Recipients are skipped when their notifications are disabled, when the
    link does not permit the event kind, or when the same event is already
    pending for them. A recipient with an invalid timezone is logged and
    skipped so one bad profile cannot block the others.

    Returns:
        The notifications created in the queue (with ids assigned).
    """
    calculator = calculator or ScheduleCalculator()
    created: list[Notification] = []

    for context in recipients:
        prefs = context.user_prefs
        if not prefs.enabled:
            logger.debug(
                "Notifications disabled for %s... — skipping '%s'",
                context.recipient_user[:8], event.kind,
            )
            continue

        payload = dict(event.payload)
        link_id = None
        if context.link is not None:
            if not permits(context.link, context.link_prefs, event.kind):
                logger.debug(
                    "Link %s... does not permit '%s' — skipping",
                    context.link.id[:8], event.kind,
                )
                continue
            payload = shape_payload(context.link, payload)
            link_id = context.link.id

        try:
            scheduled_at = calculator.compute(
                event.ideal_at, prefs.timezone, prefs.quiet_hours, kind=event.kind,
            )
        except ConfigurationError as exc:
            logger.error(
                "Cannot schedule '%s' for %s...: %s",
                event.kind, context.recipient_user[:8], exc,
            )
            continue

        payload.setdefault("cycle_id", event.cycle_id)
        notification = Notification(
            link_id=link_id,
            recipient_user=context.recipient_user,
            subject_user=event.subject_user,
            kind=event.kind,
            scheduled_at=scheduled_at,
            payload=payload,
        )

        try:
            notification_id = queue.enqueue(notification)
        except DuplicateError as exc:
            logger.info(f"Skipping duplicate notification: {exc}")
            continue

        created.append(queue.get(notification_id))

    logger.info(
        f"Scheduled {len(created)} of {len(recipients)} notifications for "
        f"'{event.kind}' (subject {event.subject_user[:8]}..., cycle {event.cycle_id[:8]}...)"
    )
    return created


async def schedule_phase_event_for_subject(
    event: PhaseEvent,
    *,
    include_self: bool = False,
    queue: QueueBackend | None = None,
    calculator: ScheduleCalculator | None = None,
) -> tuple[list[Notification], int]:
    """
    Load the subject's recipients from the database and schedule the event.

    Args:
        event: Phase event from the cycle prediction service.
        include_self: Also notify the subject user directly.
        queue: Target queue (defaults to the process-wide queue).
        calculator: Calculator to use (defaults to a fresh one).

    Returns:
        Tuple of (created notifications, number of recipients skipped).
    """
    recipients = await load_recipient_contexts(
        event.subject_user, include_self=include_self,
    )
    created = schedule_phase_event(
        event,
        recipients,
        queue or get_notification_queue(),
        calculator,
    )
    return created, len(recipients) - len(created)

"""
Notifications API — Phase event intake and notification preferences.

Endpoints:
- POST /api/v1/notifications/phase-events — receive a phase event from the
  cycle prediction service and schedule it for the subject's partners.
- GET  /api/v1/notifications/preferences/{user_id} — read a user's settings.
- PUT  /api/v1/notifications/preferences/{user_id} — validate and store a
  user's quiet hours, channel, toggle and timezone.

Invalid quiet hours or timezones are rejected with 422 before anything is
written.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import ValidationError

from app.core.config import API_V1_PREFIX
from app.core.exceptions import ConfigurationError
from app.models.notifications import (
    NotificationPreferencesRequest,
    PhaseEvent,
    PhaseEventScheduleResponse,
    ScheduledNotificationItem,
    UserNotificationPrefs,
)
from app.services.link_loader import load_user_prefs, save_user_notification_prefs
from app.services.notification_scheduler import schedule_phase_event_for_subject

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/notifications", tags=["notifications"])


# ===================================================================
# POST /api/v1/notifications/phase-events
# ===================================================================

@router.post(
    "/phase-events",
    status_code=status.HTTP_201_CREATED,
    response_model=PhaseEventScheduleResponse,
)
async def receive_phase_event(
    event: PhaseEvent,
    include_self: bool = Query(False, description="Also notify the subject user."),
) -> PhaseEventScheduleResponse:
    """
    Schedule a phase event for every partner linked to the subject user.

    Returns:
        201: Event scheduled (possibly for zero recipients).
        422: Invalid event payload.
        500: Recipient data could not be loaded.
    """
    logger.info(
        f"Received phase event: kind={event.kind}, subject={event.subject_user[:8]}..., "
        f"cycle={event.cycle_id[:8]}..., ideal_at={event.ideal_at.isoformat()}"
    )

    try:
        created, skipped = await schedule_phase_event_for_subject(
            event, include_self=include_self,
        )
    except Exception as exc:
        logger.error(f"Failed to schedule phase event for {event.subject_user[:8]}...: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to schedule phase event: {exc}",
        )

    return PhaseEventScheduleResponse(
        scheduled=[
            ScheduledNotificationItem(
                id=n.id,
                recipient_user=n.recipient_user,
                link_id=n.link_id,
                kind=n.kind,
                scheduled_at=n.scheduled_at,
            )
            for n in created
        ],
        skipped=skipped,
    )


# ===================================================================
# /api/v1/notifications/preferences/{user_id}
# ===================================================================

@router.get(
    "/preferences/{user_id}",
    response_model=UserNotificationPrefs,
)
async def get_notification_preferences(user_id: str) -> UserNotificationPrefs:
    """Return the user's notification settings (defaults when none are stored)."""
    try:
        return await load_user_prefs(user_id)
    except ValidationError as exc:
        logger.error(f"Stored notification prefs for {user_id[:8]}... are invalid: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored notification preferences are invalid.",
        )
    except Exception as exc:
        logger.error(f"Failed to load notification prefs for {user_id[:8]}...: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to load notification preferences: {exc}",
        )


@router.put(
    "/preferences/{user_id}",
    response_model=UserNotificationPrefs,
)
async def update_notification_preferences(
    user_id: str,
    body: NotificationPreferencesRequest,
) -> UserNotificationPrefs:
    """
    Store the user's notification settings.

    Returns:
        200: Settings stored.
        422: Malformed quiet hours, a 24h quiet window, or unknown timezone.
        500: Database error.
    """
    try:
        prefs = UserNotificationPrefs(user_id=user_id, **body.model_dump())
    except (ConfigurationError, ValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid notification preferences: {exc}",
        )

    try:
        return await save_user_notification_prefs(prefs)
    except Exception as exc:
        logger.error(f"Failed to save notification prefs for {user_id[:8]}...: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to save notification preferences: {exc}",
        )

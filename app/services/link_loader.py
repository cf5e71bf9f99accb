"""
Link Loader — Loads partner links and notification prefs from Supabase.

Builds the RecipientContext snapshots consumed by the scheduler. Reads:
- partner_links (active links of the subject user)
- link_notification_prefs (per-link flags; defaults when missing)
- user_notification_prefs (quiet hours, channel, enabled; defaults when missing)
- profiles (the user's IANA timezone)

Rows that fail validation (e.g., a malformed stored timezone) are logged
and that recipient is skipped; the remaining recipients are still returned.
"""

import logging

from pydantic import ValidationError

from app.db.supabase_client import get_service_client
from app.models.notifications import RecipientContext, UserNotificationPrefs
from app.models.partners import LinkNotificationPrefs, PartnerLink

logger = logging.getLogger(__name__)

_USER_PREFS_COLUMNS = "user_id, quiet_hours, channel, enabled"


# ===================================================================
# Row Helpers
# ===================================================================

def _build_user_prefs(
    user_id: str,
    prefs_row: dict | None,
    tz: str | None,
) -> UserNotificationPrefs:
    """Merge a user_notification_prefs row and the profile timezone."""
    data: dict = {"user_id": user_id}
    if prefs_row:
        for column in ("quiet_hours", "channel", "enabled"):
            if prefs_row.get(column) is not None:
                data[column] = prefs_row[column]
    if tz:
        data["timezone"] = tz
    return UserNotificationPrefs(**data)


def _index_by(rows: list[dict] | None, column: str) -> dict[str, dict]:
    return {row[column]: row for row in rows or []}


# ===================================================================
# Loading
# ===================================================================

async def load_user_prefs(user_id: str) -> UserNotificationPrefs:
    """
    Load notification preferences for a single user.

    Raises:
        pydantic.ValidationError: If the stored preferences are invalid.
    """
    client = get_service_client()

    prefs_result = (
        client.table("user_notification_prefs")
        .select(_USER_PREFS_COLUMNS)
        .eq("user_id", user_id)
        .execute()
    )
    profile_result = (
        client.table("profiles")
        .select("user_id, tz")
        .eq("user_id", user_id)
        .execute()
    )

    prefs_row = prefs_result.data[0] if prefs_result.data else None
    tz = profile_result.data[0].get("tz") if profile_result.data else None
    return _build_user_prefs(user_id, prefs_row, tz)


async def load_recipient_contexts(
    subject_user: str,
    include_self: bool = False,
) -> list[RecipientContext]:
    """
    Load everything needed to notify the partners of `subject_user`.

    Args:
        subject_user: UUID of the user whose cycle fired the event.
        include_self: Also return a context for the subject user (link=None).

    Returns:
        One RecipientContext per active link, plus the subject's own
        context when requested.
    """
    client = get_service_client()

    # 1. Active links of the subject
    links_result = (
        client.table("partner_links")
        .select("*")
        .eq("subject_user", subject_user)
        .eq("status", "active")
        .execute()
    )
    links = [PartnerLink(**row) for row in links_result.data or []]

    user_ids = [link.recipient_user for link in links]
    if include_self:
        user_ids.append(subject_user)

    if not user_ids:
        logger.info(f"No active partner links for subject {subject_user[:8]}...")
        return []

    # 2. Per-link flags, user prefs and timezones in bulk
    link_prefs_rows: dict[str, dict] = {}
    if links:
        link_prefs_result = (
            client.table("link_notification_prefs")
            .select("*")
            .in_("link_id", [link.id for link in links])
            .execute()
        )
        link_prefs_rows = _index_by(link_prefs_result.data, "link_id")

    user_prefs_result = (
        client.table("user_notification_prefs")
        .select(_USER_PREFS_COLUMNS)
        .in_("user_id", user_ids)
        .execute()
    )
    profiles_result = (
        client.table("profiles")
        .select("user_id, tz")
        .in_("user_id", user_ids)
        .execute()
    )
    user_prefs_rows = _index_by(user_prefs_result.data, "user_id")
    profile_rows = _index_by(profiles_result.data, "user_id")

    # 3. Assemble contexts
    contexts: list[RecipientContext] = []
    targets = [(link.recipient_user, link) for link in links]
    if include_self:
        targets.append((subject_user, None))

    for user_id, link in targets:
        try:
            user_prefs = _build_user_prefs(
                user_id,
                user_prefs_rows.get(user_id),
                profile_rows.get(user_id, {}).get("tz"),
            )
            link_prefs = None
            if link is not None:
                row = link_prefs_rows.get(link.id)
                link_prefs = (
                    LinkNotificationPrefs(**row)
                    if row
                    else LinkNotificationPrefs(link_id=link.id)
                )
        except ValidationError as exc:
            logger.error(
                "Invalid notification settings for user %s... — skipping: %s",
                user_id[:8], exc,
            )
            continue

        contexts.append(
            RecipientContext(
                recipient_user=user_id,
                link=link,
                link_prefs=link_prefs,
                user_prefs=user_prefs,
            )
        )

    logger.info(
        f"Loaded {len(contexts)} recipient contexts for subject {subject_user[:8]}..."
    )
    return contexts


# ===================================================================
# Writing
# ===================================================================

async def save_user_notification_prefs(prefs: UserNotificationPrefs) -> UserNotificationPrefs:
    """
    Upsert validated preferences (and the profile timezone).

    The caller is expected to pass a validated model; invalid quiet hours or
    timezones never reach the database.
    """
    client = get_service_client()

    client.table("user_notification_prefs").upsert(
        {
            "user_id": prefs.user_id,
            "quiet_hours": prefs.quiet_hours.model_dump(),
            "channel": prefs.channel,
            "enabled": prefs.enabled,
        },
        on_conflict="user_id",
    ).execute()

    client.table("profiles").update(
        {"tz": prefs.timezone}
    ).eq("user_id", prefs.user_id).execute()

    logger.info(
        "Saved notification prefs for %s... (quiet hours %s-%s, tz %s, enabled=%s)",
        prefs.user_id[:8], prefs.quiet_hours.start, prefs.quiet_hours.end,
        prefs.timezone, prefs.enabled,
    )
    return prefs

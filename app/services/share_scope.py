"""
Share Scope Filter — Decides what a linked partner is allowed to receive.

Two rules, applied in order:
1. Boolean gate: the link must be active and the event kind must be enabled
   in the link's notification prefs. Phase transition kinds consult the
   nested per-phase flags; the fixed kinds consult their own flag.
2. Payload shaping: under the "phase_only" scope, every payload entry that
   carries a concrete calendar date is removed.
"""

import logging
from datetime import date
from typing import Optional

from app.models.partners import LinkNotificationPrefs, PartnerLink

logger = logging.getLogger(__name__)

FIXED_KINDS = ("critical_window", "t_minus_3", "on_start", "on_mid", "on_end")
PHASE_TRANSITION_KINDS = ("follicular", "ovulation", "luteal", "pms")

# Payload keys that name a calendar date even when the value is a string
_DATE_KEY_SUFFIXES = ("_date", "_at")


def permits(
    link: PartnerLink,
    prefs: Optional[LinkNotificationPrefs],
    kind: str,
) -> bool:
    """
    Return True if `kind` may be delivered to the link's recipient.

    Missing prefs mean every flag is at its default (enabled). Unknown
    kinds are never delivered over a partner link.
    """
    if not link.delivers_notifications:
        return False

    if prefs is None:
        prefs = LinkNotificationPrefs(link_id=link.id)

    if kind in FIXED_KINDS:
        return getattr(prefs, kind)

    if kind in PHASE_TRANSITION_KINDS:
        return getattr(prefs.phase_transitions, kind)

    logger.warning(
        "Unknown notification kind '%s' for link %s — not delivered",
        kind, link.id[:8],
    )
    return False


def is_date_entry(key: str, value) -> bool:
    """True if a payload entry carries a concrete calendar date."""
    if isinstance(value, date):
        return True
    return key == "date" or key.endswith(_DATE_KEY_SUFFIXES)


def shape_payload(link: PartnerLink, payload: dict) -> dict:
    """Return a copy of `payload` masked for the link's share scope."""
    if link.share_scope == "phase_plus_dates":
        return dict(payload)
    return {
        key: value
        for key, value in payload.items()
        if not is_date_entry(key, value)
    }

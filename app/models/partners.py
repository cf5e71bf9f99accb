"""
Partner Models — Pydantic schemas for partner links and their notification prefs.

A partner link connects a subject user (whose cycle is tracked) with a
recipient user (the linked partner). Each link carries a sharing scope and
a set of per-event-kind notification flags.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

LinkStatus = Literal["pending", "active", "revoked"]
ShareScope = Literal["phase_only", "phase_plus_dates"]
PhaseType = Literal["menstrual", "follicular", "ovulation", "luteal", "pms"]


class PartnerLink(BaseModel):
    """A link between a subject user and the partner who receives notifications."""

    id: str = Field(..., description="UUID of the partner link.")
    recipient_user: str = Field(..., description="UUID of the linked partner who is notified.")
    subject_user: str = Field(..., description="UUID of the user whose cycle is tracked.")
    status: LinkStatus = "pending"
    share_scope: ShareScope = "phase_only"
    # Only meaningful while status == "pending"
    invite_code: Optional[str] = None
    invite_expires_at: Optional[datetime] = None

    @property
    def delivers_notifications(self) -> bool:
        return self.status == "active"


class PhaseTransitions(BaseModel):
    """Per-phase opt-in flags for phase transition notifications."""

    follicular: bool = True
    ovulation: bool = True
    luteal: bool = True
    pms: bool = True


class LinkNotificationPrefs(BaseModel):
    """
    Notification flags for a single partner link.

    Every flag defaults to enabled. A disabled flag suppresses that
    event kind for the link regardless of quiet hours.
    """

    link_id: str
    critical_window: bool = True
    t_minus_3: bool = True
    on_start: bool = True
    on_mid: bool = True
    on_end: bool = True
    phase_transitions: PhaseTransitions = Field(default_factory=PhaseTransitions)

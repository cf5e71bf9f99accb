"""
Notification Models — Pydantic schemas for the notification scheduling engine.

Defines:
- User notification preferences (quiet hours, channel, timezone)
- The inbound phase event from the cycle prediction service
- The notification queue record and its lifecycle states
- Request/response models for the notifications API
"""

from datetime import date, datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator

from app.core.config import (
    DEFAULT_QUIET_HOURS_END,
    DEFAULT_QUIET_HOURS_START,
    DEFAULT_TIMEZONE,
)
from app.core.exceptions import ConfigurationError
from app.models.partners import LinkNotificationPrefs, PartnerLink
from app.services.dnd import parse_hhmm, validate_quiet_hours
from app.services.timezone import TimeZoneConverter, ensure_utc

NotificationStatus = Literal["pending", "sent", "failed"]

# Closed set of payload value variants. Dates are kept as date/datetime
# so the share-scope filter can recognize them without guessing.
PayloadValue = Union[bool, int, float, date, datetime, str]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _check_timezone(v: str) -> str:
    if not TimeZoneConverter().is_valid_zone(v):
        raise ConfigurationError(f"Unknown timezone '{v}'")
    return v


TimezoneName = Annotated[str, AfterValidator(_check_timezone)]


# ===================================================================
# Preferences
# ===================================================================


class QuietHours(BaseModel):
    """Do-not-disturb window in the user's local wall-clock time."""

    start: str = Field(
        default=DEFAULT_QUIET_HOURS_START,
        description="Local time quiet hours begin (HH:MM).",
    )
    end: str = Field(
        default=DEFAULT_QUIET_HOURS_END,
        description="Local time quiet hours end (HH:MM). May be earlier than start (overnight).",
    )

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "QuietHours":
        validate_quiet_hours(self.start, self.end)
        return self


class UserNotificationPrefs(BaseModel):
    """Per-user notification settings. `enabled` gates all scheduling for the user."""

    user_id: str
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    channel: str = Field(default="push", description="Opaque channel id, e.g. 'push' or 'email'.")
    enabled: bool = True
    timezone: TimezoneName = Field(default=DEFAULT_TIMEZONE, description="IANA timezone of the user.")


class RecipientContext(BaseModel):
    """
    Snapshot of everything needed to schedule one event for one recipient.

    `link` is None for self/system notifications addressed to the subject
    user; those bypass the share-scope gate.
    """

    recipient_user: str
    link: Optional[PartnerLink] = None
    link_prefs: Optional[LinkNotificationPrefs] = None
    user_prefs: UserNotificationPrefs


# ===================================================================
# Events and Queue Records
# ===================================================================


class PhaseEvent(BaseModel):
    """Event published by the cycle prediction service."""

    kind: str = Field(..., description="Event kind, e.g. 'ovulation' or 't_minus_3'.")
    cycle_id: str = Field(..., description="UUID of the cycle the event belongs to.")
    subject_user: str = Field(..., description="UUID of the user whose cycle fired the event.")
    ideal_at: datetime = Field(..., description="Ideal delivery instant (timezone-aware).")
    payload: dict[str, PayloadValue] = Field(default_factory=dict)

    @field_validator("ideal_at")
    @classmethod
    def validate_ideal_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Notification(BaseModel):
    """A notification_queue record."""

    id: Optional[int] = None
    link_id: Optional[str] = Field(default=None, description="None for system/self notifications.")
    recipient_user: str
    subject_user: str
    kind: str
    scheduled_at: datetime
    payload: dict[str, PayloadValue] = Field(default_factory=dict)
    status: NotificationStatus = "pending"
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("scheduled_at", "created_at")
    @classmethod
    def validate_instant(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("sent_at")
    @classmethod
    def validate_sent_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def dedup_key(self) -> tuple[Optional[str], str, str, datetime]:
        return self.dedup_key_at(self.scheduled_at)

    def dedup_key_at(self, scheduled_at: datetime) -> tuple[Optional[str], str, str, datetime]:
        """
        Identity of the logical event if it were scheduled at `scheduled_at`.

        The recipient is part of the key because self notifications all share
        link_id=None.
        """
        return (self.link_id, self.recipient_user, self.kind, scheduled_at)


# ===================================================================
# API Models
# ===================================================================


class NotificationPreferencesRequest(BaseModel):
    """Payload for PUT /api/v1/notifications/preferences/{user_id}."""

    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    channel: str = "push"
    enabled: bool = True
    timezone: TimezoneName = DEFAULT_TIMEZONE


class ScheduledNotificationItem(BaseModel):
    """A notification created while scheduling a phase event."""

    id: int
    recipient_user: str
    link_id: Optional[str] = None
    kind: str
    scheduled_at: datetime


class PhaseEventScheduleResponse(BaseModel):
    """Response for POST /api/v1/notifications/phase-events."""

    status: str = Field(default="scheduled", description="Always 'scheduled' on success.")
    scheduled: list[ScheduledNotificationItem] = Field(default_factory=list)
    skipped: int = Field(
        default=0,
        description="Recipients filtered out (disabled, not permitted, or duplicate).",
    )

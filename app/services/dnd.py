"""
DND (Do Not Disturb) Service — Quiet hours arithmetic for notifications.

A recipient's quiet hours are a local wall-clock window stored as two
"HH:MM" strings. The policy works on minutes since local midnight and
answers two questions for the scheduler:
1. Is a given local minute suppressed?
2. At which local minute does suppression lift?

Both boundary minutes are inclusive. When start > end the window wraps
past midnight (e.g., 22:00-08:00). When start == end the window covers the
whole day; that configuration is rejected at write time, but the policy
still represents it so callers can detect it.
"""

import logging
import re
from dataclasses import dataclass

from app.core.config import DEFAULT_QUIET_HOURS_END, DEFAULT_QUIET_HOURS_START
from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60

_HHMM_PATTERN = re.compile(r"^(\d{2}):(\d{2})$")


# ===================================================================
# HH:MM Parsing
# ===================================================================


def parse_hhmm(value: str) -> int:
    """
    Parse an "HH:MM" local time into minutes since midnight.

    Raises:
        ConfigurationError: If the string is not a valid 24-hour time.
    """
    match = _HHMM_PATTERN.match(value or "")
    if not match:
        raise ConfigurationError(f"Quiet hours time must be HH:MM, got {value!r}")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ConfigurationError(f"Quiet hours time out of range: {value!r}")

    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    """Format minutes since midnight as "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


# ===================================================================
# Quiet Hours Policy
# ===================================================================


@dataclass(frozen=True)
class QuietHoursPolicy:
    """A do-not-disturb window in minutes since local midnight."""

    start: int
    end: int

    def __post_init__(self):
        for name in ("start", "end"):
            value = getattr(self, name)
            if not 0 <= value < MINUTES_PER_DAY:
                raise ConfigurationError(
                    f"Quiet hours {name} must be within [0, {MINUTES_PER_DAY}), got {value}"
                )

    @classmethod
    def from_strings(cls, start: str, end: str) -> "QuietHoursPolicy":
        return cls(parse_hhmm(start), parse_hhmm(end))

    @classmethod
    def from_quiet_hours(cls, quiet_hours) -> "QuietHoursPolicy":
        """Build a policy from a QuietHours model (or anything with start/end)."""
        return cls.from_strings(quiet_hours.start, quiet_hours.end)

    @classmethod
    def default(cls) -> "QuietHoursPolicy":
        return cls.from_strings(DEFAULT_QUIET_HOURS_START, DEFAULT_QUIET_HOURS_END)

    @property
    def is_overnight(self) -> bool:
        return self.start > self.end

    @property
    def is_all_day(self) -> bool:
        """Degenerate window: no minute of the day escapes suppression."""
        return self.start == self.end

    def contains(self, local_minutes: int) -> bool:
        """True if `local_minutes` falls inside the window (inclusive)."""
        if self.is_all_day:
            return True
        if self.start < self.end:
            return self.start <= local_minutes <= self.end
        # Spans midnight: e.g., 22:00-08:00
        return local_minutes >= self.start or local_minutes <= self.end

    def next_boundary_after(self, local_minutes: int) -> int:
        """
        Return the local minute at which suppression lifts.

        For a suppressed minute this is always `end`; the caller decides
        whether that minute falls on the same local day or the next one.
        An unsuppressed minute is returned unchanged.
        """
        if not self.contains(local_minutes):
            return local_minutes
        return self.end

    def __str__(self) -> str:
        return f"{format_minutes(self.start)}-{format_minutes(self.end)}"


def validate_quiet_hours(start: str, end: str) -> QuietHoursPolicy:
    """
    Validate a quiet hours pair before it is stored.

    Rejects malformed times and the 24h window (start == end), which
    would defer every notification indefinitely.

    Raises:
        ConfigurationError: If the pair cannot be stored.
    """
    policy = QuietHoursPolicy.from_strings(start, end)
    if policy.is_all_day:
        raise ConfigurationError(
            f"Quiet hours {start}-{end} cover the whole day; "
            "start and end must differ"
        )
    return policy

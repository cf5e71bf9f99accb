"""
Timezone Service — DST-aware conversion between UTC and IANA zones.

All scheduling math runs on civil wall-clock time in the recipient's zone,
so conversions must follow the zone's historical and future offset rules
rather than a fixed offset.

Tie-breaks for wall-clock times that do not map to exactly one instant:
- Ambiguous (fall-back, the repeated hour): the earlier UTC instant.
- Non-existent (spring-forward gap): the first valid instant after the gap,
  i.e. the transition instant itself.

An aware datetime produced by to_local() carries its PEP 495 fold, so
feeding it back into to_utc() always returns the original instant.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo

from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ZoneLoader = Callable[[str], tzinfo]


class TimeZoneConverter:
    """
    Stateless UTC <-> local conversion backed by an injectable zone database.

    Args:
        zone_loader: Callable resolving an IANA id to a tzinfo. Defaults to
            zoneinfo.ZoneInfo (system tz database or the tzdata package).
    """

    def __init__(self, zone_loader: ZoneLoader = ZoneInfo):
        self._zone_loader = zone_loader

    def get_zone(self, zone: str) -> tzinfo:
        """
        Resolve an IANA zone identifier.

        Raises:
            ConfigurationError: If the identifier is empty or unknown.
        """
        if not zone or not isinstance(zone, str):
            raise ConfigurationError(f"Invalid timezone identifier: {zone!r}")
        try:
            return self._zone_loader(zone)
        except (KeyError, ValueError, OSError) as exc:
            # ZoneInfoNotFoundError is a KeyError; malformed keys raise ValueError
            raise ConfigurationError(f"Unknown timezone '{zone}'") from exc

    def is_valid_zone(self, zone: str) -> bool:
        """True iff the string is a recognized IANA zone identifier."""
        try:
            self.get_zone(zone)
        except ConfigurationError:
            return False
        return True

    def to_local(self, instant: datetime, zone: str) -> datetime:
        """
        Convert an aware instant to wall-clock time in `zone`.

        Returns:
            Aware datetime in the target zone (fold set for repeated hours).

        Raises:
            ValueError: If `instant` is naive.
            ConfigurationError: If `zone` is not a valid IANA identifier.
        """
        if instant.tzinfo is None or instant.utcoffset() is None:
            raise ValueError("instant must be timezone-aware")
        return instant.astimezone(self.get_zone(zone))

    def to_utc(self, local: datetime, zone: str) -> datetime:
        """
        Convert a wall-clock time in `zone` to a UTC instant.

        Naive input is interpreted as wall-clock time in `zone` and resolved
        with the module's tie-breaks. Aware input is converted directly.
        """
        tz = self.get_zone(zone)

        if local.tzinfo is not None and local.utcoffset() is not None:
            return local.astimezone(timezone.utc)

        earlier = local.replace(tzinfo=tz, fold=0)
        candidate = earlier.astimezone(timezone.utc)

        # A wall time that does not survive the round trip sits in a gap
        if candidate.astimezone(tz).replace(tzinfo=None) != local:
            return self._gap_exit(local, tz)

        return candidate

    @staticmethod
    def _gap_exit(local: datetime, tz: tzinfo) -> datetime:
        """
        Return the transition instant that ends the gap containing `local`.

        In a gap, fold=0 applies the pre-transition offset and fold=1 the
        post-transition one. The instant computed with the later offset lies
        before the transition and the one with the earlier offset at or after
        it, so the transition is found by bisecting whole seconds between them.
        """
        offset_before = local.replace(tzinfo=tz, fold=0).utcoffset()
        offset_after = local.replace(tzinfo=tz, fold=1).utcoffset()

        naive_utc = local.replace(tzinfo=timezone.utc)
        lo = int((naive_utc - offset_after).timestamp())
        hi = int((naive_utc - offset_before).timestamp())

        while hi - lo > 1:
            mid = (lo + hi) // 2
            if datetime.fromtimestamp(mid, tz).utcoffset() == offset_after:
                hi = mid
            else:
                lo = mid

        resolved = datetime.fromtimestamp(hi, timezone.utc)
        logger.debug(
            "Wall time %s is skipped in %s — advanced to %s",
            local.isoformat(), tz, resolved.isoformat(),
        )
        return resolved


def utc_now() -> datetime:
    """Default clock for services that accept an injected `now`."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC; reject naive input."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


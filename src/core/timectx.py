"""Resolve a user's local calendar day from a UTC instant.

Servers run in UTC; users live in their own calendar.  A habit logged at
23:58 in Los Angeles is 07:58 UTC the next day, and it must still count for
the Los Angeles date.  All conversions here use full IANA zone rules
(``zoneinfo``), so DST transitions and non-whole-hour offsets are handled;
a fixed UTC offset is never assumed.

Usage::

    resolver = TimeContextResolver(default_timezone="America/New_York")
    day = resolver.local_date_for(instant, user.timezone)
    start_utc, end_utc = resolver.utc_day_bounds(day, user.timezone)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.errors import ConfigurationError

logger = logging.getLogger("cadence.timectx")


@lru_cache(maxsize=512)
def _load_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def parse_zone(name: str | None) -> ZoneInfo | None:
    """Return the ZoneInfo for an IANA name, or None if missing or unknown."""
    if not name or not isinstance(name, str):
        return None
    try:
        return _load_zone(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None


def as_utc(instant: datetime) -> datetime:
    """Normalize an instant to aware UTC.  Naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class TimeContextResolver:
    """Converts between UTC instants and user-local calendar days."""

    def __init__(self, default_timezone: str) -> None:
        zone = parse_zone(default_timezone)
        if zone is None:
            raise ConfigurationError(
                f"default_timezone {default_timezone!r} is not a valid IANA timezone"
            )
        self._default = zone

    def zone_for(self, tz: str | ZoneInfo | None) -> ZoneInfo:
        """Resolve a stored timezone, falling back to the configured default."""
        if isinstance(tz, ZoneInfo):
            return tz
        zone = parse_zone(tz)
        if zone is None:
            if tz:
                logger.warning(
                    "Unparseable timezone %r; using default %s", tz, self._default.key
                )
            return self._default
        return zone

    def local_now(self, instant: datetime, tz: str | ZoneInfo | None) -> datetime:
        """Return ``instant`` as a wall-clock datetime in the user's zone."""
        return as_utc(instant).astimezone(self.zone_for(tz))

    def local_date_for(self, instant: datetime, tz: str | ZoneInfo | None) -> date:
        """Return the calendar date the user sees at ``instant``."""
        return self.local_now(instant, tz).date()

    def utc_day_bounds(
        self, day: date, tz: str | ZoneInfo | None
    ) -> tuple[datetime, datetime]:
        """Return the half-open UTC range ``[start, end)`` covering ``day`` locally.

        ``start`` is the earliest instant whose local date is ``day``; ``end``
        is the earliest instant whose local date is the following day.  On
        DST days the range is 23 or 25 hours long.
        """
        zone = self.zone_for(tz)
        start = min(self._midnight_candidates(day, zone))
        end = min(self._midnight_candidates(day + timedelta(days=1), zone))
        return start, end

    def local_noon_utc(self, day: date, tz: str | ZoneInfo | None) -> datetime:
        """UTC instant of 12:00 local on ``day``; used to timestamp daily totals."""
        zone = self.zone_for(tz)
        return datetime.combine(day, time(12, 0), tzinfo=zone).astimezone(timezone.utc)

    @staticmethod
    def _midnight_candidates(day: date, zone: ZoneInfo) -> list[datetime]:
        # Both folds of local midnight that actually land on ``day``.  A gap at
        # midnight leaves only the post-transition instant; an overlap leaves two.
        wall = datetime.combine(day, time.min)
        found: list[datetime] = []
        for fold in (0, 1):
            candidate = wall.replace(tzinfo=zone, fold=fold).astimezone(timezone.utc)
            if candidate.astimezone(zone).date() == day:
                found.append(candidate)
        if not found:
            # The whole local day was skipped (e.g. Pacific/Apia, 2011-12-30)
            found.append(wall.replace(tzinfo=zone).astimezone(timezone.utc))
        return found

"""
Locate Engine Business Calendar

Business-day arithmetic for statutory deadlines.

- A "day" starts at local midnight in the jurisdiction timezone
- Weekends and holidays are skipped
- Holidays = `holidays` library set for the jurisdiction + local table
- Read-only after construction; safe to share and cache
"""

from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Iterable, Optional, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import holidays

from ..repositories import SystemicError


# Longest run of non-business days tolerated before the calendar is
# considered broken.
MAX_CONSECUTIVE_CLOSED_DAYS = 366


class CalendarUnavailableError(SystemicError):
    """Calendar data cannot be loaded (aborts the sweep)."""
    pass


class DeadlineComputationError(Exception):
    """
    Bad calendar input or configuration for one ticket.

    Fatal for that ticket (flagged for review), never for a sweep.
    ticket_id is set once the intake has been held for review.
    """

    def __init__(self, message: str, ticket_id: Optional[UUID] = None):
        super().__init__(message)
        self.ticket_id = ticket_id


class BusinessCalendar:
    """
    Jurisdiction calendar.

    Example:
        cal = BusinessCalendar("America/New_York", country="US", subdivision="WV")
        cal.add_business_days(monday_9am, 2)  -> wednesday 9am
    """

    def __init__(
        self,
        timezone: str = "America/New_York",
        country: Optional[str] = "US",
        subdivision: Optional[str] = None,
        extra_holidays: Iterable[date] = (),
        weekend: Tuple[int, ...] = (5, 6),
    ):
        try:
            self.tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise CalendarUnavailableError(f"Unknown timezone {timezone!r}") from exc

        self.timezone_name = timezone
        self.country = country
        self.subdivision = subdivision
        self.extra_holidays = frozenset(extra_holidays)
        self.weekend = frozenset(weekend)
        self._cache: Dict[int, FrozenSet[date]] = {}

    @classmethod
    def from_settings(cls, settings) -> "BusinessCalendar":
        return cls(
            timezone=settings.timezone,
            country=settings.holiday_country,
            subdivision=settings.holiday_subdivision,
            extra_holidays=settings.extra_holidays,
        )

    # =========================================================================
    # Calendar data
    # =========================================================================

    def holidays(self, year: int) -> FrozenSet[date]:
        """All holidays observed in a year."""
        cached = self._cache.get(year)
        if cached is not None:
            return cached

        days = {d for d in self.extra_holidays if d.year == year}
        if self.country:
            try:
                table = holidays.country_holidays(
                    self.country, subdiv=self.subdivision, years=year
                )
            except NotImplementedError as exc:
                raise CalendarUnavailableError(
                    f"No holiday data for {self.country}/{self.subdivision}"
                ) from exc
            days.update(table.keys())

        result = frozenset(days)
        self._cache[year] = result
        return result

    def is_business_day(self, day: date) -> bool:
        if day.weekday() in self.weekend:
            return False
        return day not in self.holidays(day.year)

    def local_date(self, moment: datetime) -> date:
        return self.to_local(moment).date()

    def to_local(self, moment: datetime) -> datetime:
        self._require_aware(moment)
        return moment.astimezone(self.tz)

    # =========================================================================
    # Arithmetic
    # =========================================================================

    def add_business_days(self, start: datetime, days: int) -> datetime:
        """
        Advance by whole business days, keeping local wall-clock time.

        Each step moves to the next local date that is a business day.
        """
        self._require_aware(start)
        if days < 0:
            raise DeadlineComputationError(f"Cannot add {days} business days")

        local = start.astimezone(self.tz)
        current = local.date()
        remaining = days
        closed_run = 0

        while remaining > 0:
            current += timedelta(days=1)
            if self.is_business_day(current):
                remaining -= 1
                closed_run = 0
            else:
                closed_run += 1
                if closed_run > MAX_CONSECUTIVE_CLOSED_DAYS:
                    raise DeadlineComputationError(
                        "Calendar has no business day within a year"
                    )

        return self._at_local_time(current, local)

    def add_calendar_days(self, start: datetime, days: int) -> datetime:
        self._require_aware(start)
        if days < 0:
            raise DeadlineComputationError(f"Cannot add {days} calendar days")

        local = start.astimezone(self.tz)
        return self._at_local_time(local.date() + timedelta(days=days), local)

    def business_days_between(self, start: datetime, end: datetime) -> int:
        """Business days after start's local date up to and including end's."""
        first = self.local_date(start)
        last = self.local_date(end)
        count = 0
        current = first
        while current < last:
            current += timedelta(days=1)
            if self.is_business_day(current):
                count += 1
        return count

    # =========================================================================
    # Private methods
    # =========================================================================

    def _at_local_time(self, day: date, template: datetime) -> datetime:
        local = datetime(
            day.year, day.month, day.day,
            template.hour, template.minute, template.second, template.microsecond,
            tzinfo=self.tz,
        )
        return local.astimezone(ZoneInfo("UTC"))

    @staticmethod
    def _require_aware(moment: datetime) -> None:
        if moment.tzinfo is None:
            raise DeadlineComputationError("Deadline math needs timezone-aware datetimes")

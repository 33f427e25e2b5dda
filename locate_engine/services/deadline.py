"""
Locate Engine Deadline Calculator

Statutory deadlines, stamped once at ticket creation:

- legal_dig_date   = created_at + notice period (business days)
- expires_at       = legal_dig_date + validity window (calendar days
                     unless the jurisdiction counts business days)
- update_by_date   = created_at + update offset (business days), when
                     the ticket type requires a mid-life update
- response window  = created_at .. created_at + response period (business days)

Same inputs -> same outputs. Later holiday edits never touch issued
tickets because the results are stored, not recomputed.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .calendar import BusinessCalendar, DeadlineComputationError


class JurisdictionRules(BaseModel):
    """Statutory periods for one one-call jurisdiction."""
    model_config = ConfigDict(frozen=True)

    notice_business_days: int = 2
    validity_days: int = 10
    validity_in_business_days: bool = False
    response_business_days: int = 2
    update_by_business_days: int = 8

    @classmethod
    def from_settings(cls, settings) -> "JurisdictionRules":
        return cls(
            notice_business_days=settings.notice_business_days,
            validity_days=settings.validity_days,
            validity_in_business_days=settings.validity_in_business_days,
            response_business_days=settings.response_business_days,
            update_by_business_days=settings.update_by_business_days,
        )


class TicketDeadlines(BaseModel):
    model_config = ConfigDict(frozen=True)

    legal_dig_date: datetime
    expires_at: datetime
    update_by_date: Optional[datetime] = None
    response_window_opens_at: datetime
    response_window_closes_at: datetime


class DeadlineCalculator:
    """
    Derives every ticket deadline from its creation time.

    Raises DeadlineComputationError when the calendar or rules cannot
    produce deadlines satisfying expires_at > legal_dig_date > created_at.
    """

    def __init__(self, calendar: BusinessCalendar, rules: JurisdictionRules):
        self.calendar = calendar
        self.rules = rules

    def compute(
        self,
        created_at: datetime,
        requires_update_by: bool = False
    ) -> TicketDeadlines:
        rules = self.rules
        if rules.notice_business_days < 1:
            raise DeadlineComputationError("Notice period must be at least one business day")
        if rules.validity_days < 1:
            raise DeadlineComputationError("Validity window must be at least one day")

        legal_dig_date = self.calendar.add_business_days(
            created_at, rules.notice_business_days
        )

        if rules.validity_in_business_days:
            expires_at = self.calendar.add_business_days(legal_dig_date, rules.validity_days)
        else:
            expires_at = self.calendar.add_calendar_days(legal_dig_date, rules.validity_days)

        update_by_date = None
        if requires_update_by:
            update_by_date = self.calendar.add_business_days(
                created_at, rules.update_by_business_days
            )

        closes_at = self.calendar.add_business_days(created_at, rules.response_business_days)

        deadlines = TicketDeadlines(
            legal_dig_date=legal_dig_date,
            expires_at=expires_at,
            update_by_date=update_by_date,
            response_window_opens_at=created_at,
            response_window_closes_at=closes_at,
        )
        self._validate(created_at, deadlines)
        return deadlines

    @staticmethod
    def _validate(created_at: datetime, deadlines: TicketDeadlines) -> None:
        if not deadlines.expires_at > deadlines.legal_dig_date > created_at:
            raise DeadlineComputationError(
                f"Deadline order violated: created {created_at.isoformat()}, "
                f"dig {deadlines.legal_dig_date.isoformat()}, "
                f"expires {deadlines.expires_at.isoformat()}"
            )
        if deadlines.update_by_date is not None:
            if not created_at < deadlines.update_by_date < deadlines.expires_at:
                raise DeadlineComputationError(
                    "update_by_date must fall between creation and expiration"
                )
        if deadlines.response_window_closes_at <= created_at:
            raise DeadlineComputationError("Response window must close after creation")

"""
Locate Engine Dig Readiness

"Can I dig here?" check for a crew standing on the site.

STOP     - digging is not legal (expired, cancelled, conflict, before dig date)
WARNING  - legal, but utilities have not all answered
CAUTION  - clear, but expiring soon or high-consequence marks not verified
CLEAR    - all utilities clear, inside the valid window
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from ..models.ticket import (
    ResponseStatus,
    Ticket,
    TicketStatus,
    UtilityResponse,
    UtilityType,
)


EXPIRING_CAUTION = timedelta(hours=24)
HIGH_CONSEQUENCE = frozenset({UtilityType.GAS, UtilityType.ELECTRIC})


class DigVerdict(str, Enum):
    CLEAR = "CLEAR"
    CAUTION = "CAUTION"
    WARNING = "WARNING"
    STOP = "STOP"


class DigReadiness(BaseModel):
    verdict: DigVerdict
    reason: str
    issues: List[str] = Field(default_factory=list)


def assess_dig_readiness(
    ticket: Ticket,
    responses: List[UtilityResponse],
    now: datetime,
    open_conflicts: int = 0
) -> DigReadiness:
    if ticket.status == TicketStatus.CANCELLED:
        return DigReadiness(verdict=DigVerdict.STOP, reason="Ticket was cancelled")
    if not ticket.deadlines_stamped:
        return DigReadiness(
            verdict=DigVerdict.STOP,
            reason="Deadlines were not computed; ticket is held for review",
            issues=[ticket.review_reason] if ticket.review_reason else [],
        )
    if ticket.status == TicketStatus.EXPIRED or now >= ticket.expires_at:
        return DigReadiness(
            verdict=DigVerdict.STOP,
            reason="Ticket has expired. Request a new ticket before digging",
        )

    conflicted = [r.utility_name for r in responses if r.response_status == ResponseStatus.CONFLICT]
    if ticket.status == TicketStatus.CONFLICT or open_conflicts or conflicted:
        return DigReadiness(
            verdict=DigVerdict.STOP,
            reason="Unresolved utility conflict",
            issues=[f"{name} reported a conflict" for name in conflicted],
        )
    if now < ticket.legal_dig_date:
        return DigReadiness(
            verdict=DigVerdict.STOP,
            reason=f"Legal dig date not reached ({ticket.legal_dig_date.isoformat()})",
        )

    if not responses:
        return DigReadiness(verdict=DigVerdict.WARNING, reason="No utilities listed on ticket")

    outstanding = [
        r for r in responses
        if r.response_status in (ResponseStatus.PENDING, ResponseStatus.UNVERIFIED)
    ]
    if outstanding:
        return DigReadiness(
            verdict=DigVerdict.WARNING,
            reason=f"{len(outstanding)} of {len(responses)} utilities have not responded",
            issues=[f"{r.utility_name} ({r.response_status.value})" for r in outstanding],
        )

    issues = []
    if ticket.expires_at - now <= EXPIRING_CAUTION:
        issues.append("Ticket expires within 24 hours")
    for response in responses:
        if (
            response.utility_type in HIGH_CONSEQUENCE
            and response.response_status == ResponseStatus.MARKED
        ):
            issues.append(f"{response.utility_name} marks not verified on site")

    if issues:
        return DigReadiness(verdict=DigVerdict.CAUTION, reason=issues[0], issues=issues)
    return DigReadiness(verdict=DigVerdict.CLEAR, reason="All utilities clear")

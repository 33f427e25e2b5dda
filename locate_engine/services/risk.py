"""
Locate Engine Risk Scorer

Additive risk score for a locate ticket, 0..100.

Formula: risk = consequence + work severity + expiry pressure
              + dig pressure + unanswered utilities (+ conflict penalty)

A conflict always pushes a ticket above any conflict-free ticket,
because the conflict-free maximum (85) is below the clamp ceiling.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List
from uuid import UUID

from ..models.ticket import (
    ResponseStatus,
    Ticket,
    TicketStatus,
    UtilityResponse,
    UtilityType,
    WorkType,
)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def risk_level(score: int) -> RiskLevel:
    if score >= 90:
        return RiskLevel.CRITICAL
    if score >= 70:
        return RiskLevel.HIGH
    if score >= 30:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


@dataclass
class RiskScore:
    """Breakdown of a risk calculation."""
    ticket_id: UUID
    total: int
    components: Dict[str, int] = field(default_factory=dict)
    has_conflict: bool = False
    calculated_at: datetime = None

    @property
    def level(self) -> RiskLevel:
        return risk_level(self.total)


class RiskScorer:
    """
    Pure risk scoring.

    Components:
    - Utility consequence (sum over distinct types, max 25):
      gas 15, electric 10, steam 6, water 3, fiber 3, sewer/telecom/cable 2, other 1
    - Work-type severity (max 20): boring 20 ... landscaping 4
    - Time to expires_at (max 20):
      expired 20, <4h 18, <24h 15, <48h 10, <72h 6, <7d 3, otherwise 0
    - Legal dig date reached with utilities still outstanding: 5
    - Share of utilities PENDING past their window or UNVERIFIED (max 15)
    - Open conflict: +30

    Example:
    Gas + electric (25) boring (20) expiring in 3h (18) = 63
    Same ticket with a conflict = 93
    """

    UTILITY_WEIGHTS = {
        UtilityType.GAS: 15,
        UtilityType.ELECTRIC: 10,
        UtilityType.STEAM: 6,
        UtilityType.WATER: 3,
        UtilityType.FIBER: 3,
        UtilityType.SEWER: 2,
        UtilityType.TELECOM: 2,
        UtilityType.CABLE_TV: 2,
        UtilityType.OTHER: 1,
    }
    UTILITY_CAP = 25

    WORK_TYPE_WEIGHTS = {
        WorkType.BORING: 20,
        WorkType.TRENCHING: 18,
        WorkType.EXCAVATION: 16,
        WorkType.DEMOLITION: 15,
        WorkType.UTILITY_INSTALL: 14,
        WorkType.UTILITY_REPAIR: 14,
        WorkType.ROAD_WORK: 12,
        WorkType.GRADING: 10,
        WorkType.CONSTRUCTION: 10,
        WorkType.OTHER: 8,
        WorkType.LANDSCAPING: 4,
    }

    # (hours remaining below, points)
    EXPIRY_BANDS = [
        (0, 20),
        (4, 18),
        (24, 15),
        (48, 10),
        (72, 6),
        (7 * 24, 3),
    ]

    DIG_PRESSURE = 5
    UNANSWERED_MAX = 15
    CONFLICT_PENALTY = 30

    def score(
        self,
        ticket: Ticket,
        responses: List[UtilityResponse],
        as_of: datetime,
        open_conflicts: int = 0
    ) -> RiskScore:
        components = {
            "utility_consequence": self._utility_component(ticket, responses),
            "work_type": self.WORK_TYPE_WEIGHTS.get(ticket.work_type, 8),
            "expiry": self._expiry_component(ticket, as_of),
            "dig_pressure": self._dig_pressure_component(ticket, responses, as_of),
            "unanswered": self._unanswered_component(responses, as_of),
        }

        has_conflict = (
            open_conflicts > 0
            or ticket.status == TicketStatus.CONFLICT
            or any(r.response_status == ResponseStatus.CONFLICT for r in responses)
        )
        if has_conflict:
            components["conflict"] = self.CONFLICT_PENALTY

        total = max(0, min(100, sum(components.values())))

        return RiskScore(
            ticket_id=ticket.id,
            total=total,
            components=components,
            has_conflict=has_conflict,
            calculated_at=as_of,
        )

    # =========================================================================
    # Components
    # =========================================================================

    def _utility_component(
        self,
        ticket: Ticket,
        responses: Iterable[UtilityResponse]
    ) -> int:
        types = {r.utility_type for r in responses}
        if ticket.has_gas_utility:
            types.add(UtilityType.GAS)
        if ticket.has_electric_utility:
            types.add(UtilityType.ELECTRIC)
        points = sum(self.UTILITY_WEIGHTS.get(t, 1) for t in types)
        return min(points, self.UTILITY_CAP)

    def _expiry_component(self, ticket: Ticket, as_of: datetime) -> int:
        """Non-decreasing as the expiration approaches."""
        if ticket.expires_at is None:
            return 0
        hours = (ticket.expires_at - as_of).total_seconds() / 3600
        if hours <= 0:
            return self.EXPIRY_BANDS[0][1]
        for below, points in self.EXPIRY_BANDS[1:]:
            if hours < below:
                return points
        return 0

    def _dig_pressure_component(
        self,
        ticket: Ticket,
        responses: List[UtilityResponse],
        as_of: datetime
    ) -> int:
        if ticket.legal_dig_date is None or as_of < ticket.legal_dig_date:
            return 0
        outstanding = [r for r in responses if not r.has_responded]
        return self.DIG_PRESSURE if outstanding else 0

    def _unanswered_component(
        self,
        responses: List[UtilityResponse],
        as_of: datetime
    ) -> int:
        if not responses:
            return 0
        lapsed = 0
        for response in responses:
            if response.response_status == ResponseStatus.UNVERIFIED:
                lapsed += 1
            elif (
                response.response_status == ResponseStatus.PENDING
                and as_of >= response.response_window_closes_at
            ):
                lapsed += 1
        return round(self.UNANSWERED_MAX * lapsed / len(responses))

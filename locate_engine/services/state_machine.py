"""
Locate Engine Ticket State Machine

Single writer of ticket status.

Ticket lifecycle:
    RECEIVED -> PENDING -> IN_PROGRESS -> CLEAR
    any non-terminal  -> CONFLICT | EXPIRED | CANCELLED
    CONFLICT -> IN_PROGRESS | CLEAR   (only once every conflict is resolved)
    EXPIRED, CANCELLED are terminal

Every change happens under the ticket's lock, is version-checked on
save, appends a StatusTransition and refreshes counts and risk.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple
from uuid import UUID

from ..clock import utcnow
from ..models.ticket import (
    CLEARED_STATUSES,
    SYSTEM_ACTOR,
    AuditEventType,
    ResponseEvidence,
    ResponseStatus,
    ResponseType,
    StatusTransition,
    Ticket,
    TicketStatus,
    UtilityResponse,
    UtilityType,
)
from ..repositories import NotFoundError
from .risk import RiskScorer, risk_level
from .sweep import SweepReport, fan_out


logger = logging.getLogger(__name__)


# =============================================================================
# TABLES
# =============================================================================

TICKET_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.RECEIVED: frozenset({
        TicketStatus.PENDING, TicketStatus.CONFLICT,
        TicketStatus.EXPIRED, TicketStatus.CANCELLED,
    }),
    TicketStatus.PENDING: frozenset({
        TicketStatus.IN_PROGRESS, TicketStatus.CONFLICT,
        TicketStatus.EXPIRED, TicketStatus.CANCELLED,
    }),
    TicketStatus.IN_PROGRESS: frozenset({
        TicketStatus.CLEAR, TicketStatus.CONFLICT,
        TicketStatus.EXPIRED, TicketStatus.CANCELLED,
    }),
    TicketStatus.CLEAR: frozenset({
        TicketStatus.CONFLICT, TicketStatus.EXPIRED, TicketStatus.CANCELLED,
    }),
    TicketStatus.CONFLICT: frozenset({
        TicketStatus.IN_PROGRESS, TicketStatus.CLEAR,
        TicketStatus.EXPIRED, TicketStatus.CANCELLED,
    }),
    TicketStatus.EXPIRED: frozenset(),
    TicketStatus.CANCELLED: frozenset(),
}

RESPONSE_TRANSITIONS: Dict[ResponseStatus, FrozenSet[ResponseStatus]] = {
    ResponseStatus.PENDING: frozenset({
        ResponseStatus.CLEAR, ResponseStatus.MARKED, ResponseStatus.NOT_APPLICABLE,
        ResponseStatus.CONFLICT, ResponseStatus.UNVERIFIED,
    }),
    # Late reply after the window lapsed
    ResponseStatus.UNVERIFIED: frozenset({
        ResponseStatus.CLEAR, ResponseStatus.MARKED, ResponseStatus.NOT_APPLICABLE,
        ResponseStatus.CONFLICT,
    }),
    ResponseStatus.CLEAR: frozenset({
        ResponseStatus.MARKED, ResponseStatus.CONFLICT, ResponseStatus.VERIFIED_ON_SITE,
    }),
    # Re-mark allowed
    ResponseStatus.MARKED: frozenset({
        ResponseStatus.MARKED, ResponseStatus.CLEAR,
        ResponseStatus.CONFLICT, ResponseStatus.VERIFIED_ON_SITE,
    }),
    ResponseStatus.NOT_APPLICABLE: frozenset({
        ResponseStatus.CONFLICT, ResponseStatus.VERIFIED_ON_SITE,
    }),
    ResponseStatus.VERIFIED_ON_SITE: frozenset({
        ResponseStatus.CONFLICT,
    }),
    # Corrected reply
    ResponseStatus.CONFLICT: frozenset({
        ResponseStatus.CLEAR, ResponseStatus.MARKED, ResponseStatus.NOT_APPLICABLE,
    }),
}

RESPONSE_TYPE_STATUS: Dict[ResponseType, ResponseStatus] = {
    ResponseType.CLEAR: ResponseStatus.CLEAR,
    ResponseType.MARKED: ResponseStatus.MARKED,
    ResponseType.NOT_APPLICABLE: ResponseStatus.NOT_APPLICABLE,
    ResponseType.CONFLICT: ResponseStatus.CONFLICT,
    ResponseType.NO_RESPONSE: ResponseStatus.UNVERIFIED,
}

# Intermediate states walked when evaluation jumps ahead
_FORWARD_PATH = [TicketStatus.RECEIVED, TicketStatus.PENDING, TicketStatus.IN_PROGRESS, TicketStatus.CLEAR]


class InvalidTransition(Exception):
    """Requested status change is not in the transition table."""

    def __init__(self, current, requested, detail: Optional[str] = None):
        message = f"Cannot move from {current.value} to {requested.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.current = current
        self.requested = requested


@dataclass
class TransitionResult:
    """Outcome of one state machine operation."""
    ticket: Ticket
    previous_status: TicketStatus
    transitions: List[StatusTransition] = field(default_factory=list)
    response: Optional[UtilityResponse] = None

    @property
    def changed(self) -> bool:
        return bool(self.transitions)

    @property
    def entered(self) -> List[TicketStatus]:
        return [t.new_status for t in self.transitions]


class TicketStateMachine:
    """
    Enforces the ticket and utility-response transition tables.

    Status is derived from responses and open conflicts:
    - any CONFLICT response or open conflict   -> CONFLICT
    - every response cleared                   -> CLEAR
    - at least one response received           -> IN_PROGRESS
    - response rows exist                      -> PENDING

    conflict_detector is attached after construction (the resolver
    depends on this machine) and runs after every response change.
    """

    def __init__(
        self,
        store,
        timeline,
        risk_scorer: Optional[RiskScorer] = None,
        sweep_concurrency: int = 10
    ):
        self.tickets = store.tickets
        self.responses = store.responses
        self.conflicts = store.conflicts
        self.timeline = timeline
        self.risk = risk_scorer or RiskScorer()
        self.sweep_concurrency = sweep_concurrency
        self.conflict_detector = None

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    async def initialize(
        self,
        ticket_id: UUID,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        """RECEIVED -> PENDING once response rows exist."""
        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            now = now or utcnow()
            result = TransitionResult(ticket=ticket, previous_status=ticket.status)

            if ticket.status == TicketStatus.RECEIVED and responses:
                await self._move(ticket, TicketStatus.PENDING, actor, "Utility response rows created", now, result)

            self._refresh_derived(ticket, responses, open_conflicts, now)
            result.ticket = await self.tickets.save(ticket)
            return result

    async def apply_response(
        self,
        ticket_id: UUID,
        utility_code: str,
        response_type: ResponseType,
        evidence: Optional[ResponseEvidence] = None,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        """
        Record one utility's reply and re-evaluate the ticket.

        Raises InvalidTransition for a PENDING reply, a reply on a
        terminal ticket, or a move the response table does not allow.
        """
        new_status = RESPONSE_TYPE_STATUS.get(response_type)

        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            now = now or utcnow()

            response = next((r for r in responses if r.utility_code == utility_code), None)
            if response is None:
                raise NotFoundError(
                    f"Utility {utility_code} is not listed on ticket {ticket.ticket_number}"
                )

            if new_status is None:
                raise InvalidTransition(
                    response.response_status, ResponseStatus.PENDING,
                    "a reply cannot move a utility back to PENDING",
                )
            if ticket.is_terminal:
                raise InvalidTransition(
                    ticket.status, ticket.status,
                    f"ticket {ticket.ticket_number} is {ticket.status.value}",
                )
            self._check_response_move(response, new_status)

            old_status = response.response_status
            response.response_type = response_type
            response.response_status = new_status
            if new_status != ResponseStatus.UNVERIFIED:
                response.responded_at = now
            if new_status == ResponseStatus.MARKED:
                response.marked_at = now
            if evidence is not None:
                response.evidence = evidence
            response.updated_at = now
            response = await self.responses.save(response)

            responses = [response if r.id == response.id else r for r in responses]
            result = TransitionResult(
                ticket=ticket, previous_status=ticket.status, response=response
            )

            await self.timeline.add_event(
                ticket_id=ticket_id,
                event_type=AuditEventType.RESPONSE_RECORDED,
                content=(
                    f"{response.utility_name} ({utility_code}) "
                    f"{old_status.value} -> {new_status.value}"
                ),
                actor=actor,
                data={
                    "utility_code": utility_code,
                    "response_type": response_type.value,
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                },
                at=now,
            )

            await self._settle(ticket, responses, open_conflicts, actor, now, result)
            result.ticket = await self.tickets.save(ticket)

        await self._detect_conflicts(result, now)
        return result

    async def set_response_status(
        self,
        ticket_id: UUID,
        response_id: UUID,
        new_status: ResponseStatus,
        actor: str,
        now: datetime,
        notes: Optional[str] = None,
        verified_by: Optional[UUID] = None
    ) -> TransitionResult:
        """
        Correct one response's status (field verification, conflict
        resolution) and re-evaluate the ticket.

        Raises InvalidTransition on a terminal ticket.
        """
        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            if ticket.is_terminal:
                raise InvalidTransition(
                    ticket.status, ticket.status,
                    f"ticket {ticket.ticket_number} is {ticket.status.value}",
                )
            response = next((r for r in responses if r.id == response_id), None)
            if response is None:
                response = await self.responses.get(response_id)

            result = TransitionResult(ticket=ticket, previous_status=ticket.status)
            if response.response_status != new_status:
                self._check_response_move(response, new_status)
                old_status = response.response_status
                response.response_status = new_status
                response.updated_at = now
                if new_status == ResponseStatus.VERIFIED_ON_SITE:
                    response.verified_at = now
                    response.verified_by = verified_by
                    response.verification_notes = notes
                response = await self.responses.save(response)
                responses = [response if r.id == response.id else r for r in responses]
                await self.timeline.add_event(
                    ticket_id=ticket_id,
                    event_type=AuditEventType.RESPONSE_RECORDED,
                    content=(
                        f"{response.utility_name} ({response.utility_code}) "
                        f"{old_status.value} -> {new_status.value}"
                    ),
                    actor=actor,
                    data={"old_status": old_status.value, "new_status": new_status.value},
                    at=now,
                )
            result.response = response

            await self._settle(ticket, responses, open_conflicts, actor, now, result)
            result.ticket = await self.tickets.save(ticket)

        await self._detect_conflicts(result, now)
        return result

    async def transition(
        self,
        ticket_id: UUID,
        new_status: TicketStatus,
        actor: str = SYSTEM_ACTOR,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        """Explicit status change, validated against the table."""
        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            now = now or utcnow()
            result = TransitionResult(ticket=ticket, previous_status=ticket.status)

            self._check_move(ticket, new_status, responses, open_conflicts)
            await self._move(ticket, new_status, actor, reason, now, result)

            self._refresh_derived(ticket, responses, open_conflicts, now)
            result.ticket = await self.tickets.save(ticket)
            return result

    async def flag_conflict(
        self,
        ticket_id: UUID,
        actor: str = SYSTEM_ACTOR,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        """Move any non-terminal ticket to CONFLICT. No-op if already there."""
        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            now = now or utcnow()
            result = TransitionResult(ticket=ticket, previous_status=ticket.status)

            if ticket.is_terminal:
                raise InvalidTransition(ticket.status, TicketStatus.CONFLICT, "ticket is closed")
            if ticket.status != TicketStatus.CONFLICT:
                await self._move(ticket, TicketStatus.CONFLICT, actor, reason, now, result)

            self._refresh_derived(ticket, responses, open_conflicts, now)
            result.ticket = await self.tickets.save(ticket)
            return result

    async def reevaluate(
        self,
        ticket_id: UUID,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        """Recompute status from responses and open conflicts."""
        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            now = now or utcnow()
            result = TransitionResult(ticket=ticket, previous_status=ticket.status)

            if not ticket.is_terminal:
                await self._settle(ticket, responses, open_conflicts, actor, now, result)
            else:
                self._refresh_derived(ticket, responses, open_conflicts, now)
            result.ticket = await self.tickets.save(ticket)
            return result

    async def cancel(
        self,
        ticket_id: UUID,
        actor: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        return await self.transition(
            ticket_id, TicketStatus.CANCELLED, actor=actor,
            reason=reason or "Cancelled", now=now,
        )

    async def refresh_risk(self, ticket_id: UUID, now: datetime) -> Ticket:
        """Recompute counts and risk as of now (no status change)."""
        async with self.tickets.lock(ticket_id):
            ticket, responses, open_conflicts = await self._load(ticket_id)
            before = ticket.risk_score
            self._refresh_derived(ticket, responses, open_conflicts, now)
            if ticket.risk_score == before:
                return ticket
            ticket = await self.tickets.save(ticket)

        if risk_level(before) != risk_level(ticket.risk_score):
            await self.timeline.add_system_event(
                ticket_id,
                f"Risk {before} -> {ticket.risk_score} ({risk_level(ticket.risk_score).value})",
                event_type=AuditEventType.RISK_SCORED,
                data={"old_score": before, "new_score": ticket.risk_score},
                at=now,
            )
        return ticket

    async def flag_for_review(
        self,
        ticket_id: UUID,
        reason: str,
        now: datetime
    ) -> Ticket:
        """Mark a ticket that could not be processed; it stays queryable."""
        async with self.tickets.lock(ticket_id):
            ticket = await self.tickets.get(ticket_id)
            ticket.needs_review = True
            ticket.review_reason = reason
            ticket = await self.tickets.save(ticket)

        logger.error("Ticket %s flagged for review: %s", ticket.ticket_number, reason)
        await self.timeline.add_system_event(
            ticket_id, f"Flagged for review: {reason}",
            event_type=AuditEventType.REVIEW_FLAGGED, at=now,
        )
        return ticket

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def auto_expire(self, now: datetime) -> SweepReport:
        """
        Expire every non-terminal ticket past expires_at.

        CLEAR tickets stay CLEAR; the OVERDUE alert covers them.
        """
        report = SweepReport(kind="expiry", started_at=now)
        candidates = await self.tickets.list_by_status([
            TicketStatus.RECEIVED, TicketStatus.PENDING,
            TicketStatus.IN_PROGRESS, TicketStatus.CONFLICT,
        ])
        due = [t for t in candidates if now >= t.expires_at]

        async def expire(ticket: Ticket):
            async with self.tickets.lock(ticket.id):
                current, responses, open_conflicts = await self._load(ticket.id)
                if current.is_terminal or current.status == TicketStatus.CLEAR:
                    return None
                result = TransitionResult(ticket=current, previous_status=current.status)
                await self._move(
                    current, TicketStatus.EXPIRED, SYSTEM_ACTOR,
                    "Validity window ended", now, result,
                )
                self._refresh_derived(current, responses, open_conflicts, now)
                result.ticket = await self.tickets.save(current)
            report.changed += 1
            return result

        await fan_out(
            due, expire, self.sweep_concurrency, report,
            describe=lambda t: t.ticket_number,
            on_error=lambda t, exc: self.flag_for_review(t.id, f"Expiry failed: {exc}", now),
        )
        logger.info(report.summary())
        return report

    async def lapse_response_windows(self, now: datetime) -> SweepReport:
        """PENDING responses past their window become UNVERIFIED."""
        report = SweepReport(kind="response_window", started_at=now)
        tickets = await self.tickets.list_by_status([
            TicketStatus.PENDING, TicketStatus.IN_PROGRESS, TicketStatus.CONFLICT,
        ])

        async def lapse(ticket: Ticket):
            async with self.tickets.lock(ticket.id):
                current, responses, open_conflicts = await self._load(ticket.id)
                if current.is_terminal:
                    return None
                lapsed = [
                    r for r in responses
                    if r.response_status == ResponseStatus.PENDING
                    and now >= r.response_window_closes_at
                ]
                if not lapsed:
                    return None

                saved = {}
                for response in lapsed:
                    response.response_status = ResponseStatus.UNVERIFIED
                    response.updated_at = now
                    saved[response.id] = await self.responses.save(response)
                    await self.timeline.add_system_event(
                        current.id,
                        f"{response.utility_name} did not respond within the window",
                        event_type=AuditEventType.RESPONSE_RECORDED,
                        data={
                            "utility_code": response.utility_code,
                            "old_status": ResponseStatus.PENDING.value,
                            "new_status": ResponseStatus.UNVERIFIED.value,
                        },
                        at=now,
                    )
                responses = [saved.get(r.id, r) for r in responses]

                result = TransitionResult(ticket=current, previous_status=current.status)
                await self._settle(current, responses, open_conflicts, SYSTEM_ACTOR, now, result)
                result.ticket = await self.tickets.save(current)
            report.changed += len(lapsed)
            return result

        await fan_out(
            tickets, lapse, self.sweep_concurrency, report,
            describe=lambda t: t.ticket_number,
        )
        logger.info(report.summary())
        return report

    # =========================================================================
    # Private methods
    # =========================================================================

    async def _load(self, ticket_id: UUID) -> Tuple[Ticket, List[UtilityResponse], int]:
        ticket = await self.tickets.get(ticket_id)
        responses = await self.responses.list_for_ticket(ticket_id)
        open_conflicts = await self.conflicts.list_for_ticket(ticket_id, open_only=True)
        return ticket, responses, len(open_conflicts)

    def _derive_status(
        self,
        ticket: Ticket,
        responses: List[UtilityResponse],
        open_conflicts: int
    ) -> TicketStatus:
        current = ticket.status
        if any(r.response_status == ResponseStatus.CONFLICT for r in responses) or open_conflicts:
            return TicketStatus.CONFLICT
        if not responses:
            return current if current != TicketStatus.CONFLICT else TicketStatus.IN_PROGRESS
        if all(r.response_status in CLEARED_STATUSES for r in responses):
            return TicketStatus.CLEAR
        if any(r.has_responded for r in responses):
            # A cleared ticket never drops back
            return current if current == TicketStatus.CLEAR else TicketStatus.IN_PROGRESS
        if current == TicketStatus.RECEIVED:
            return TicketStatus.PENDING
        if current == TicketStatus.CONFLICT:
            return TicketStatus.IN_PROGRESS
        return current

    def _path_to(self, current: TicketStatus, target: TicketStatus) -> List[TicketStatus]:
        if target == current:
            return []
        if current in _FORWARD_PATH and target in _FORWARD_PATH:
            start = _FORWARD_PATH.index(current)
            end = _FORWARD_PATH.index(target)
            if end > start:
                return _FORWARD_PATH[start + 1:end + 1]
        return [target]

    async def _settle(
        self,
        ticket: Ticket,
        responses: List[UtilityResponse],
        open_conflicts: int,
        actor: str,
        now: datetime,
        result: TransitionResult
    ) -> None:
        target = self._derive_status(ticket, responses, open_conflicts)
        for step in self._path_to(ticket.status, target):
            self._check_move(ticket, step, responses, open_conflicts)
            await self._move(ticket, step, actor, self._reason_for(step), now, result)
        self._refresh_derived(ticket, responses, open_conflicts, now)

    def _check_move(
        self,
        ticket: Ticket,
        new_status: TicketStatus,
        responses: List[UtilityResponse],
        open_conflicts: int
    ) -> None:
        if new_status not in TICKET_TRANSITIONS[ticket.status]:
            raise InvalidTransition(ticket.status, new_status)
        if ticket.status == TicketStatus.CONFLICT and new_status in (
            TicketStatus.IN_PROGRESS, TicketStatus.CLEAR
        ):
            if open_conflicts:
                raise InvalidTransition(
                    ticket.status, new_status, f"{open_conflicts} conflict(s) still open"
                )
        if new_status == TicketStatus.CLEAR:
            if not responses or not all(r.response_status in CLEARED_STATUSES for r in responses):
                raise InvalidTransition(ticket.status, new_status, "utilities still outstanding")

    @staticmethod
    def _check_response_move(response: UtilityResponse, new_status: ResponseStatus) -> None:
        if new_status not in RESPONSE_TRANSITIONS[response.response_status]:
            raise InvalidTransition(
                response.response_status, new_status,
                f"utility {response.utility_code}",
            )

    async def _move(
        self,
        ticket: Ticket,
        new_status: TicketStatus,
        actor: str,
        reason: Optional[str],
        now: datetime,
        result: TransitionResult
    ) -> None:
        old_status = ticket.status
        ticket.status = new_status
        ticket.status_changed_at = now
        transition = await self.timeline.record_transition(
            ticket.id, old_status, new_status, actor, reason, now
        )
        result.transitions.append(transition)
        logger.info(
            "Ticket %s: %s -> %s (%s)",
            ticket.ticket_number, old_status.value, new_status.value, reason or actor,
        )

    def _refresh_derived(
        self,
        ticket: Ticket,
        responses: List[UtilityResponse],
        open_conflicts: int,
        now: datetime
    ) -> None:
        ticket.total_utilities = len(responses)
        ticket.responded_utilities = sum(1 for r in responses if r.has_responded)
        ticket.has_gas_utility = any(r.utility_type == UtilityType.GAS for r in responses)
        ticket.has_electric_utility = any(r.utility_type == UtilityType.ELECTRIC for r in responses)
        ticket.risk_score = self.risk.score(ticket, responses, now, open_conflicts).total

    @staticmethod
    def _reason_for(status: TicketStatus) -> str:
        return {
            TicketStatus.PENDING: "Waiting on utility responses",
            TicketStatus.IN_PROGRESS: "Utility response received",
            TicketStatus.CLEAR: "All utilities clear or marked",
            TicketStatus.CONFLICT: "Utility conflict",
        }.get(status, status.value)

    async def _detect_conflicts(self, result: TransitionResult, now: datetime) -> None:
        if self.conflict_detector is None or result.ticket.is_terminal:
            return
        detected = await self.conflict_detector.detect(result.ticket.id, now)
        if detected:
            flagged = await self.tickets.get(result.ticket.id)
            for event in detected:
                if event.transition is not None:
                    result.transitions.append(event.transition)
            result.ticket = flagged

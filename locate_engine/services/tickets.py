"""
Locate Engine Ticket Service

Intake, status, utility responses, field verification and renewal.

Pattern:
- Deadlines are stamped once at intake and never recomputed
- Status changes go through the state machine
- Event alerts (CONFLICT, ALL_CLEAR, RESPONSE_RECEIVED) are evaluated
  right after the write that caused them
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..clock import utcnow
from ..models.alert import TicketAlert
from ..models.ticket import (
    SYSTEM_ACTOR,
    AuditEventType,
    DigSite,
    ResponseEvidence,
    ResponseStatus,
    ResponseType,
    Ticket,
    TicketStatus,
    UtilityResponse,
    UtilityType,
    WorkType,
)
from .deadline import DeadlineCalculator, DeadlineComputationError
from .readiness import DigReadiness, assess_dig_readiness
from .risk import RiskLevel, risk_level
from .state_machine import InvalidTransition


logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST / VIEW MODELS
# =============================================================================

class UtilityListing(BaseModel):
    """A utility notified by the one-call center."""
    code: str
    name: str
    utility_type: UtilityType = UtilityType.OTHER


class CreateTicket(BaseModel):
    ticket_number: str
    organization_id: UUID
    project_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    dig_site: DigSite
    work_type: WorkType = WorkType.EXCAVATION
    excavator_company: Optional[str] = None
    requires_update_by: bool = False
    utilities: List[UtilityListing] = Field(default_factory=list)

    @field_validator("utilities")
    @classmethod
    def _unique_codes(cls, utilities: List[UtilityListing]) -> List[UtilityListing]:
        codes = [u.code for u in utilities]
        if len(codes) != len(set(codes)):
            raise ValueError("Utility codes must be unique per ticket")
        return utilities


class TicketStatusView(BaseModel):
    """What a crew or dispatcher needs to know about one ticket right now."""
    id: UUID
    ticket_number: str
    status: TicketStatus
    risk_score: int
    risk_level: RiskLevel
    legal_dig_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    update_by_date: Optional[datetime] = None
    response_window_closes_at: Optional[datetime] = None
    total_utilities: int
    responded_utilities: int
    open_conflicts: int
    needs_review: bool
    review_reason: Optional[str] = None
    parent_ticket_id: Optional[UUID] = None
    renewal_number: int = 0
    readiness: DigReadiness
    responses: List[UtilityResponse] = Field(default_factory=list)


# =============================================================================
# SERVICE
# =============================================================================

class TicketService:
    """
    Ticket operations exposed to callers.

    Example:
        ticket = await service.create_ticket(CreateTicket(...), actor="intake")
        alert = await service.record_utility_response(
            ticket.id, "WVAPCO", ResponseType.MARKED
        )
    """

    def __init__(
        self,
        store,
        calculator: DeadlineCalculator,
        state_machine,
        resolver,
        scheduler,
        acknowledgements,
        timeline
    ):
        self.tickets = store.tickets
        self.responses = store.responses
        self.calculator = calculator
        self.state_machine = state_machine
        self.resolver = resolver
        self.scheduler = scheduler
        self.acknowledgements = acknowledgements
        self.timeline = timeline

    async def create_ticket(
        self,
        request: CreateTicket,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> Ticket:
        """
        Stamp deadlines, store the ticket and one PENDING response per utility.

        When deadlines cannot be computed the intake is still stored,
        flagged for review, and DeadlineComputationError is raised with
        its ticket_id set.
        """
        return await self._create(request, actor, now or utcnow())

    async def get_ticket_status(
        self,
        ticket_id: UUID,
        now: Optional[datetime] = None
    ) -> TicketStatusView:
        now = now or utcnow()
        ticket = await self.tickets.get(ticket_id)
        responses = await self.responses.list_for_ticket(ticket_id)
        open_conflicts = len(await self.resolver.open_conflicts(ticket_id))

        score = self.state_machine.risk.score(ticket, responses, now, open_conflicts)
        return TicketStatusView(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            status=ticket.status,
            risk_score=score.total,
            risk_level=risk_level(score.total),
            legal_dig_date=ticket.legal_dig_date,
            expires_at=ticket.expires_at,
            update_by_date=ticket.update_by_date,
            response_window_closes_at=ticket.response_window_closes_at,
            total_utilities=ticket.total_utilities,
            responded_utilities=ticket.responded_utilities,
            open_conflicts=open_conflicts,
            needs_review=ticket.needs_review,
            review_reason=ticket.review_reason,
            parent_ticket_id=ticket.parent_ticket_id,
            renewal_number=ticket.renewal_number,
            readiness=assess_dig_readiness(ticket, responses, now, open_conflicts),
            responses=responses,
        )

    async def list_tickets_for_review(self, organization_id: Optional[UUID] = None) -> List[Ticket]:
        """Flagged tickets, including intakes held without deadlines."""
        return await self.tickets.list_needing_review(organization_id)

    async def record_utility_response(
        self,
        ticket_id: UUID,
        utility_code: str,
        response_type: ResponseType,
        evidence: Optional[ResponseEvidence] = None,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> Optional[TicketAlert]:
        """Apply a utility reply; returns the most urgent alert it triggered."""
        now = now or utcnow()
        await self.state_machine.apply_response(
            ticket_id, utility_code, response_type,
            evidence=evidence, actor=actor, now=now,
        )
        return await self.scheduler.evaluate_ticket_events(ticket_id, now)

    async def record_field_verification(
        self,
        ticket_id: UUID,
        utility_code: str,
        verified_by: UUID,
        marks_match: bool,
        notes: Optional[str] = None,
        photo_refs: Optional[List[str]] = None,
        now: Optional[datetime] = None
    ) -> Ticket:
        """
        Crew checked a utility's marks on site.

        A match moves the response to VERIFIED_ON_SITE. A mismatch opens
        a FIELD_VERIFICATION_MISMATCH conflict, even on a CLEAR ticket.
        """
        now = now or utcnow()
        photo_refs = list(photo_refs or [])
        ticket = await self.tickets.get(ticket_id)
        if ticket.is_terminal:
            raise InvalidTransition(
                ticket.status, ticket.status,
                f"ticket {ticket.ticket_number} is {ticket.status.value}",
            )
        response = await self.responses.get_by_code(ticket_id, utility_code)

        await self.timeline.add_event(
            ticket_id=ticket_id,
            event_type=AuditEventType.FIELD_VERIFICATION,
            content=(
                f"Field check of {response.utility_name}: "
                f"{'marks match' if marks_match else 'MISMATCH'}"
            ),
            actor=str(verified_by),
            data={
                "utility_code": utility_code,
                "marks_match": marks_match,
                "notes": notes,
                "photo_refs": photo_refs,
            },
            at=now,
        )

        if marks_match:
            await self.state_machine.set_response_status(
                ticket_id, response.id, ResponseStatus.VERIFIED_ON_SITE,
                actor=str(verified_by), now=now,
                notes=notes, verified_by=verified_by,
            )
        else:
            await self.resolver.record_field_mismatch(
                ticket_id, response, verified_by, notes, photo_refs, now
            )

        await self.scheduler.evaluate_ticket_events(ticket_id, now)
        return await self.tickets.get(ticket_id)

    async def renew_ticket(
        self,
        parent_id: UUID,
        actor: str,
        ticket_number: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Ticket:
        """
        Human-initiated renewal.

        The renewal is a new ticket with fresh deadlines and the same
        utilities; it records the parent by id only.
        """
        now = now or utcnow()
        parent = await self.tickets.get(parent_id)
        if parent.status == TicketStatus.CANCELLED:
            raise InvalidTransition(parent.status, parent.status, "cancelled tickets cannot be renewed")

        renewal_number = parent.renewal_number + 1
        utilities = [
            UtilityListing(code=r.utility_code, name=r.utility_name, utility_type=r.utility_type)
            for r in await self.responses.list_for_ticket(parent_id)
        ]
        request = CreateTicket(
            ticket_number=ticket_number or f"{parent.ticket_number}-R{renewal_number}",
            organization_id=parent.organization_id,
            project_id=parent.project_id,
            created_by=parent.created_by,
            dig_site=parent.dig_site,
            work_type=parent.work_type,
            excavator_company=parent.excavator_company,
            requires_update_by=parent.requires_update_by,
            utilities=utilities,
        )
        renewal = await self._create(
            request, actor, now,
            parent_ticket_id=parent.id, renewal_number=renewal_number,
        )

        await self.timeline.add_event(
            ticket_id=parent.id,
            event_type=AuditEventType.RENEWED,
            content=f"Renewed as ticket {renewal.ticket_number}",
            actor=actor,
            data={"renewal_ticket_id": str(renewal.id), "renewal_number": renewal_number},
            at=now,
        )
        logger.info("Ticket %s renewed as %s", parent.ticket_number, renewal.ticket_number)
        return renewal

    async def cancel_ticket(
        self,
        ticket_id: UUID,
        actor: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Ticket:
        now = now or utcnow()
        result = await self.state_machine.cancel(ticket_id, actor=actor, reason=reason, now=now)
        superseded = await self.acknowledgements.supersede_for_ticket(ticket_id, now)
        if superseded:
            logger.info(
                "Ticket %s cancelled; %d pending acknowledgement(s) superseded",
                result.ticket.ticket_number, superseded,
            )
        return result.ticket

    # =========================================================================
    # Private methods
    # =========================================================================

    async def _create(
        self,
        request: CreateTicket,
        actor: str,
        now: datetime,
        parent_ticket_id: Optional[UUID] = None,
        renewal_number: int = 0
    ) -> Ticket:
        try:
            deadlines = self.calculator.compute(now, request.requires_update_by)
        except DeadlineComputationError as exc:
            held = await self._hold_for_review(
                request, actor, now, str(exc), parent_ticket_id, renewal_number
            )
            exc.ticket_id = held.id
            raise

        ticket = self._new_ticket(request, now, parent_ticket_id, renewal_number)
        ticket.legal_dig_date = deadlines.legal_dig_date
        ticket.expires_at = deadlines.expires_at
        ticket.update_by_date = deadlines.update_by_date
        ticket.response_window_closes_at = deadlines.response_window_closes_at
        ticket = await self.tickets.add(ticket)
        await self._audit_received(ticket, request, actor, now)

        await self.timeline.add_system_event(
            ticket.id,
            "Deadlines stamped",
            event_type=AuditEventType.DEADLINES_STAMPED,
            data=deadlines.model_dump(mode="json"),
            at=now,
        )

        await self.responses.add_many(
            UtilityResponse(
                ticket_id=ticket.id,
                utility_code=utility.code,
                utility_name=utility.name,
                utility_type=utility.utility_type,
                response_window_opens_at=deadlines.response_window_opens_at,
                response_window_closes_at=deadlines.response_window_closes_at,
                updated_at=now,
            )
            for utility in request.utilities
        )

        if request.utilities:
            await self.state_machine.initialize(ticket.id, actor=actor, now=now)
        else:
            await self.state_machine.refresh_risk(ticket.id, now)
            await self.state_machine.flag_for_review(ticket.id, "No utilities listed on ticket", now)

        logger.info(
            "Ticket %s created: dig %s, expires %s, %d utilities",
            ticket.ticket_number,
            deadlines.legal_dig_date.isoformat(),
            deadlines.expires_at.isoformat(),
            len(request.utilities),
        )
        return await self.tickets.get(ticket.id)

    async def _hold_for_review(
        self,
        request: CreateTicket,
        actor: str,
        now: datetime,
        reason: str,
        parent_ticket_id: Optional[UUID],
        renewal_number: int
    ) -> Ticket:
        """
        Keep an intake whose deadlines could not be computed.

        The ticket stays RECEIVED with no deadlines and no response rows,
        so no sweep picks it up until someone re-enters it.
        """
        ticket = await self.tickets.add(
            self._new_ticket(request, now, parent_ticket_id, renewal_number)
        )
        await self._audit_received(ticket, request, actor, now)
        return await self.state_machine.flag_for_review(
            ticket.id, f"Deadline computation failed: {reason}", now
        )

    async def _audit_received(
        self,
        ticket: Ticket,
        request: CreateTicket,
        actor: str,
        now: datetime
    ) -> None:
        await self.timeline.add_event(
            ticket_id=ticket.id,
            event_type=AuditEventType.TICKET_CREATED,
            content=f"Ticket {ticket.ticket_number} received at {ticket.dig_site.display}",
            actor=actor,
            data={"utilities": [u.code for u in request.utilities]},
            at=now,
        )

    @staticmethod
    def _new_ticket(
        request: CreateTicket,
        now: datetime,
        parent_ticket_id: Optional[UUID],
        renewal_number: int
    ) -> Ticket:
        return Ticket(
            ticket_number=request.ticket_number,
            organization_id=request.organization_id,
            project_id=request.project_id,
            created_by=request.created_by,
            dig_site=request.dig_site,
            work_type=request.work_type,
            excavator_company=request.excavator_company,
            requires_update_by=request.requires_update_by,
            created_at=now,
            status=TicketStatus.RECEIVED,
            status_changed_at=now,
            parent_ticket_id=parent_ticket_id,
            renewal_number=renewal_number,
        )

"""
Locate Engine

Wires the services together over one store and exposes the core
operations: intake, status, responses, acknowledgements and sweeps.

Sweep order for a full run:
    expiry -> alerts -> escalation -> digest

Each sweep is a stateless call over (now, store). A SystemicError
aborts that sweep only; it is retried on the next run.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from .clock import utcnow
from .config import Settings, get_settings
from .models.alert import (
    AckAction,
    AckOutcome,
    AlertChannel,
    AlertDelivery,
    AlertSubscription,
    DeliveryStatus,
    TicketAlert,
    UserAlertPreferences,
)
from .models.ticket import (
    SYSTEM_ACTOR,
    AuditEvent,
    AuditEventType,
    ConflictResolutionType,
    ResponseEvidence,
    ResponseType,
    Ticket,
)
from .repositories import InMemoryStore, SystemicError
from .services.alert import AlertScheduler, DueAlert, load_rule_table
from .services.calendar import BusinessCalendar
from .services.conflict import ConflictResolver
from .services.deadline import DeadlineCalculator, JurisdictionRules
from .services.dispatch import AlertDispatcher, TransportSink
from .services.escalation import AcknowledgementService
from .services.messages import MessageRenderer
from .services.risk import RiskScorer
from .services.state_machine import TicketStateMachine, TransitionResult
from .services.sweep import SweepReport
from .services.tickets import CreateTicket, TicketService, TicketStatusView
from .services.timeline import TimelineService


logger = logging.getLogger(__name__)


SWEEP_KINDS = ("expiry", "alerts", "escalation", "digest")


class LocateEngine:
    """Facade over the locate services."""

    def __init__(
        self,
        settings: Settings,
        store: InMemoryStore,
        calendar: BusinessCalendar,
        timeline: TimelineService,
        state_machine: TicketStateMachine,
        resolver: ConflictResolver,
        dispatcher: AlertDispatcher,
        acknowledgements: AcknowledgementService,
        scheduler: AlertScheduler,
        tickets: TicketService
    ):
        self.settings = settings
        self.store = store
        self.calendar = calendar
        self.timeline = timeline
        self.state_machine = state_machine
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.acknowledgements = acknowledgements
        self.scheduler = scheduler
        self.tickets = tickets

    # =========================================================================
    # Tickets
    # =========================================================================

    async def create_ticket(
        self,
        request: CreateTicket,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> Ticket:
        return await self.tickets.create_ticket(request, actor=actor, now=now)

    async def get_ticket_status(self, ticket_id: UUID, now: Optional[datetime] = None) -> TicketStatusView:
        return await self.tickets.get_ticket_status(ticket_id, now=now)

    async def list_tickets_for_review(self, organization_id: Optional[UUID] = None) -> List[Ticket]:
        return await self.tickets.list_tickets_for_review(organization_id)

    async def record_utility_response(
        self,
        ticket_id: UUID,
        utility_code: str,
        response_type: ResponseType,
        evidence: Optional[ResponseEvidence] = None,
        actor: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> Optional[TicketAlert]:
        return await self.tickets.record_utility_response(
            ticket_id, utility_code, response_type, evidence=evidence, actor=actor, now=now
        )

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
        return await self.tickets.record_field_verification(
            ticket_id, utility_code, verified_by, marks_match,
            notes=notes, photo_refs=photo_refs, now=now,
        )

    async def resolve_conflict(
        self,
        conflict_id: UUID,
        resolved_by: UUID,
        resolution_type: ConflictResolutionType,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        now = now or utcnow()
        result = await self.resolver.resolve(conflict_id, resolved_by, resolution_type, notes, now)
        await self.scheduler.evaluate_ticket_events(result.ticket.id, now)
        return result

    async def cancel_ticket(
        self,
        ticket_id: UUID,
        actor: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Ticket:
        return await self.tickets.cancel_ticket(ticket_id, actor, reason=reason, now=now)

    async def renew_ticket(
        self,
        ticket_id: UUID,
        actor: str,
        ticket_number: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Ticket:
        return await self.tickets.renew_ticket(ticket_id, actor, ticket_number=ticket_number, now=now)

    async def get_timeline(
        self,
        ticket_id: UUID,
        event_types: Optional[List[AuditEventType]] = None
    ) -> List[AuditEvent]:
        await self.store.tickets.get(ticket_id)
        return await self.timeline.get_timeline(ticket_id, event_types)

    # =========================================================================
    # Alerts
    # =========================================================================

    async def report_emergency(
        self,
        ticket_id: UUID,
        actor: str,
        description: str,
        now: Optional[datetime] = None
    ) -> TicketAlert:
        return await self.scheduler.emit_emergency(ticket_id, actor, description, now=now)

    async def acknowledge_alert(
        self,
        alert_id: UUID,
        user_id: UUID,
        action: Optional[AckAction] = None,
        now: Optional[datetime] = None
    ) -> AckOutcome:
        return await self.acknowledgements.acknowledge(alert_id, user_id, action=action, now=now)

    async def mark_alert_opened(self, alert_id: UUID, user_id: UUID, now: Optional[datetime] = None):
        return await self.acknowledgements.mark_opened(alert_id, user_id, now=now)

    async def record_delivery_status(
        self,
        delivery_id: UUID,
        status: DeliveryStatus,
        provider_message_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AlertDelivery:
        now = now or utcnow()
        delivery = await self.dispatcher.record_delivery_status(
            delivery_id, status, provider_message_id=provider_message_id, reason=reason, now=now
        )
        if status == DeliveryStatus.DELIVERED:
            await self.acknowledgements.mark_delivered(delivery.alert_id, delivery.user_id, now=now)
        return delivery

    async def list_due_alerts(self, now: Optional[datetime] = None) -> List[DueAlert]:
        return await self.scheduler.list_due_alerts(now or utcnow())

    async def subscribe(self, subscription: AlertSubscription) -> AlertSubscription:
        return await self.store.subscriptions.add(subscription)

    async def set_preferences(self, prefs: UserAlertPreferences) -> None:
        await self.store.subscriptions.set_preferences(prefs)

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def run_sweep(
        self,
        kind: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[SweepReport]:
        """
        Run one sweep kind, or all of them in order when kind is None.

        Returns one report per sweep run (expiry runs two: tickets and
        response windows).
        """
        if kind is not None and kind not in SWEEP_KINDS:
            raise ValueError(f"Unknown sweep kind {kind!r}; expected one of {', '.join(SWEEP_KINDS)}")
        now = now or utcnow()
        kinds = [kind] if kind else list(SWEEP_KINDS)

        sweeps = {
            "expiry": [
                ("expiry", self.state_machine.auto_expire),
                ("response_window", self.state_machine.lapse_response_windows),
            ],
            "alerts": [("alerts", self.scheduler.run_sweep)],
            "escalation": [("escalation", self.acknowledgements.run_escalation_sweep)],
            "digest": [("digest", self.scheduler.run_digest_sweep)],
        }

        reports = []
        for name in kinds:
            for label, sweep in sweeps[name]:
                reports.append(await self._run_guarded(label, sweep, now))
        return reports

    async def _run_guarded(self, label: str, sweep, now: datetime) -> SweepReport:
        try:
            return await sweep(now)
        except SystemicError as exc:
            logger.error("%s sweep aborted: %s", label, exc)
            return SweepReport(kind=label, started_at=now, aborted=True, abort_reason=str(exc))


def build_engine(
    settings: Optional[Settings] = None,
    sinks: Optional[Dict[AlertChannel, TransportSink]] = None,
    store: Optional[InMemoryStore] = None,
    calendar: Optional[BusinessCalendar] = None
) -> LocateEngine:
    """
    Assemble an engine from settings.

    Example:
        engine = build_engine(sinks={AlertChannel.SMS: sms_sink})
        ticket = await engine.create_ticket(CreateTicket(...))
    """
    settings = settings or get_settings()
    store = store or InMemoryStore()
    calendar = calendar or BusinessCalendar.from_settings(settings)
    rules = load_rule_table(settings)

    timeline = TimelineService(store.audit)
    state_machine = TicketStateMachine(
        store, timeline, RiskScorer(), sweep_concurrency=settings.sweep_concurrency
    )
    resolver = ConflictResolver(store, state_machine, timeline)
    state_machine.conflict_detector = resolver

    renderer = MessageRenderer(settings.one_call_center, calendar)
    dispatcher = AlertDispatcher.from_settings(settings, store, timeline, sinks=sinks)
    acknowledgements = AcknowledgementService(
        store,
        timeline,
        dispatcher,
        renderer,
        ack_deadline_minutes=settings.ack_deadline_minutes,
        sweep_concurrency=settings.sweep_concurrency,
        rule_version=rules.version,
    )
    scheduler = AlertScheduler(
        store,
        state_machine,
        dispatcher,
        acknowledgements,
        renderer,
        calendar,
        rules,
        expired_lookback_hours=settings.expired_alert_lookback_hours,
        max_dispatches_per_sweep=settings.max_dispatches_per_sweep,
        sweep_concurrency=settings.sweep_concurrency,
        high_risk_threshold=settings.high_risk_threshold,
    )
    tickets = TicketService(
        store,
        DeadlineCalculator(calendar, JurisdictionRules.from_settings(settings)),
        state_machine,
        resolver,
        scheduler,
        acknowledgements,
        timeline,
    )

    return LocateEngine(
        settings=settings,
        store=store,
        calendar=calendar,
        timeline=timeline,
        state_machine=state_machine,
        resolver=resolver,
        dispatcher=dispatcher,
        acknowledgements=acknowledgements,
        scheduler=scheduler,
        tickets=tickets,
    )

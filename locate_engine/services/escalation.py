"""
Locate Engine Acknowledgement & Escalation

Critical alerts must be explicitly acknowledged.

Per recipient:  SENT -> DELIVERED -> OPENED -> ACKNOWLEDGED
Past deadline:  SENT | DELIVERED | OPENED -> ESCALATED
Ticket gone:    SENT | DELIVERED | OPENED -> SUPERSEDED

Escalation targets the recipient's supervisor, else the organization's
escalation contacts. One ESCALATION alert per original alert, however
many recipients missed the deadline.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID

from ..clock import utcnow
from ..models.alert import (
    ALL_CHANNELS,
    AckAction,
    AckOutcome,
    AckStatus,
    AlertAcknowledgement,
    AlertChannel,
    AlertPriority,
    AlertType,
    TicketAlert,
)
from ..models.ticket import AuditEventType, Ticket, TicketStatus
from ..repositories import ConcurrentUpdateError, DuplicateAlertSuppressed
from .dispatch import DeliveryTarget, delivery_targets
from .sweep import SweepReport, fan_out


logger = logging.getLogger(__name__)


class AcknowledgementService:
    """
    Tracks acknowledgements and escalates the ones that miss their deadline.

    The escalation sweep and a late acknowledge() can race on the same
    row; the version check on save decides, and an acknowledgement
    after escalation is still recorded.
    """

    def __init__(
        self,
        store,
        timeline,
        dispatcher,
        renderer,
        ack_deadline_minutes: int = 15,
        sweep_concurrency: int = 10,
        rule_version: str = "builtin"
    ):
        self.acks = store.acks
        self.alerts = store.alerts
        self.tickets = store.tickets
        self.subscriptions = store.subscriptions
        self.timeline = timeline
        self.dispatcher = dispatcher
        self.renderer = renderer
        self.ack_deadline = timedelta(minutes=ack_deadline_minutes)
        self.sweep_concurrency = sweep_concurrency
        self.rule_version = rule_version

    async def track(self, alert: TicketAlert, now: datetime) -> List[AlertAcknowledgement]:
        """One acknowledgement row per recipient of an ack-required alert."""
        if not alert.requires_explicit_ack:
            return []
        rows = []
        for user_id in alert.recipient_ids:
            row = AlertAcknowledgement(
                alert_id=alert.id,
                ticket_id=alert.ticket_id,
                organization_id=alert.organization_id,
                user_id=user_id,
                sent_via=list(alert.channels),
                sent_at=now,
                ack_deadline=now + self.ack_deadline,
            )
            rows.append(await self.acks.add(row))
        return rows

    async def mark_delivered(
        self,
        alert_id: UUID,
        user_id: UUID,
        now: Optional[datetime] = None
    ) -> Optional[AlertAcknowledgement]:
        row = await self.acks.find(alert_id, user_id)
        if row is None or row.status != AckStatus.SENT:
            return row
        row.status = AckStatus.DELIVERED
        row.delivered_at = now or utcnow()
        return await self._save_quietly(row)

    async def mark_opened(
        self,
        alert_id: UUID,
        user_id: UUID,
        now: Optional[datetime] = None
    ) -> Optional[AlertAcknowledgement]:
        row = await self.acks.find(alert_id, user_id)
        if row is None or row.status not in (AckStatus.SENT, AckStatus.DELIVERED):
            return row
        now = now or utcnow()
        row.status = AckStatus.OPENED
        row.delivered_at = row.delivered_at or now
        row.opened_at = now
        return await self._save_quietly(row)

    async def acknowledge(
        self,
        alert_id: UUID,
        user_id: UUID,
        action: Optional[AckAction] = None,
        now: Optional[datetime] = None
    ) -> AckOutcome:
        """
        Record that a recipient acted on an alert.

        OK                   - recorded (also after escalation)
        ALREADY_ACKNOWLEDGED - idempotent repeat
        EXPIRED              - superseded by a cancelled ticket
        """
        now = now or utcnow()
        alert = await self.alerts.get(alert_id)

        for _ in range(2):
            row = await self.acks.find(alert_id, user_id)
            if row is None:
                row = await self.acks.add(AlertAcknowledgement(
                    alert_id=alert_id,
                    ticket_id=alert.ticket_id,
                    organization_id=alert.organization_id,
                    user_id=user_id,
                    requires_explicit_ack=False,
                    sent_via=list(alert.channels),
                    sent_at=alert.created_at,
                    ack_deadline=alert.created_at + self.ack_deadline,
                ))

            if row.status == AckStatus.ACKNOWLEDGED:
                return AckOutcome.ALREADY_ACKNOWLEDGED
            if row.status == AckStatus.SUPERSEDED:
                return AckOutcome.EXPIRED

            was_escalated = row.status == AckStatus.ESCALATED
            row.status = AckStatus.ACKNOWLEDGED
            row.acknowledged_at = now
            row.acknowledged_action = action
            try:
                await self.acks.save(row)
            except ConcurrentUpdateError:
                # Escalation sweep got there first; re-read and retry
                continue
            break
        else:
            raise ConcurrentUpdateError(f"Acknowledgement for alert {alert_id} kept changing")

        content = f"{alert.alert_type.value} alert acknowledged"
        if action is not None:
            content = f"{content} ({action.value})"
        if was_escalated:
            content = f"{content} after escalation"
        await self.timeline.add_event(
            ticket_id=alert.ticket_id,
            event_type=AuditEventType.ACKNOWLEDGED,
            content=content,
            actor=str(user_id),
            data={
                "alert_id": str(alert_id),
                "action": action.value if action else None,
                "after_escalation": was_escalated,
            },
            at=now,
        )
        return AckOutcome.OK

    async def supersede_for_ticket(self, ticket_id: UUID, now: datetime) -> int:
        """Rows still awaiting ack on a cancelled ticket stop counting."""
        superseded = 0
        for row in await self.acks.list_awaiting_for_ticket(ticket_id):
            row.status = AckStatus.SUPERSEDED
            row.escalation_reason = "Ticket cancelled"
            if await self._save_quietly(row) is not None:
                superseded += 1
        return superseded

    async def run_escalation_sweep(self, now: datetime) -> SweepReport:
        report = SweepReport(kind="escalation", started_at=now)
        overdue = await self.acks.list_overdue(now)

        by_alert: Dict[UUID, List[AlertAcknowledgement]] = defaultdict(list)
        for row in overdue:
            by_alert[row.alert_id].append(row)

        async def escalate(alert_id: UUID):
            return await self._escalate_alert(alert_id, by_alert[alert_id], now, report)

        await fan_out(list(by_alert), escalate, self.sweep_concurrency, report)
        logger.info(report.summary())
        return report

    async def escalate_unreachable(
        self,
        alert: TicketAlert,
        now: datetime,
        report: Optional[SweepReport] = None
    ) -> Optional[TicketAlert]:
        """
        An ack-required or CRITICAL alert that reached nobody escalates at once.

        Covers an alert with no resolved recipients and one whose every
        delivery failed. Targets are the recipients' supervisors, else
        the organization's escalation contacts.
        """
        if alert.alert_type == AlertType.ESCALATION:
            return None
        if not (alert.requires_explicit_ack or alert.priority == AlertPriority.CRITICAL):
            return None
        report = report or SweepReport(kind="escalation", started_at=now)
        ticket = await self.tickets.get(alert.ticket_id) if alert.ticket_id else None

        rows = await self.acks.list_for_alert(alert.id)
        targets = await self._escalation_recipients(alert.organization_id, rows)
        if alert.recipient_ids:
            reason = "Delivery failed to every recipient"
        else:
            reason = "No deliverable recipients"

        if not targets:
            logger.error(
                "%s alert %s on ticket %s reached nobody (%s) and no escalation contact is configured",
                alert.alert_type.value, alert.id,
                ticket.ticket_number if ticket else "-", reason,
            )
            return None

        escalated = await self._mark_escalated(rows, targets, reason, now)
        report.changed += len(escalated)
        missed = [str(user_id) for user_id in alert.recipient_ids]
        subject, body = self.renderer.escalation(ticket, alert, missed, reason=reason)
        return await self._send_escalation(
            alert, ticket, targets, escalated, missed, subject, body, reason, now, report
        )

    # =========================================================================
    # Private methods
    # =========================================================================

    async def _escalate_alert(
        self,
        alert_id: UUID,
        rows: List[AlertAcknowledgement],
        now: datetime,
        report: SweepReport
    ) -> Optional[TicketAlert]:
        original = await self.alerts.get(alert_id)
        ticket = await self.tickets.get(original.ticket_id) if original.ticket_id else None

        if ticket is not None and ticket.status == TicketStatus.CANCELLED:
            for row in rows:
                row.status = AckStatus.SUPERSEDED
                row.escalation_reason = "Ticket cancelled"
                await self._save_quietly(row)
            return None

        targets = await self._escalation_recipients(original.organization_id, rows)
        reason = f"Not acknowledged within {int(self.ack_deadline.total_seconds() // 60)} minutes"

        escalated = await self._mark_escalated(rows, targets, reason, now)
        if not escalated:
            return None
        report.changed += len(escalated)

        missed = [str(row.user_id) for row in escalated]
        subject, body = self.renderer.escalation(ticket, original, missed)
        return await self._send_escalation(
            original, ticket, targets, escalated, missed, subject, body, reason, now, report
        )

    async def _send_escalation(
        self,
        original: TicketAlert,
        ticket: Optional[Ticket],
        targets: List[UUID],
        escalated: List[AlertAcknowledgement],
        missed: List[str],
        subject: str,
        body: str,
        reason: str,
        now: datetime,
        report: SweepReport
    ) -> Optional[TicketAlert]:
        """One ESCALATION alert per original alert, claimed on its dedup key."""
        escalation = TicketAlert(
            ticket_id=original.ticket_id,
            organization_id=original.organization_id,
            user_id=original.user_id,
            alert_type=AlertType.ESCALATION,
            priority=AlertPriority.CRITICAL,
            occurrence_key=str(original.id),
            rule_version=original.rule_version or self.rule_version,
            subject=subject,
            body=body,
            channels=list(ALL_CHANNELS),
            recipient_ids=list(targets),
            escalated_from_alert_id=original.id,
            created_at=now,
        )
        try:
            escalation = await self.alerts.claim(escalation)
        except DuplicateAlertSuppressed as dup:
            logger.debug("Escalation for alert %s already sent as %s", original.id, dup.existing_id)
            report.suppressed += 1
            for row in escalated:
                row.escalation_alert_id = dup.existing_id
                await self._save_quietly(row)
            return None

        for row in escalated:
            row.escalation_alert_id = escalation.id
            await self._save_quietly(row)

        logger.warning(
            "Escalated %s alert %s (missed by %d recipient(s)) to %d target(s)",
            original.alert_type.value, original.id, len(missed), len(targets),
        )
        await self.timeline.add_system_event(
            original.ticket_id,
            f"{original.alert_type.value} alert escalated: {reason}",
            event_type=AuditEventType.ESCALATED,
            data={
                "alert_id": str(original.id),
                "escalation_alert_id": str(escalation.id),
                "missed_by": missed,
                "escalated_to": [str(t) for t in targets],
            },
            at=now,
        )

        await self.dispatcher.note_emitted(escalation, now)
        report.emitted += 1
        outcome = await self.dispatcher.dispatch(
            escalation, await self._delivery_targets(escalation), now
        )
        report.failed_dispatches += len(outcome.failures)
        return outcome.alert

    async def _mark_escalated(
        self,
        rows: List[AlertAcknowledgement],
        targets: List[UUID],
        reason: str,
        now: datetime
    ) -> List[AlertAcknowledgement]:
        escalated = []
        for row in rows:
            row.status = AckStatus.ESCALATED
            row.escalated_at = now
            row.escalated_to = list(targets)
            row.escalation_reason = reason
            saved = await self._save_quietly(row)
            if saved is not None:
                escalated.append(saved)
        return escalated

    async def _escalation_recipients(
        self,
        organization_id: UUID,
        rows: List[AlertAcknowledgement]
    ) -> List[UUID]:
        targets: List[UUID] = []
        for row in rows:
            prefs = await self.subscriptions.get_preferences(row.user_id)
            if prefs.supervisor_id and prefs.supervisor_id not in targets:
                targets.append(prefs.supervisor_id)

        if not targets:
            for sub in await self.subscriptions.list_for_organization(organization_id):
                if sub.escalation_contact and sub.user_id not in targets:
                    targets.append(sub.user_id)
        return targets

    async def _delivery_targets(self, alert: TicketAlert) -> List[DeliveryTarget]:
        subscriptions = await self.subscriptions.list_for_organization(alert.organization_id)
        targets = []
        for user_id in alert.recipient_ids:
            own = [s for s in subscriptions if s.user_id == user_id]
            if not own:
                targets.append(DeliveryTarget(user_id, AlertChannel.IN_APP, str(user_id)))
                continue
            seen = set()
            for sub in own:
                for target in delivery_targets(sub, alert.channels):
                    if target.channel not in seen:
                        seen.add(target.channel)
                        targets.append(target)
        return targets

    async def _save_quietly(self, row: AlertAcknowledgement) -> Optional[AlertAcknowledgement]:
        """Save unless someone else changed the row first."""
        try:
            return await self.acks.save(row)
        except ConcurrentUpdateError:
            current = await self.acks.find(row.alert_id, row.user_id)
            logger.debug(
                "Acknowledgement %s changed concurrently (now %s)",
                row.id, current.status.value if current else "missing",
            )
            return None

"""
Locate Engine Alert Scheduler

Ordered rule table -> due alerts -> deduplicated emission.

Each sweep evaluates every live ticket against the rule table:
- A rule fires once per (ticket, alert type, occurrence). Deadlines
  never move, so the anchor timestamp is the occurrence.
- Claims are compare-and-set on the dedup key, so overlapping sweeps
  and restarts never double-send.
- Position in the table is dispatch priority. Under the per-sweep
  dispatch budget the most urgent alerts go out first.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from ..clock import utcnow
from ..models.alert import (
    ALL_CHANNELS,
    EVENT_TRIGGERS,
    EXPIRY_ALERT_TYPES,
    AlertChannel,
    AlertPriority,
    AlertRule,
    AlertRuleTable,
    AlertSubscription,
    AlertType,
    DigestRule,
    RuleTrigger,
    SubscriptionScope,
    TicketAlert,
    UserAlertPreferences,
    UserAlertRole,
)
from ..models.ticket import (
    ACTIVE_STATUSES,
    ResponseStatus,
    Ticket,
    TicketStatus,
    UtilityResponse,
)
from ..repositories import DuplicateAlertSuppressed
from .dispatch import DeliveryTarget, delivery_targets
from .sweep import SweepReport, fan_out


logger = logging.getLogger(__name__)


DEFAULT_RULE_VERSION = "builtin-2024.1"

_NOT_CLEAR = [
    TicketStatus.RECEIVED, TicketStatus.PENDING,
    TicketStatus.IN_PROGRESS, TicketStatus.CONFLICT,
]


# =============================================================================
# RULE TABLE
# =============================================================================

def default_rule_table(
    high_risk_threshold: int = 70,
    radar_local_hour: int = 6,
    renewal_local_hour: int = 7,
    renewal_window_days: int = 3
) -> AlertRuleTable:
    """Built-in rules, most urgent first."""
    no_email = [AlertChannel.SMS, AlertChannel.PUSH, AlertChannel.IN_APP]
    return AlertRuleTable(
        version=DEFAULT_RULE_VERSION,
        rules=[
            AlertRule(
                alert_type=AlertType.CONFLICT, priority=AlertPriority.CRITICAL,
                trigger=RuleTrigger.STATUS_ENTERED, status=TicketStatus.CONFLICT,
                requires_explicit_ack=True,
            ),
            AlertRule(
                alert_type=AlertType.OVERDUE, priority=AlertPriority.CRITICAL,
                trigger=RuleTrigger.PAST_EXPIRATION,
                applies_to=_NOT_CLEAR + [TicketStatus.CLEAR, TicketStatus.EXPIRED],
                requires_explicit_ack=True,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_2_EXPIRATION, priority=AlertPriority.CRITICAL,
                trigger=RuleTrigger.BEFORE_EXPIRATION, window_hours=2,
            ),
            AlertRule(
                alert_type=AlertType.AT_UPDATE_BY, priority=AlertPriority.CRITICAL,
                trigger=RuleTrigger.PAST_UPDATE_BY,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_2_UPDATE_BY, priority=AlertPriority.CRITICAL,
                trigger=RuleTrigger.BEFORE_UPDATE_BY, window_hours=2,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_2, priority=AlertPriority.CRITICAL,
                trigger=RuleTrigger.BEFORE_LEGAL_DIG, window_hours=2,
                applies_to=list(_NOT_CLEAR), channels=no_email,
                requires_explicit_ack=True,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_4_EXPIRATION, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.BEFORE_EXPIRATION, window_hours=4, floor_hours=2,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_4_UPDATE_BY, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.BEFORE_UPDATE_BY, window_hours=4, floor_hours=2,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_4, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.BEFORE_LEGAL_DIG, window_hours=4, floor_hours=2,
                channels=[AlertChannel.SMS, AlertChannel.IN_APP],
            ),
            AlertRule(
                alert_type=AlertType.SAME_DAY, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.LEGAL_DIG_TODAY,
            ),
            AlertRule(
                alert_type=AlertType.HIGH_RISK, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.RISK_AT_LEAST, risk_threshold=high_risk_threshold,
            ),
            AlertRule(
                alert_type=AlertType.UNVERIFIED_RESPONSE, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.RESPONSE_WINDOW_LAPSED,
            ),
            AlertRule(
                alert_type=AlertType.EXPIRING_SOON, priority=AlertPriority.WARNING,
                trigger=RuleTrigger.BEFORE_EXPIRATION, window_hours=48, floor_hours=4,
            ),
            AlertRule(
                alert_type=AlertType.HOURS_24, priority=AlertPriority.INFO,
                trigger=RuleTrigger.BEFORE_LEGAL_DIG, window_hours=24, floor_hours=4,
                channels=[AlertChannel.EMAIL, AlertChannel.IN_APP],
            ),
            AlertRule(
                alert_type=AlertType.HOURS_48, priority=AlertPriority.INFO,
                trigger=RuleTrigger.BEFORE_LEGAL_DIG, window_hours=48, floor_hours=24,
                channels=[AlertChannel.EMAIL],
            ),
            AlertRule(
                alert_type=AlertType.ALL_CLEAR, priority=AlertPriority.INFO,
                trigger=RuleTrigger.STATUS_ENTERED, status=TicketStatus.CLEAR,
            ),
            AlertRule(
                alert_type=AlertType.RESPONSE_RECEIVED, priority=AlertPriority.INFO,
                trigger=RuleTrigger.RESPONSE_RECEIVED,
                channels=[AlertChannel.EMAIL, AlertChannel.IN_APP],
            ),
        ],
        digests=[
            DigestRule(alert_type=AlertType.DAILY_RADAR, local_hour=radar_local_hour),
            DigestRule(
                alert_type=AlertType.RENEWAL_REMINDER,
                local_hour=renewal_local_hour,
                lookahead_days=renewal_window_days,
            ),
        ],
    )


def load_rule_table(settings) -> AlertRuleTable:
    """Rule table from alert_rules_path (JSON), or the built-in one."""
    if settings.alert_rules_path is None:
        return default_rule_table(
            high_risk_threshold=settings.high_risk_threshold,
            radar_local_hour=settings.radar_local_hour,
            renewal_local_hour=settings.renewal_local_hour,
            renewal_window_days=settings.renewal_window_days,
        )
    table = AlertRuleTable.model_validate_json(Path(settings.alert_rules_path).read_text())
    logger.info("Loaded alert rule table %s (%d rules)", table.version, len(table.rules))
    return table


def should_user_receive_alert(
    prefs: UserAlertPreferences,
    priority: AlertPriority,
    alert_type: AlertType,
    now: datetime
) -> bool:
    """
    Role and quiet-mode filtering.

    Order: supervisor override, always-alert flags, quiet mode
    (CRITICAL only), then role (FIELD gets CRITICAL and WARNING).
    """
    if prefs.override_expires_at and prefs.override_expires_at > now:
        return True

    if alert_type in EXPIRY_ALERT_TYPES and prefs.always_alert_on_expired:
        return True
    if alert_type == AlertType.CONFLICT and prefs.always_alert_on_conflict:
        return True
    if alert_type == AlertType.EMERGENCY and prefs.always_alert_on_emergency:
        return True

    if prefs.quiet_mode_enabled:
        if prefs.quiet_mode_until is None or prefs.quiet_mode_until > now:
            return priority == AlertPriority.CRITICAL

    if prefs.alert_role == UserAlertRole.FIELD:
        return priority in (AlertPriority.CRITICAL, AlertPriority.WARNING)

    return True


def subscription_covers(subscription: AlertSubscription, ticket: Ticket) -> bool:
    if subscription.organization_id != ticket.organization_id:
        return False
    if subscription.scope == SubscriptionScope.PROJECT:
        if subscription.project_id is None or subscription.project_id != ticket.project_id:
            return False
    elif subscription.scope == SubscriptionScope.PERSONAL:
        if ticket.created_by != subscription.user_id:
            return False
    if subscription.county and ticket.dig_site.county:
        if subscription.county.strip().lower() != ticket.dig_site.county.strip().lower():
            return False
    return True


# =============================================================================
# SCHEDULER
# =============================================================================

@dataclass
class DueAlert:
    """A rule occurrence that has not been emitted yet."""
    ticket: Ticket
    rule: AlertRule
    occurrence_key: str
    rank: int
    detail: Optional[str] = None

    @property
    def alert_type(self) -> AlertType:
        return self.rule.alert_type

    @property
    def dedup_key(self) -> str:
        return f"{self.ticket.id}:{self.rule.alert_type.value}:{self.occurrence_key}"


class AlertScheduler:
    """
    Evaluates the rule table and emits alerts.

    Runs periodically (every few minutes) and synchronously after
    response writes for the event rules.
    """

    def __init__(
        self,
        store,
        state_machine,
        dispatcher,
        acknowledgements,
        renderer,
        calendar,
        rules: AlertRuleTable,
        expired_lookback_hours: int = 24,
        max_dispatches_per_sweep: int = 200,
        sweep_concurrency: int = 10,
        high_risk_threshold: int = 70
    ):
        self.tickets = store.tickets
        self.responses = store.responses
        self.alerts = store.alerts
        self.subscriptions = store.subscriptions
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.acknowledgements = acknowledgements
        self.renderer = renderer
        self.calendar = calendar
        self.rules = rules
        self.expired_lookback = timedelta(hours=expired_lookback_hours)
        self.max_dispatches = max_dispatches_per_sweep
        self.sweep_concurrency = sweep_concurrency
        self.high_risk_threshold = high_risk_threshold

    # =========================================================================
    # Periodic sweep
    # =========================================================================

    async def list_due_alerts(self, now: datetime) -> List[DueAlert]:
        """Occurrences due now and not yet emitted, most urgent first."""
        report = SweepReport(kind="due_alerts", started_at=now)
        return await self._collect_due(now, report)

    async def run_sweep(self, now: datetime) -> SweepReport:
        report = SweepReport(kind="alerts", started_at=now)

        active = await self.tickets.list_active()
        risk_report = SweepReport(kind="risk", started_at=now)
        await fan_out(
            active,
            lambda ticket: self.state_machine.refresh_risk(ticket.id, now),
            self.sweep_concurrency,
            risk_report,
            describe=lambda ticket: ticket.ticket_number,
        )
        report.errors.extend(risk_report.errors)

        due = await self._collect_due(now, report)
        batch = due[:self.max_dispatches]
        if len(due) > len(batch):
            logger.info(
                "Dispatch budget reached: %d of %d due alerts deferred to the next sweep",
                len(due) - len(batch), len(due),
            )

        examined = report.examined
        await fan_out(
            batch,
            lambda item: self._emit(item, now, report),
            self.sweep_concurrency,
            report,
            describe=lambda item: item.dedup_key,
        )
        report.examined = examined
        logger.info(report.summary())
        return report

    async def evaluate_ticket_events(
        self,
        ticket_id: UUID,
        now: Optional[datetime] = None
    ) -> Optional[TicketAlert]:
        """
        Emit event rules (status entered, response received) for one ticket.

        Returns the most urgent alert emitted, if any.
        """
        now = now or utcnow()
        ticket = await self.tickets.get(ticket_id)
        responses = await self.responses.list_for_ticket(ticket_id)
        report = SweepReport(kind="events", started_at=now)

        due = []
        for rank, rule in enumerate(self.rules.rules):
            if rule.trigger not in EVENT_TRIGGERS:
                continue
            due.extend(await self._due_for_rule(ticket, responses, rule, rank, now))
        due.sort(key=lambda item: item.rank)

        emitted = []
        for item in due:
            alert = await self._emit(item, now, report)
            if alert is not None:
                emitted.append(alert)
        return emitted[0] if emitted else None

    # =========================================================================
    # Digests and emergencies
    # =========================================================================

    async def run_digest_sweep(self, now: datetime) -> SweepReport:
        """DAILY_RADAR and RENEWAL_REMINDER, once per user per local day."""
        report = SweepReport(kind="digest", started_at=now)
        local_now = self.calendar.to_local(now)
        local_day = local_now.date()

        by_user: Dict[UUID, List[AlertSubscription]] = {}
        for sub in await self.subscriptions.list_active():
            by_user.setdefault(sub.user_id, []).append(sub)

        work: List[Tuple[DigestRule, UUID]] = []
        for digest in self.rules.digests:
            if local_now.hour < digest.local_hour:
                continue
            for user_id, subs in by_user.items():
                if any(s.wants(digest.alert_type) for s in subs):
                    work.append((digest, user_id))

        async def send(item: Tuple[DigestRule, UUID]):
            digest, user_id = item
            subs = [s for s in by_user[user_id] if s.wants(digest.alert_type)]
            return await self._emit_digest(digest, user_id, subs, local_day.isoformat(), now, report)

        await fan_out(
            work, send, self.sweep_concurrency, report,
            describe=lambda item: f"{item[1]}:{item[0].alert_type.value}",
        )
        logger.info(report.summary())
        return report

    async def emit_emergency(
        self,
        ticket_id: UUID,
        actor: str,
        description: str,
        now: Optional[datetime] = None
    ) -> TicketAlert:
        """Dig-up / utility strike: CRITICAL alert to every subscriber of the org."""
        now = now or utcnow()
        ticket = await self.tickets.get(ticket_id)
        subject, body = self.renderer.emergency(ticket, actor, description)

        recipient_ids, targets = await self._resolve_recipients(
            ticket, AlertType.EMERGENCY, AlertPriority.CRITICAL, list(ALL_CHANNELS), now,
            respect_scope=False,
        )
        alert = TicketAlert(
            ticket_id=ticket.id,
            organization_id=ticket.organization_id,
            alert_type=AlertType.EMERGENCY,
            priority=AlertPriority.CRITICAL,
            occurrence_key=uuid4().hex,
            rule_version=self.rules.version,
            subject=subject,
            body=body,
            channels=list(ALL_CHANNELS),
            recipient_ids=recipient_ids,
            requires_explicit_ack=True,
            created_at=now,
        )
        alert = await self.alerts.claim(alert)
        logger.warning("EMERGENCY on ticket %s reported by %s: %s", ticket.ticket_number, actor, description)
        return await self._deliver(alert, targets, now, SweepReport(kind="emergency", started_at=now))

    # =========================================================================
    # Rule evaluation
    # =========================================================================

    async def _collect_due(self, now: datetime, report: SweepReport) -> List[DueAlert]:
        tickets = await self.tickets.list_active()
        for expired in await self.tickets.list_by_status([TicketStatus.EXPIRED]):
            if now - expired.expires_at <= self.expired_lookback:
                tickets.append(expired)

        async def evaluate(ticket: Ticket) -> List[DueAlert]:
            responses = await self.responses.list_for_ticket(ticket.id)
            found = []
            for rank, rule in enumerate(self.rules.rules):
                found.extend(await self._due_for_rule(ticket, responses, rule, rank, now))
            return found

        results = await fan_out(
            tickets, evaluate, self.sweep_concurrency, report,
            describe=lambda ticket: ticket.ticket_number,
        )
        due = [item for found in results if found for item in found]
        due.sort(key=lambda item: (item.rank, -item.ticket.risk_score, item.ticket.created_at))
        return due

    async def _due_for_rule(
        self,
        ticket: Ticket,
        responses: List[UtilityResponse],
        rule: AlertRule,
        rank: int,
        now: datetime
    ) -> List[DueAlert]:
        if not self._applies(rule, ticket):
            return []
        due = []
        for key, detail in self._occurrences(rule, ticket, responses, now):
            item = DueAlert(ticket=ticket, rule=rule, occurrence_key=key, rank=rank, detail=detail)
            if not await self.alerts.exists(item.dedup_key):
                due.append(item)
        return due

    @staticmethod
    def _applies(rule: AlertRule, ticket: Ticket) -> bool:
        if rule.applies_to is None:
            return ticket.status in ACTIVE_STATUSES
        return ticket.status in rule.applies_to

    def _occurrences(
        self,
        rule: AlertRule,
        ticket: Ticket,
        responses: List[UtilityResponse],
        now: datetime
    ) -> List[Tuple[str, Optional[str]]]:
        """(occurrence key, detail) pairs for which the rule fires now."""
        trigger = rule.trigger

        if trigger == RuleTrigger.BEFORE_LEGAL_DIG:
            return self._windowed(rule, ticket.legal_dig_date, now)
        if trigger == RuleTrigger.BEFORE_EXPIRATION:
            return self._windowed(rule, ticket.expires_at, now)
        if trigger == RuleTrigger.BEFORE_UPDATE_BY:
            if ticket.update_by_date is None:
                return []
            return self._windowed(rule, ticket.update_by_date, now)

        if trigger == RuleTrigger.LEGAL_DIG_TODAY:
            dig_day = self.calendar.local_date(ticket.legal_dig_date)
            if self.calendar.local_date(now) == dig_day:
                return [(dig_day.isoformat(), None)]
            return []

        if trigger == RuleTrigger.PAST_EXPIRATION:
            if now >= ticket.expires_at:
                return [(ticket.expires_at.isoformat(), None)]
            return []
        if trigger == RuleTrigger.PAST_UPDATE_BY:
            if ticket.update_by_date is not None and now >= ticket.update_by_date:
                return [(ticket.update_by_date.isoformat(), None)]
            return []

        if trigger == RuleTrigger.STATUS_ENTERED:
            if ticket.status == rule.status:
                return [(ticket.status_changed_at.isoformat(), None)]
            return []

        if trigger == RuleTrigger.RISK_AT_LEAST:
            if ticket.risk_score >= rule.risk_threshold:
                return [(f"score>={rule.risk_threshold}", f"Risk score {ticket.risk_score}")]
            return []

        if trigger == RuleTrigger.RESPONSE_RECEIVED:
            return [
                (f"{r.id}@{r.responded_at.isoformat()}", f"{r.utility_name}: {r.response_status.value}")
                for r in responses
                if r.has_responded and r.responded_at is not None
            ]

        if trigger == RuleTrigger.RESPONSE_WINDOW_LAPSED:
            lapsed = [r for r in responses if r.response_status == ResponseStatus.UNVERIFIED]
            if lapsed:
                names = ", ".join(r.utility_name for r in lapsed)
                return [(ticket.response_window_closes_at.isoformat(), f"No response from: {names}")]
            return []

        return []

    @staticmethod
    def _windowed(rule: AlertRule, anchor: datetime, now: datetime) -> List[Tuple[str, Optional[str]]]:
        hours = (anchor - now).total_seconds() / 3600
        if rule.floor_hours < hours <= rule.window_hours:
            return [(anchor.isoformat(), None)]
        return []

    # =========================================================================
    # Emission
    # =========================================================================

    async def _emit(self, item: DueAlert, now: datetime, report: SweepReport) -> Optional[TicketAlert]:
        # Status may have changed since evaluation (cancelled, cleared)
        ticket = await self.tickets.get(item.ticket.id)
        if ticket.status == TicketStatus.CANCELLED or not self._applies(item.rule, ticket):
            logger.debug("Skipping %s: ticket is now %s", item.dedup_key, ticket.status.value)
            return None

        rule = item.rule
        subject, body = self.renderer.ticket_alert(rule.alert_type, ticket, item.detail)
        recipient_ids, targets = await self._resolve_recipients(
            ticket, rule.alert_type, rule.priority, rule.channels, now
        )
        alert = TicketAlert(
            ticket_id=ticket.id,
            organization_id=ticket.organization_id,
            alert_type=rule.alert_type,
            priority=rule.priority,
            occurrence_key=item.occurrence_key,
            rule_version=self.rules.version,
            subject=subject,
            body=body,
            channels=list(rule.channels),
            recipient_ids=recipient_ids,
            requires_explicit_ack=rule.requires_explicit_ack,
            created_at=now,
        )
        try:
            alert = await self.alerts.claim(alert)
        except DuplicateAlertSuppressed as dup:
            logger.debug("Suppressed duplicate %s (existing %s)", dup.dedup_key, dup.existing_id)
            report.suppressed += 1
            return None

        logger.info(
            "Alert %s (%s) for ticket %s to %d recipient(s)",
            rule.alert_type.value, rule.priority.value, ticket.ticket_number, len(recipient_ids),
        )
        return await self._deliver(alert, targets, now, report)

    async def _emit_digest(
        self,
        digest: DigestRule,
        user_id: UUID,
        subscriptions: List[AlertSubscription],
        occurrence_key: str,
        now: datetime,
        report: SweepReport
    ) -> Optional[TicketAlert]:
        if await self.alerts.exists(f"{user_id}:{digest.alert_type.value}:{occurrence_key}"):
            return None

        prefs = await self.subscriptions.get_preferences(user_id)
        if not should_user_receive_alert(prefs, digest.priority, digest.alert_type, now):
            return None

        tickets = await self._tickets_for(subscriptions)
        if digest.alert_type == AlertType.DAILY_RADAR:
            buckets = await self._radar_buckets(tickets, now)
            if not any(buckets.values()):
                return None
            subject, body = self.renderer.daily_radar(occurrence_key, buckets)
        else:
            horizon = now + timedelta(days=digest.lookahead_days)
            renewals = [
                t for t in tickets
                if t.status in ACTIVE_STATUSES and now < t.expires_at <= horizon
            ]
            if not renewals:
                return None
            renewals.sort(key=lambda t: t.expires_at)
            subject, body = self.renderer.renewal_reminder(renewals)

        targets = []
        seen = set()
        for sub in subscriptions:
            for target in delivery_targets(sub, digest.channels):
                if target.channel not in seen:
                    seen.add(target.channel)
                    targets.append(target)

        alert = TicketAlert(
            organization_id=subscriptions[0].organization_id,
            user_id=user_id,
            alert_type=digest.alert_type,
            priority=digest.priority,
            occurrence_key=occurrence_key,
            rule_version=self.rules.version,
            subject=subject,
            body=body,
            channels=list(digest.channels),
            recipient_ids=[user_id] if targets else [],
            created_at=now,
        )
        try:
            alert = await self.alerts.claim(alert)
        except DuplicateAlertSuppressed as dup:
            logger.debug("Suppressed duplicate digest %s", dup.dedup_key)
            report.suppressed += 1
            return None
        return await self._deliver(alert, targets, now, report)

    async def _deliver(
        self,
        alert: TicketAlert,
        targets: List[DeliveryTarget],
        now: datetime,
        report: SweepReport
    ) -> TicketAlert:
        await self.dispatcher.note_emitted(alert, now)
        await self.acknowledgements.track(alert, now)
        report.emitted += 1
        outcome = await self.dispatcher.dispatch(alert, targets, now)
        report.failed_dispatches += len(outcome.failures)
        if not outcome.delivered_any:
            await self.acknowledgements.escalate_unreachable(outcome.alert, now, report)
        return outcome.alert

    async def _resolve_recipients(
        self,
        ticket: Ticket,
        alert_type: AlertType,
        priority: AlertPriority,
        channels: List[AlertChannel],
        now: datetime,
        respect_scope: bool = True
    ) -> Tuple[List[UUID], List[DeliveryTarget]]:
        recipient_ids: List[UUID] = []
        targets: List[DeliveryTarget] = []
        seen = set()

        for sub in await self.subscriptions.list_for_organization(ticket.organization_id):
            if respect_scope and not subscription_covers(sub, ticket):
                continue
            if not sub.wants(alert_type):
                continue
            prefs = await self.subscriptions.get_preferences(sub.user_id)
            if not should_user_receive_alert(prefs, priority, alert_type, now):
                continue

            for target in delivery_targets(sub, channels):
                if (target.user_id, target.channel) in seen:
                    continue
                seen.add((target.user_id, target.channel))
                targets.append(target)
                if target.user_id not in recipient_ids:
                    recipient_ids.append(target.user_id)

        return recipient_ids, targets

    async def _tickets_for(self, subscriptions: List[AlertSubscription]) -> List[Ticket]:
        found: Dict[UUID, Ticket] = {}
        for org_id in {s.organization_id for s in subscriptions}:
            for ticket in await self.tickets.list_for_organization(org_id):
                if any(subscription_covers(s, ticket) for s in subscriptions):
                    found[ticket.id] = ticket
        return sorted(found.values(), key=lambda t: t.created_at)

    async def _radar_buckets(self, tickets: List[Ticket], now: datetime) -> Dict[str, List[Ticket]]:
        today = self.calendar.local_date(now)
        live = [t for t in tickets if t.status in ACTIVE_STATUSES]

        def on_today(moment: Optional[datetime]) -> bool:
            return moment is not None and self.calendar.local_date(moment) == today

        unverified = []
        for ticket in live:
            responses = await self.responses.list_for_ticket(ticket.id)
            if any(r.response_status == ResponseStatus.UNVERIFIED for r in responses):
                unverified.append(ticket)

        return {
            "Working today": [t for t in live if on_today(t.legal_dig_date)],
            "Expiring today": [t for t in live if on_today(t.expires_at)],
            "Update due today": [t for t in live if on_today(t.update_by_date)],
            "Pending responses": [t for t in live if t.status == TicketStatus.PENDING],
            "Unverified utilities": unverified,
            "High risk": [t for t in live if t.risk_score >= self.high_risk_threshold],
            "All clear": [t for t in live if t.status == TicketStatus.CLEAR],
        }

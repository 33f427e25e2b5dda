"""
Locate Engine Repositories

Async in-memory implementation of the store contract:
- Rows are copied in and out (callers never share mutable state)
- save() is a version check (optimistic locking)
- Per-ticket asyncio locks serialize writers on one ticket
- Alert claims are compare-and-set on the dedup key
- Audit rows are append-only

Any durable store offering the same guarantees can replace it.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from .models.alert import (
    AWAITING_ACK,
    AlertAcknowledgement,
    AlertDelivery,
    AlertSubscription,
    TicketAlert,
    UserAlertPreferences,
)
from .models.ticket import (
    ACTIVE_STATUSES,
    AuditEvent,
    ConflictRecord,
    StatusTransition,
    Ticket,
    TicketStatus,
    UtilityResponse,
)


# =============================================================================
# ERRORS
# =============================================================================

class SystemicError(Exception):
    """Failure that makes a whole sweep meaningless (abort, retry next run)."""
    pass


class StoreUnavailableError(SystemicError):
    pass


class NotFoundError(LookupError):
    pass


class ConcurrentUpdateError(Exception):
    """Row changed since it was read."""
    pass


class DuplicateAlertSuppressed(Exception):
    """
    Expected idempotency outcome, not an error.

    Raised when an alert with the same dedup key already exists.
    """

    def __init__(self, dedup_key: str, existing_id: UUID):
        super().__init__(f"Alert {dedup_key} already recorded as {existing_id}")
        self.dedup_key = dedup_key
        self.existing_id = existing_id


# =============================================================================
# BACKEND
# =============================================================================

class _Backend:
    def __init__(self):
        self.available = True
        self.tickets: Dict[UUID, Ticket] = {}
        self.responses: Dict[UUID, UtilityResponse] = {}
        self.conflicts: Dict[UUID, ConflictRecord] = {}
        self.alerts: Dict[UUID, TicketAlert] = {}
        self.alert_keys: Dict[str, UUID] = {}
        self.deliveries: Dict[UUID, AlertDelivery] = {}
        self.acks: Dict[UUID, AlertAcknowledgement] = {}
        self.subscriptions: Dict[UUID, AlertSubscription] = {}
        self.preferences: Dict[UUID, UserAlertPreferences] = {}
        self.events: List[AuditEvent] = []
        self.transitions: List[StatusTransition] = []
        self.ticket_locks: Dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.alert_lock = asyncio.Lock()

    def check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Ticket store is unreachable")


def _copy(row):
    return row.model_copy(deep=True)


def _save_versioned(table: Dict[UUID, object], row, kind: str):
    current = table.get(row.id)
    if current is None:
        raise NotFoundError(f"{kind} {row.id} not found")
    if current.version != row.version:
        raise ConcurrentUpdateError(
            f"{kind} {row.id} is at version {current.version}, "
            f"write was based on {row.version}"
        )
    stored = row.model_copy(deep=True, update={"version": row.version + 1})
    table[row.id] = stored
    return _copy(stored)


# =============================================================================
# REPOSITORIES
# =============================================================================

class TicketRepository:
    def __init__(self, backend: _Backend):
        self._db = backend

    def lock(self, ticket_id: UUID) -> asyncio.Lock:
        """Single-writer lock for one ticket."""
        return self._db.ticket_locks[ticket_id]

    async def add(self, ticket: Ticket) -> Ticket:
        self._db.check()
        self._db.tickets[ticket.id] = _copy(ticket)
        return _copy(ticket)

    async def get(self, ticket_id: UUID) -> Ticket:
        self._db.check()
        ticket = self._db.tickets.get(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return _copy(ticket)

    async def save(self, ticket: Ticket) -> Ticket:
        self._db.check()
        return _save_versioned(self._db.tickets, ticket, "Ticket")

    async def list_by_status(self, statuses: Iterable[TicketStatus]) -> List[Ticket]:
        """Tickets in the given statuses. Intakes held without deadlines are left out."""
        self._db.check()
        wanted = set(statuses)
        rows = [
            t for t in self._db.tickets.values()
            if t.status in wanted and t.deadlines_stamped
        ]
        rows.sort(key=lambda t: t.created_at)
        return [_copy(t) for t in rows]

    async def list_active(self) -> List[Ticket]:
        return await self.list_by_status(ACTIVE_STATUSES)

    async def list_for_organization(
        self,
        organization_id: UUID,
        statuses: Optional[Iterable[TicketStatus]] = None
    ) -> List[Ticket]:
        self._db.check()
        wanted = set(statuses) if statuses is not None else None
        rows = [
            t for t in self._db.tickets.values()
            if t.organization_id == organization_id
            and t.deadlines_stamped
            and (wanted is None or t.status in wanted)
        ]
        rows.sort(key=lambda t: t.created_at)
        return [_copy(t) for t in rows]

    async def list_needing_review(self, organization_id: Optional[UUID] = None) -> List[Ticket]:
        """Every flagged ticket, including intakes held without deadlines."""
        self._db.check()
        rows = [
            t for t in self._db.tickets.values()
            if t.needs_review
            and (organization_id is None or t.organization_id == organization_id)
        ]
        rows.sort(key=lambda t: t.created_at)
        return [_copy(t) for t in rows]

    async def list_renewals(self, parent_ticket_id: UUID) -> List[Ticket]:
        self._db.check()
        return [
            _copy(t) for t in self._db.tickets.values()
            if t.parent_ticket_id == parent_ticket_id
        ]


class ResponseRepository:
    def __init__(self, backend: _Backend):
        self._db = backend

    async def add_many(self, responses: Iterable[UtilityResponse]) -> None:
        self._db.check()
        for response in responses:
            self._db.responses[response.id] = _copy(response)

    async def get(self, response_id: UUID) -> UtilityResponse:
        self._db.check()
        response = self._db.responses.get(response_id)
        if response is None:
            raise NotFoundError(f"Utility response {response_id} not found")
        return _copy(response)

    async def list_for_ticket(self, ticket_id: UUID) -> List[UtilityResponse]:
        self._db.check()
        rows = [r for r in self._db.responses.values() if r.ticket_id == ticket_id]
        rows.sort(key=lambda r: r.utility_code)
        return [_copy(r) for r in rows]

    async def get_by_code(self, ticket_id: UUID, utility_code: str) -> UtilityResponse:
        self._db.check()
        for response in self._db.responses.values():
            if response.ticket_id == ticket_id and response.utility_code == utility_code:
                return _copy(response)
        raise NotFoundError(f"Utility {utility_code} is not listed on ticket {ticket_id}")

    async def save(self, response: UtilityResponse) -> UtilityResponse:
        self._db.check()
        return _save_versioned(self._db.responses, response, "Utility response")


class ConflictRepository:
    def __init__(self, backend: _Backend):
        self._db = backend

    async def add(self, conflict: ConflictRecord) -> ConflictRecord:
        self._db.check()
        self._db.conflicts[conflict.id] = _copy(conflict)
        return _copy(conflict)

    async def get(self, conflict_id: UUID) -> ConflictRecord:
        self._db.check()
        conflict = self._db.conflicts.get(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        return _copy(conflict)

    async def save(self, conflict: ConflictRecord) -> ConflictRecord:
        self._db.check()
        return _save_versioned(self._db.conflicts, conflict, "Conflict")

    async def list_for_ticket(
        self,
        ticket_id: UUID,
        open_only: bool = False
    ) -> List[ConflictRecord]:
        self._db.check()
        rows = [
            c for c in self._db.conflicts.values()
            if c.ticket_id == ticket_id and (c.is_open or not open_only)
        ]
        rows.sort(key=lambda c: c.detected_at)
        return [_copy(c) for c in rows]

    async def find_by_fingerprint(
        self,
        ticket_id: UUID,
        fingerprint: str
    ) -> Optional[ConflictRecord]:
        self._db.check()
        for conflict in self._db.conflicts.values():
            if conflict.ticket_id == ticket_id and conflict.fingerprint == fingerprint:
                return _copy(conflict)
        return None


class AlertRepository:
    def __init__(self, backend: _Backend):
        self._db = backend

    async def claim(self, alert: TicketAlert) -> TicketAlert:
        """
        Insert the alert unless its dedup key is already taken.

        Check and insert happen under one lock (compare-and-set).
        """
        self._db.check()
        async with self._db.alert_lock:
            existing = self._db.alert_keys.get(alert.dedup_key)
            if existing is not None:
                raise DuplicateAlertSuppressed(alert.dedup_key, existing)
            self._db.alert_keys[alert.dedup_key] = alert.id
            self._db.alerts[alert.id] = _copy(alert)
        return _copy(alert)

    async def exists(self, dedup_key: str) -> bool:
        self._db.check()
        return dedup_key in self._db.alert_keys

    async def find(self, dedup_key: str) -> Optional[TicketAlert]:
        self._db.check()
        alert_id = self._db.alert_keys.get(dedup_key)
        return _copy(self._db.alerts[alert_id]) if alert_id else None

    async def get(self, alert_id: UUID) -> TicketAlert:
        self._db.check()
        alert = self._db.alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return _copy(alert)

    async def save(self, alert: TicketAlert) -> TicketAlert:
        self._db.check()
        return _save_versioned(self._db.alerts, alert, "Alert")

    async def list_for_ticket(self, ticket_id: UUID) -> List[TicketAlert]:
        self._db.check()
        rows = [a for a in self._db.alerts.values() if a.ticket_id == ticket_id]
        rows.sort(key=lambda a: a.created_at)
        return [_copy(a) for a in rows]

    async def list_all(self) -> List[TicketAlert]:
        self._db.check()
        rows = sorted(self._db.alerts.values(), key=lambda a: a.created_at)
        return [_copy(a) for a in rows]

    # Deliveries ---------------------------------------------------------------

    async def add_delivery(self, delivery: AlertDelivery) -> AlertDelivery:
        self._db.check()
        self._db.deliveries[delivery.id] = _copy(delivery)
        return _copy(delivery)

    async def get_delivery(self, delivery_id: UUID) -> AlertDelivery:
        self._db.check()
        delivery = self._db.deliveries.get(delivery_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        return _copy(delivery)

    async def save_delivery(self, delivery: AlertDelivery) -> AlertDelivery:
        self._db.check()
        self._db.deliveries[delivery.id] = _copy(delivery)
        return _copy(delivery)

    async def list_deliveries(self, alert_id: UUID) -> List[AlertDelivery]:
        self._db.check()
        return [_copy(d) for d in self._db.deliveries.values() if d.alert_id == alert_id]


class AcknowledgementRepository:
    def __init__(self, backend: _Backend):
        self._db = backend

    async def add(self, ack: AlertAcknowledgement) -> AlertAcknowledgement:
        self._db.check()
        self._db.acks[ack.id] = _copy(ack)
        return _copy(ack)

    async def find(self, alert_id: UUID, user_id: UUID) -> Optional[AlertAcknowledgement]:
        self._db.check()
        for ack in self._db.acks.values():
            if ack.alert_id == alert_id and ack.user_id == user_id:
                return _copy(ack)
        return None

    async def list_for_alert(self, alert_id: UUID) -> List[AlertAcknowledgement]:
        self._db.check()
        return [_copy(a) for a in self._db.acks.values() if a.alert_id == alert_id]

    async def list_overdue(self, now: datetime) -> List[AlertAcknowledgement]:
        """Rows still waiting on an explicit ack past their deadline."""
        self._db.check()
        rows = [
            a for a in self._db.acks.values()
            if a.requires_explicit_ack
            and a.status in AWAITING_ACK
            and a.ack_deadline <= now
        ]
        rows.sort(key=lambda a: a.ack_deadline)
        return [_copy(a) for a in rows]

    async def list_awaiting_for_ticket(self, ticket_id: UUID) -> List[AlertAcknowledgement]:
        self._db.check()
        return [
            _copy(a) for a in self._db.acks.values()
            if a.ticket_id == ticket_id and a.status in AWAITING_ACK
        ]

    async def save(self, ack: AlertAcknowledgement) -> AlertAcknowledgement:
        self._db.check()
        return _save_versioned(self._db.acks, ack, "Acknowledgement")


class SubscriptionRepository:
    def __init__(self, backend: _Backend):
        self._db = backend

    async def add(self, subscription: AlertSubscription) -> AlertSubscription:
        self._db.check()
        self._db.subscriptions[subscription.id] = _copy(subscription)
        return _copy(subscription)

    async def list_for_organization(self, organization_id: UUID) -> List[AlertSubscription]:
        self._db.check()
        return [
            _copy(s) for s in self._db.subscriptions.values()
            if s.organization_id == organization_id and s.is_active
        ]

    async def list_active(self) -> List[AlertSubscription]:
        self._db.check()
        return [_copy(s) for s in self._db.subscriptions.values() if s.is_active]

    async def get_preferences(self, user_id: UUID) -> UserAlertPreferences:
        """Stored preferences, or the OFFICE defaults."""
        self._db.check()
        prefs = self._db.preferences.get(user_id)
        return _copy(prefs) if prefs else UserAlertPreferences(user_id=user_id)

    async def set_preferences(self, prefs: UserAlertPreferences) -> None:
        self._db.check()
        self._db.preferences[prefs.user_id] = _copy(prefs)


class AuditRepository:
    """Append-only."""

    def __init__(self, backend: _Backend):
        self._db = backend

    async def append_event(self, event: AuditEvent) -> None:
        self._db.check()
        self._db.events.append(_copy(event))

    async def append_transition(self, transition: StatusTransition) -> None:
        self._db.check()
        self._db.transitions.append(_copy(transition))

    async def list_events(self, ticket_id: Optional[UUID] = None) -> List[AuditEvent]:
        self._db.check()
        return [
            _copy(e) for e in self._db.events
            if ticket_id is None or e.ticket_id == ticket_id
        ]

    async def list_transitions(self, ticket_id: UUID) -> List[StatusTransition]:
        self._db.check()
        return [_copy(t) for t in self._db.transitions if t.ticket_id == ticket_id]


class InMemoryStore:
    """All repositories over one shared backend."""

    def __init__(self):
        self._backend = _Backend()
        self.tickets = TicketRepository(self._backend)
        self.responses = ResponseRepository(self._backend)
        self.conflicts = ConflictRepository(self._backend)
        self.alerts = AlertRepository(self._backend)
        self.acks = AcknowledgementRepository(self._backend)
        self.subscriptions = SubscriptionRepository(self._backend)
        self.audit = AuditRepository(self._backend)

    def set_available(self, available: bool) -> None:
        """Simulate the store going away (operational testing)."""
        self._backend.available = available

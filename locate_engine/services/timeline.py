"""
Locate Engine Timeline Service

Append-only audit log for a ticket.

The timeline is the compliance record:
- Every status transition, with actor and reason
- Utility responses and field verifications
- Alert emission, delivery, acknowledgement and escalation
- Conflicts and review flags

Nothing here is ever updated or deleted.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..clock import utcnow
from ..models.ticket import (
    SYSTEM_ACTOR,
    AuditEvent,
    AuditEventType,
    StatusTransition,
    TicketStatus,
)


class TimelineService:
    """
    Writes and reads the audit trail.

    Status transitions are stored twice: as a typed StatusTransition row
    (for reconstruction) and as a STATUS_CHANGE event (for the feed).
    """

    def __init__(self, audit_repo):
        self.audit = audit_repo

    async def add_event(
        self,
        ticket_id: Optional[UUID],
        event_type: AuditEventType,
        content: str,
        actor: str = SYSTEM_ACTOR,
        data: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> AuditEvent:
        """
        Append an event to the log.

        This is the generic method - the helpers below cover the common
        event types.
        """
        event = AuditEvent(
            ticket_id=ticket_id,
            type=event_type,
            actor=actor,
            content=content,
            data=data or {},
            created_at=at or utcnow(),
        )
        await self.audit.append_event(event)
        return event

    async def add_system_event(
        self,
        ticket_id: Optional[UUID],
        content: str,
        event_type: AuditEventType = AuditEventType.NOTE,
        data: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> AuditEvent:
        return await self.add_event(
            ticket_id=ticket_id,
            event_type=event_type,
            content=content,
            actor=SYSTEM_ACTOR,
            data=data,
            at=at,
        )

    async def record_transition(
        self,
        ticket_id: UUID,
        old_status: TicketStatus,
        new_status: TicketStatus,
        actor: str,
        reason: Optional[str],
        at: datetime
    ) -> StatusTransition:
        transition = StatusTransition(
            ticket_id=ticket_id,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            reason=reason,
            at=at,
        )
        await self.audit.append_transition(transition)

        content = f"Status {old_status.value} -> {new_status.value}"
        if reason:
            content = f"{content}: {reason}"
        await self.add_event(
            ticket_id=ticket_id,
            event_type=AuditEventType.STATUS_CHANGE,
            content=content,
            actor=actor,
            data={"old_status": old_status.value, "new_status": new_status.value},
            at=at,
        )
        return transition

    async def get_timeline(
        self,
        ticket_id: UUID,
        event_types: Optional[List[AuditEventType]] = None
    ) -> List[AuditEvent]:
        """
        Events for a ticket in chronological order.

        Args:
            ticket_id: The ticket
            event_types: If set, only these event types
        """
        events = await self.audit.list_events(ticket_id)
        if event_types:
            wanted = set(event_types)
            events = [e for e in events if e.type in wanted]
        events.sort(key=lambda e: e.created_at)
        return events

    async def status_history(self, ticket_id: UUID) -> List[StatusTransition]:
        """Transitions in the order they were applied."""
        return await self.audit.list_transitions(ticket_id)

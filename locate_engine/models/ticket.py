"""
Locate Engine Ticket Model

One-call ("811") locate request lifecycle.

Core principles:
1. Ticket = one locate request with a legal validity window
2. Deadlines are stamped ONCE at creation, never recomputed
3. Utility responses are owned by the ticket (1 : N), never deleted
4. Every status change is append-logged for audit
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..clock import utcnow


# =============================================================================
# ENUMS
# =============================================================================

class TicketStatus(str, Enum):
    RECEIVED = "RECEIVED"        # Set at intake
    PENDING = "PENDING"          # Response rows created, waiting on utilities
    IN_PROGRESS = "IN_PROGRESS"  # At least one utility has responded
    CLEAR = "CLEAR"              # Every utility clear or marked
    CONFLICT = "CONFLICT"        # Needs human resolution
    EXPIRED = "EXPIRED"          # Terminal
    CANCELLED = "CANCELLED"      # Terminal


TERMINAL_STATUSES = frozenset({TicketStatus.EXPIRED, TicketStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(set(TicketStatus) - TERMINAL_STATUSES)


class ResponseType(str, Enum):
    """What the utility reported."""
    CLEAR = "CLEAR"
    MARKED = "MARKED"
    CONFLICT = "CONFLICT"
    PENDING = "PENDING"
    NO_RESPONSE = "NO_RESPONSE"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class ResponseStatus(str, Enum):
    PENDING = "PENDING"
    CLEAR = "CLEAR"
    MARKED = "MARKED"
    NOT_APPLICABLE = "NOT_APPLICABLE"
    VERIFIED_ON_SITE = "VERIFIED_ON_SITE"
    UNVERIFIED = "UNVERIFIED"    # Window closed without a reply
    CONFLICT = "CONFLICT"


# Statuses that count as "the utility has replied"
RESPONDED_STATUSES = frozenset({
    ResponseStatus.CLEAR,
    ResponseStatus.MARKED,
    ResponseStatus.NOT_APPLICABLE,
    ResponseStatus.VERIFIED_ON_SITE,
    ResponseStatus.CONFLICT,
})

# Statuses that allow the ticket to reach CLEAR
CLEARED_STATUSES = frozenset({
    ResponseStatus.CLEAR,
    ResponseStatus.MARKED,
    ResponseStatus.NOT_APPLICABLE,
    ResponseStatus.VERIFIED_ON_SITE,
})


class UtilityType(str, Enum):
    GAS = "GAS"
    ELECTRIC = "ELECTRIC"
    STEAM = "STEAM"
    WATER = "WATER"
    SEWER = "SEWER"
    TELECOM = "TELECOM"
    CABLE_TV = "CABLE_TV"
    FIBER = "FIBER"
    OTHER = "OTHER"


class WorkType(str, Enum):
    EXCAVATION = "EXCAVATION"
    BORING = "BORING"
    TRENCHING = "TRENCHING"
    DEMOLITION = "DEMOLITION"
    GRADING = "GRADING"
    LANDSCAPING = "LANDSCAPING"
    UTILITY_INSTALL = "UTILITY_INSTALL"
    UTILITY_REPAIR = "UTILITY_REPAIR"
    ROAD_WORK = "ROAD_WORK"
    CONSTRUCTION = "CONSTRUCTION"
    OTHER = "OTHER"


class ConflictReason(str, Enum):
    UTILITY_REPORTED = "UTILITY_REPORTED"
    CONTRADICTORY_MARKS = "CONTRADICTORY_MARKS"
    FIELD_VERIFICATION_MISMATCH = "FIELD_VERIFICATION_MISMATCH"


class ConflictResolutionType(str, Enum):
    CLEARED = "CLEARED"
    FALSE_ALARM = "FALSE_ALARM"
    MARKS_VERIFIED = "MARKS_VERIFIED"
    UTILITY_RESPONSE = "UTILITY_RESPONSE"
    ALTERNATE_ROUTE = "ALTERNATE_ROUTE"


class AuditEventType(str, Enum):
    TICKET_CREATED = "ticket_created"
    DEADLINES_STAMPED = "deadlines_stamped"
    STATUS_CHANGE = "status_change"
    RESPONSE_RECORDED = "response_recorded"
    FIELD_VERIFICATION = "field_verification"
    RISK_SCORED = "risk_scored"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    ALERT_EMITTED = "alert_emitted"
    ALERT_DELIVERED = "alert_delivered"
    DISPATCH_FAILED = "dispatch_failed"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    REVIEW_FLAGGED = "review_flagged"
    RENEWED = "renewed"
    NOTE = "note"


SYSTEM_ACTOR = "system"


# =============================================================================
# CORE MODELS
# =============================================================================

class DigSite(BaseModel):
    """Where the excavation happens. Geocoding happens upstream."""
    address: str
    city: Optional[str] = None
    county: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def display(self) -> str:
        return f"{self.address}, {self.city}" if self.city else self.address


class Ticket(BaseModel):
    """
    One locate request.

    Invariant: expires_at > legal_dig_date > created_at. Deadlines are
    None only on an intake held for review because they could not be
    computed; sweeps never see such a ticket.
    Status, counts and risk_score are only written through the
    state machine and risk scorer.
    """
    id: UUID = Field(default_factory=uuid4)
    ticket_number: str = Field(..., description="One-call center ticket number")

    organization_id: UUID
    project_id: Optional[UUID] = None
    created_by: Optional[UUID] = None

    dig_site: DigSite
    work_type: WorkType = WorkType.EXCAVATION
    excavator_company: Optional[str] = None
    requires_update_by: bool = False

    # Deadlines (stamped at creation)
    created_at: datetime = Field(default_factory=utcnow)
    legal_dig_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    update_by_date: Optional[datetime] = None
    response_window_closes_at: Optional[datetime] = None

    # Lifecycle
    status: TicketStatus = TicketStatus.RECEIVED
    status_changed_at: datetime = Field(default_factory=utcnow)

    # Derived
    risk_score: int = 0
    total_utilities: int = 0
    responded_utilities: int = 0
    has_gas_utility: bool = False
    has_electric_utility: bool = False

    # Alerting
    alert_count: int = 0
    last_alert_sent_at: Optional[datetime] = None

    # Renewal chain (plain reference, the ticket does not own its parent)
    parent_ticket_id: Optional[UUID] = None
    renewal_number: int = 0

    # Stuck / error tickets stay queryable
    needs_review: bool = False
    review_reason: Optional[str] = None

    # Optimistic concurrency
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def deadlines_stamped(self) -> bool:
        return self.legal_dig_date is not None and self.expires_at is not None


class ResponseEvidence(BaseModel):
    """Evidence attached to a utility reply or field check."""
    notes: Optional[str] = None
    marking_colors: List[str] = Field(default_factory=list)
    # Facilities of OTHER utility types seen while marking
    observed_facility_types: List[UtilityType] = Field(default_factory=list)
    photo_refs: List[str] = Field(default_factory=list)


class UtilityResponse(BaseModel):
    """
    One utility's reply on a ticket.

    response_window_closes_at is derived from ticket.created_at and
    never changes after creation.
    """
    id: UUID = Field(default_factory=uuid4)
    ticket_id: UUID

    utility_code: str
    utility_name: str
    utility_type: UtilityType = UtilityType.OTHER

    response_type: ResponseType = ResponseType.PENDING
    response_status: ResponseStatus = ResponseStatus.PENDING

    response_window_opens_at: datetime
    response_window_closes_at: datetime

    responded_at: Optional[datetime] = None
    marked_at: Optional[datetime] = None
    evidence: ResponseEvidence = Field(default_factory=ResponseEvidence)

    # Field verification
    verified_by: Optional[UUID] = None
    verified_at: Optional[datetime] = None
    verification_notes: Optional[str] = None

    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def has_responded(self) -> bool:
        return self.response_status in RESPONDED_STATUSES


class ConflictRecord(BaseModel):
    """
    Contradictory or unverifiable location information.

    Stays open until a human records conflict_resolved_at / resolved_by.
    """
    id: UUID = Field(default_factory=uuid4)
    ticket_id: UUID

    reason: ConflictReason
    response_ids: List[UUID] = Field(default_factory=list)
    evidence_refs: List[str] = Field(default_factory=list)
    detail: str
    fingerprint: str

    detected_at: datetime = Field(default_factory=utcnow)

    conflict_resolved_at: Optional[datetime] = None
    resolved_by: Optional[UUID] = None
    resolution_type: Optional[ConflictResolutionType] = None
    resolution_notes: Optional[str] = None

    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.conflict_resolved_at is None


# =============================================================================
# AUDIT MODELS (append-only)
# =============================================================================

class StatusTransition(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    ticket_id: UUID
    old_status: TicketStatus
    new_status: TicketStatus
    actor: str = SYSTEM_ACTOR
    reason: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class AuditEvent(BaseModel):
    """
    Activity on a ticket (or on a digest alert when ticket_id is None).

    Forms the immutable history used for audit reconstruction.
    """
    id: UUID = Field(default_factory=uuid4)
    ticket_id: Optional[UUID] = None

    type: AuditEventType
    actor: str = SYSTEM_ACTOR
    content: str
    data: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)

"""
Locate Engine Alert Models

Subscriptions, emitted alerts, deliveries, acknowledgements and the
versioned alert rule table.

Rule table pattern: an ordered list of {trigger, alert_type, priority}.
Position in the list is dispatch priority.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from ..clock import utcnow
from .ticket import TicketStatus


# =============================================================================
# ENUMS
# =============================================================================

class AlertType(str, Enum):
    # Legal dig date countdown
    HOURS_48 = "48_HOUR"
    HOURS_24 = "24_HOUR"
    HOURS_4 = "4_HOUR"
    HOURS_2 = "2_HOUR"
    SAME_DAY = "SAME_DAY"
    # Expiration countdown
    EXPIRING_SOON = "EXPIRING_SOON"
    HOURS_4_EXPIRATION = "4_HOUR_EXPIRATION"
    HOURS_2_EXPIRATION = "2_HOUR_EXPIRATION"
    OVERDUE = "OVERDUE"
    # Update-by countdown
    HOURS_4_UPDATE_BY = "4_HOUR_UPDATE_BY"
    HOURS_2_UPDATE_BY = "2_HOUR_UPDATE_BY"
    AT_UPDATE_BY = "AT_UPDATE_BY"
    # Events
    CONFLICT = "CONFLICT"
    RESPONSE_RECEIVED = "RESPONSE_RECEIVED"
    ALL_CLEAR = "ALL_CLEAR"
    HIGH_RISK = "HIGH_RISK"
    UNVERIFIED_RESPONSE = "UNVERIFIED_RESPONSE"
    EMERGENCY = "EMERGENCY"
    ESCALATION = "ESCALATION"
    # Digests (per user, per cadence)
    DAILY_RADAR = "DAILY_RADAR"
    RENEWAL_REMINDER = "RENEWAL_REMINDER"


# Alert types covered by always_alert_on_expired
EXPIRY_ALERT_TYPES = frozenset({
    AlertType.EXPIRING_SOON,
    AlertType.HOURS_4_EXPIRATION,
    AlertType.HOURS_2_EXPIRATION,
    AlertType.OVERDUE,
})


class AlertPriority(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


class AlertChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"
    IN_APP = "IN_APP"


ALL_CHANNELS = [AlertChannel.EMAIL, AlertChannel.SMS, AlertChannel.PUSH, AlertChannel.IN_APP]


class AlertStatus(str, Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"          # Accepted by the transport, awaiting callback
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class AckStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    OPENED = "OPENED"
    ACKNOWLEDGED = "ACKNOWLEDGED"  # Terminal
    ESCALATED = "ESCALATED"
    SUPERSEDED = "SUPERSEDED"      # Ticket cancelled before ack


# Rows still waiting on the recipient
AWAITING_ACK = frozenset({AckStatus.SENT, AckStatus.DELIVERED, AckStatus.OPENED})


class AckAction(str, Enum):
    STOP_WORK = "STOP_WORK"
    RENEWING = "RENEWING"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    EVACUATING = "EVACUATING"
    CONTACTING_UTILITY = "CONTACTING_UTILITY"
    ON_SCENE = "ON_SCENE"
    CALLING_811 = "CALLING_811"
    EVACUATED = "EVACUATED"
    UNDERSTOOD = "UNDERSTOOD"
    REVIEWING = "REVIEWING"
    NO_ACTION_NEEDED = "NO_ACTION_NEEDED"


class AckOutcome(str, Enum):
    OK = "ok"
    ALREADY_ACKNOWLEDGED = "already_acknowledged"
    EXPIRED = "expired"


class SubscriptionScope(str, Enum):
    ORGANIZATION = "ORGANIZATION"
    PROJECT = "PROJECT"
    PERSONAL = "PERSONAL"  # Tickets the user filed


class UserAlertRole(str, Enum):
    OFFICE = "OFFICE"  # Gets everything
    FIELD = "FIELD"    # CRITICAL and WARNING only


class RuleTrigger(str, Enum):
    BEFORE_LEGAL_DIG = "before_legal_dig"
    LEGAL_DIG_TODAY = "legal_dig_today"
    BEFORE_EXPIRATION = "before_expiration"
    PAST_EXPIRATION = "past_expiration"
    BEFORE_UPDATE_BY = "before_update_by"
    PAST_UPDATE_BY = "past_update_by"
    STATUS_ENTERED = "status_entered"
    RISK_AT_LEAST = "risk_at_least"
    RESPONSE_RECEIVED = "response_received"
    RESPONSE_WINDOW_LAPSED = "response_window_lapsed"


# Triggers evaluated synchronously right after a response write
EVENT_TRIGGERS = frozenset({
    RuleTrigger.STATUS_ENTERED,
    RuleTrigger.RESPONSE_RECEIVED,
})


# =============================================================================
# SUBSCRIPTIONS & PREFERENCES
# =============================================================================

# Subscription flag consulted for each alert type.
# Types not listed (EMERGENCY, ESCALATION) cannot be opted out of.
ALERT_TYPE_FLAGS: Dict[AlertType, str] = {
    AlertType.HOURS_48: "alert_48_hour",
    AlertType.HOURS_24: "alert_24_hour",
    AlertType.HOURS_4: "alert_4_hour",
    AlertType.HOURS_2: "alert_2_hour",
    AlertType.SAME_DAY: "alert_same_day",
    AlertType.EXPIRING_SOON: "alert_expiring",
    AlertType.HOURS_4_EXPIRATION: "alert_expiring",
    AlertType.HOURS_2_EXPIRATION: "alert_expiring",
    AlertType.OVERDUE: "alert_expiring",
    AlertType.HOURS_4_UPDATE_BY: "alert_update_by",
    AlertType.HOURS_2_UPDATE_BY: "alert_update_by",
    AlertType.AT_UPDATE_BY: "alert_update_by",
    AlertType.CONFLICT: "alert_conflict",
    AlertType.RESPONSE_RECEIVED: "alert_response",
    AlertType.ALL_CLEAR: "alert_all_clear",
    AlertType.HIGH_RISK: "alert_high_risk",
    AlertType.UNVERIFIED_RESPONSE: "alert_unverified",
    AlertType.DAILY_RADAR: "daily_radar",
    AlertType.RENEWAL_REMINDER: "renewal_reminder",
}


class AlertSubscription(BaseModel):
    """A user's opt-in to alert types and channels for a scope."""
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    organization_id: UUID

    scope: SubscriptionScope = SubscriptionScope.ORGANIZATION
    project_id: Optional[UUID] = None
    county: Optional[str] = None  # Geographic narrowing
    is_active: bool = True

    # Alert type preferences
    alert_48_hour: bool = True
    alert_24_hour: bool = True
    alert_4_hour: bool = True
    alert_2_hour: bool = True
    alert_same_day: bool = True
    alert_expiring: bool = True
    alert_update_by: bool = True
    alert_conflict: bool = True
    alert_response: bool = False
    alert_all_clear: bool = True
    alert_high_risk: bool = True
    alert_unverified: bool = True
    daily_radar: bool = False
    renewal_reminder: bool = False

    # Channels
    channel_email: bool = True
    channel_sms: bool = False
    channel_push: bool = False
    channel_in_app: bool = True

    # Endpoints
    email_address: Optional[str] = None
    phone_number: Optional[str] = None
    push_token: Optional[str] = None

    # Receives escalations for the organization
    escalation_contact: bool = False

    def wants(self, alert_type: AlertType) -> bool:
        flag = ALERT_TYPE_FLAGS.get(alert_type)
        if flag is None:
            return True
        return bool(getattr(self, flag))

    def destination(self, channel: AlertChannel) -> Optional[str]:
        """Endpoint for a channel, or None if the channel is unusable."""
        if channel == AlertChannel.EMAIL:
            return self.email_address if self.channel_email else None
        if channel == AlertChannel.SMS:
            return self.phone_number if self.channel_sms else None
        if channel == AlertChannel.PUSH:
            return self.push_token if self.channel_push else None
        if channel == AlertChannel.IN_APP:
            return str(self.user_id) if self.channel_in_app else None
        return None


class UserAlertPreferences(BaseModel):
    """Role-based filtering and quiet mode."""
    user_id: UUID
    alert_role: UserAlertRole = UserAlertRole.OFFICE

    quiet_mode_enabled: bool = False
    quiet_mode_until: Optional[datetime] = None

    always_alert_on_expired: bool = True
    always_alert_on_conflict: bool = True
    always_alert_on_emergency: bool = True

    # Superintendent-enabled full alerting, until this time
    override_expires_at: Optional[datetime] = None

    # First escalation target for this user's unacknowledged alerts
    supervisor_id: Optional[UUID] = None


# =============================================================================
# EMITTED ALERTS
# =============================================================================

class TicketAlert(BaseModel):
    """
    One emitted notification.

    Created exactly once per dedup key; afterwards only delivery
    fields change.
    """
    id: UUID = Field(default_factory=uuid4)
    ticket_id: Optional[UUID] = None   # None for digests
    organization_id: UUID
    user_id: Optional[UUID] = None     # Digest owner

    alert_type: AlertType
    priority: AlertPriority
    occurrence_key: str
    rule_version: str

    subject: str
    body: str
    channels: List[AlertChannel] = Field(default_factory=list)
    recipient_ids: List[UUID] = Field(default_factory=list)

    requires_explicit_ack: bool = False
    escalated_from_alert_id: Optional[UUID] = None

    status: AlertStatus = AlertStatus.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    version: int = 0

    @property
    def dedup_key(self) -> str:
        subject_id = self.ticket_id if self.ticket_id is not None else self.user_id
        return f"{subject_id}:{self.alert_type.value}:{self.occurrence_key}"


class AlertDelivery(BaseModel):
    """One (alert, recipient, channel) send attempt chain."""
    id: UUID = Field(default_factory=uuid4)
    alert_id: UUID
    user_id: UUID
    channel: AlertChannel
    destination: str

    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    provider_message_id: Optional[str] = None

    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class AlertAcknowledgement(BaseModel):
    """Per-recipient delivery -> open -> acknowledge lifecycle."""
    id: UUID = Field(default_factory=uuid4)
    alert_id: UUID
    ticket_id: Optional[UUID] = None
    organization_id: UUID
    user_id: UUID

    status: AckStatus = AckStatus.SENT
    requires_explicit_ack: bool = True
    sent_via: List[AlertChannel] = Field(default_factory=list)

    sent_at: datetime = Field(default_factory=utcnow)
    ack_deadline: datetime
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_action: Optional[AckAction] = None

    escalated_at: Optional[datetime] = None
    escalated_to: List[UUID] = Field(default_factory=list)
    escalation_reason: Optional[str] = None
    escalation_alert_id: Optional[UUID] = None

    version: int = 0


# =============================================================================
# RULE TABLE
# =============================================================================

class AlertRule(BaseModel):
    """
    Single alert rule.

    Windowed triggers fire while floor_hours < hours_to_anchor <= window_hours,
    so a tighter rule takes over from a looser one instead of both firing.
    """
    alert_type: AlertType
    priority: AlertPriority
    trigger: RuleTrigger

    window_hours: Optional[float] = None
    floor_hours: float = 0.0
    status: Optional[TicketStatus] = None        # STATUS_ENTERED
    risk_threshold: Optional[int] = None         # RISK_AT_LEAST

    # Ticket statuses the rule applies to (None = all active)
    applies_to: Optional[List[TicketStatus]] = None
    channels: List[AlertChannel] = Field(default_factory=lambda: list(ALL_CHANNELS))
    requires_explicit_ack: bool = False

    @model_validator(mode="after")
    def _check_parameters(self) -> "AlertRule":
        windowed = {
            RuleTrigger.BEFORE_LEGAL_DIG,
            RuleTrigger.BEFORE_EXPIRATION,
            RuleTrigger.BEFORE_UPDATE_BY,
        }
        if self.trigger in windowed:
            if self.window_hours is None or self.window_hours <= self.floor_hours:
                raise ValueError(
                    f"{self.alert_type.value}: window_hours must exceed floor_hours"
                )
        if self.trigger == RuleTrigger.STATUS_ENTERED and self.status is None:
            raise ValueError(f"{self.alert_type.value}: status_entered needs a status")
        if self.trigger == RuleTrigger.RISK_AT_LEAST and self.risk_threshold is None:
            raise ValueError(f"{self.alert_type.value}: risk_at_least needs a threshold")
        return self


class DigestRule(BaseModel):
    """Evaluated once per subscribed user per local day."""
    alert_type: AlertType
    priority: AlertPriority = AlertPriority.INFO
    local_hour: int = 6
    lookahead_days: int = 0
    channels: List[AlertChannel] = Field(
        default_factory=lambda: [AlertChannel.EMAIL, AlertChannel.IN_APP]
    )


class AlertRuleTable(BaseModel):
    """Versioned, ordered rule configuration loaded at startup."""
    version: str
    rules: List[AlertRule]
    digests: List[DigestRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_alert_types(self) -> "AlertRuleTable":
        seen = set()
        for rule in list(self.rules) + list(self.digests):
            if rule.alert_type in seen:
                raise ValueError(f"Duplicate rule for {rule.alert_type.value}")
            seen.add(rule.alert_type)
        return self

    def rank(self, alert_type: AlertType) -> int:
        for index, rule in enumerate(self.rules):
            if rule.alert_type == alert_type:
                return index
        return len(self.rules)

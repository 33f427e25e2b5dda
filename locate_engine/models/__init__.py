"""
Locate Engine Models

Tickets, utility responses, conflicts, audit history and alerting.
"""

from .ticket import (
    # Enums
    TicketStatus,
    ResponseType,
    ResponseStatus,
    UtilityType,
    WorkType,
    ConflictReason,
    ConflictResolutionType,
    AuditEventType,

    # Core models
    DigSite,
    Ticket,
    ResponseEvidence,
    UtilityResponse,
    ConflictRecord,

    # Audit
    StatusTransition,
    AuditEvent,

    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    SYSTEM_ACTOR,
)
from .alert import (
    # Enums
    AlertType,
    AlertPriority,
    AlertChannel,
    AlertStatus,
    DeliveryStatus,
    AckStatus,
    AckAction,
    AckOutcome,
    SubscriptionScope,
    UserAlertRole,
    RuleTrigger,

    # Models
    AlertSubscription,
    UserAlertPreferences,
    TicketAlert,
    AlertDelivery,
    AlertAcknowledgement,
    AlertRule,
    DigestRule,
    AlertRuleTable,
)

__all__ = [
    "TicketStatus", "ResponseType", "ResponseStatus", "UtilityType", "WorkType",
    "ConflictReason", "ConflictResolutionType", "AuditEventType",
    "DigSite", "Ticket", "ResponseEvidence", "UtilityResponse", "ConflictRecord",
    "StatusTransition", "AuditEvent",
    "TERMINAL_STATUSES", "ACTIVE_STATUSES", "SYSTEM_ACTOR",
    "AlertType", "AlertPriority", "AlertChannel", "AlertStatus", "DeliveryStatus",
    "AckStatus", "AckAction", "AckOutcome", "SubscriptionScope", "UserAlertRole",
    "RuleTrigger",
    "AlertSubscription", "UserAlertPreferences", "TicketAlert", "AlertDelivery",
    "AlertAcknowledgement", "AlertRule", "DigestRule", "AlertRuleTable",
]

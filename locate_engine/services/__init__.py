"""
Locate Engine Services

Deadline math, the ticket lifecycle and compliance alerting.
"""

from .calendar import BusinessCalendar, CalendarUnavailableError
from .deadline import DeadlineCalculator, DeadlineComputationError, JurisdictionRules, TicketDeadlines
from .risk import RiskScorer, RiskScore, RiskLevel, risk_level
from .readiness import DigVerdict, DigReadiness, assess_dig_readiness
from .timeline import TimelineService
from .sweep import SweepReport, SweepError
from .state_machine import TicketStateMachine, TransitionResult, InvalidTransition
from .conflict import ConflictResolver, ConflictDetected
from .messages import MessageRenderer
from .dispatch import (
    AlertDispatcher,
    AlertContract,
    DeliveryReceipt,
    ReceiptStatus,
    TransportSink,
    LoggingTransport,
    TransportError,
    DispatchFailure,
)
from .escalation import AcknowledgementService
from .alert import AlertScheduler, DueAlert, default_rule_table, load_rule_table, should_user_receive_alert
from .tickets import TicketService, CreateTicket, UtilityListing, TicketStatusView
from ..repositories import (
    SystemicError,
    StoreUnavailableError,
    NotFoundError,
    ConcurrentUpdateError,
    DuplicateAlertSuppressed,
)

__all__ = [
    # Calendar and deadlines (stamped once at intake)
    "BusinessCalendar", "CalendarUnavailableError",
    "DeadlineCalculator", "DeadlineComputationError", "JurisdictionRules", "TicketDeadlines",

    # Risk and "can I dig?"
    "RiskScorer", "RiskScore", "RiskLevel", "risk_level",
    "DigVerdict", "DigReadiness", "assess_dig_readiness",

    # Lifecycle
    "TicketStateMachine", "TransitionResult", "InvalidTransition",
    "ConflictResolver", "ConflictDetected",
    "TicketService", "CreateTicket", "UtilityListing", "TicketStatusView",

    # Audit log
    "TimelineService",

    # Alerting (rule table, dispatch, acknowledgement + escalation)
    "AlertScheduler", "DueAlert", "default_rule_table", "load_rule_table",
    "should_user_receive_alert", "MessageRenderer",
    "AlertDispatcher", "AlertContract", "DeliveryReceipt", "ReceiptStatus",
    "TransportSink", "LoggingTransport", "TransportError", "DispatchFailure",
    "AcknowledgementService",

    # Sweeps and store errors
    "SweepReport", "SweepError",
    "SystemicError", "StoreUnavailableError", "NotFoundError",
    "ConcurrentUpdateError", "DuplicateAlertSuppressed",
]

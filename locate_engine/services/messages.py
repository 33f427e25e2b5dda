"""
Locate Engine Alert Messages

Subject and body text for every alert type. The one-call center name
(e.g. "WV811") is configurable; dates render in the jurisdiction's
local time.
"""

from typing import Dict, List, Optional, Tuple

from ..models.alert import AlertType, TicketAlert
from ..models.ticket import Ticket
from .calendar import BusinessCalendar


Message = Tuple[str, str]


SUBJECTS: Dict[AlertType, str] = {
    AlertType.HOURS_48: "{center} Reminder: Ticket #{number} - Legal dig date in 48 hours",
    AlertType.HOURS_24: "{center} Alert: Ticket #{number} - Legal dig date TOMORROW",
    AlertType.HOURS_4: "{center} ALERT: Ticket #{number} - Dig date in 4 hours!",
    AlertType.HOURS_2: "{center} CRITICAL: Ticket #{number} - Dig date in 2 HOURS!",
    AlertType.SAME_DAY: "{center} URGENT: Ticket #{number} - Legal dig date is TODAY",
    AlertType.EXPIRING_SOON: "{center} Warning: Ticket #{number} - Expiring soon",
    AlertType.HOURS_4_EXPIRATION: "{center} ALERT: Ticket #{number} - Expires in 4 hours",
    AlertType.HOURS_2_EXPIRATION: "{center} CRITICAL: Ticket #{number} - Expires in 2 HOURS",
    AlertType.OVERDUE: "{center} EXPIRED: Ticket #{number} has expired",
    AlertType.HOURS_4_UPDATE_BY: "{center} ALERT: Ticket #{number} - Update due in 4 hours",
    AlertType.HOURS_2_UPDATE_BY: "{center} CRITICAL: Ticket #{number} - Update due in 2 HOURS",
    AlertType.AT_UPDATE_BY: "{center} CRITICAL: Ticket #{number} - Update deadline reached",
    AlertType.CONFLICT: "{center} CONFLICT: Ticket #{number} - Utility conflict reported",
    AlertType.RESPONSE_RECEIVED: "{center} Update: Ticket #{number} - New utility response",
    AlertType.ALL_CLEAR: "{center} All Clear: Ticket #{number} - Every utility has responded",
    AlertType.HIGH_RISK: "{center} HIGH RISK: Ticket #{number} - Requires attention",
    AlertType.UNVERIFIED_RESPONSE: "{center} Warning: Ticket #{number} - Utility did not respond",
    AlertType.EMERGENCY: "{center} EMERGENCY: Ticket #{number} - Utility strike reported",
    AlertType.ESCALATION: "{center} ESCALATION: Ticket #{number} - Critical alert not acknowledged",
}

BODIES: Dict[AlertType, str] = {
    AlertType.HOURS_48: (
        "Your {center} locate ticket #{number} at {location} has a legal dig date of "
        "{dig_date} (in approximately 48 hours). Ensure all utilities have responded "
        "before excavation."
    ),
    AlertType.HOURS_24: (
        "REMINDER: Your {center} locate ticket #{number} at {location} has a legal dig "
        "date of {dig_date} (TOMORROW). Verify all utility responses before excavation."
    ),
    AlertType.HOURS_4: (
        "ALERT: Ticket #{number} at {location} - dig date in 4 HOURS! Verify markings "
        "and utility responses NOW."
    ),
    AlertType.HOURS_2: (
        "CRITICAL: Ticket #{number} at {location} - only 2 HOURS until dig date! "
        "Final check - confirm all utilities clear."
    ),
    AlertType.SAME_DAY: (
        "URGENT: Your {center} locate ticket #{number} at {location} has a legal dig "
        "date of TODAY ({dig_date}). Confirm all utilities have responded and markings "
        "are visible."
    ),
    AlertType.EXPIRING_SOON: (
        "Your {center} ticket #{number} at {location} expires {expires}. Consider "
        "requesting a renewal if work is not yet complete."
    ),
    AlertType.HOURS_4_EXPIRATION: (
        "Ticket #{number} at {location} expires in 4 hours ({expires}). Stop work or "
        "renew before the ticket lapses."
    ),
    AlertType.HOURS_2_EXPIRATION: (
        "CRITICAL: Ticket #{number} at {location} expires in 2 HOURS ({expires}). "
        "Excavation after expiration is not covered."
    ),
    AlertType.OVERDUE: (
        "Your {center} locate ticket #{number} at {location} has EXPIRED. You must "
        "request a new ticket before any excavation work."
    ),
    AlertType.HOURS_4_UPDATE_BY: (
        "Ticket #{number} at {location} must be updated with {center} by {update_by}."
    ),
    AlertType.HOURS_2_UPDATE_BY: (
        "CRITICAL: Ticket #{number} at {location} must be updated with {center} within "
        "2 hours ({update_by})."
    ),
    AlertType.AT_UPDATE_BY: (
        "CRITICAL: The update deadline for ticket #{number} at {location} has been "
        "reached ({update_by}). Contact {center} now."
    ),
    AlertType.CONFLICT: (
        "A utility has reported a CONFLICT on your {center} locate ticket #{number} at "
        "{location}. Please review the conflict details and contact the utility before "
        "excavation."
    ),
    AlertType.RESPONSE_RECEIVED: (
        "A utility responded on ticket #{number} at {location}. "
        "{responded} of {total} utilities have responded."
    ),
    AlertType.ALL_CLEAR: (
        "All {total} utilities on ticket #{number} at {location} are clear or marked. "
        "Legal dig date: {dig_date}."
    ),
    AlertType.HIGH_RISK: (
        "HIGH RISK TICKET: #{number} at {location} (risk score {risk}). Exercise extreme "
        "caution and ensure all markings are visible."
    ),
    AlertType.UNVERIFIED_RESPONSE: (
        "One or more utilities did not respond on ticket #{number} at {location} before "
        "the response window closed. Contact {center} before excavation."
    ),
}

DEFAULT_BODY = "Update for {center} ticket #{number} at {location}. Legal dig date: {dig_date}."


class MessageRenderer:
    """Renders alert text for one jurisdiction."""

    def __init__(self, one_call_center: str, calendar: BusinessCalendar):
        self.center = one_call_center
        self.calendar = calendar

    def ticket_alert(
        self,
        alert_type: AlertType,
        ticket: Ticket,
        detail: Optional[str] = None
    ) -> Message:
        fields = self._fields(ticket)
        subject = SUBJECTS.get(alert_type, "{center} Alert: Ticket #{number}").format(**fields)
        body = BODIES.get(alert_type, DEFAULT_BODY).format(**fields)
        if detail:
            body = f"{body}\n\n{detail}"
        return subject, body

    def emergency(self, ticket: Ticket, reported_by: str, description: str) -> Message:
        fields = self._fields(ticket)
        subject = SUBJECTS[AlertType.EMERGENCY].format(**fields)
        body = (
            f"EMERGENCY reported by {reported_by} on ticket #{ticket.ticket_number} at "
            f"{fields['location']}: {description}\n\n"
            "Stop work, evacuate if gas is involved, and call 911 and the facility owner."
        )
        return subject, body

    def escalation(
        self,
        ticket: Optional[Ticket],
        original: TicketAlert,
        unacknowledged: List[str],
        reason: Optional[str] = None
    ) -> Message:
        number = ticket.ticket_number if ticket else "-"
        subject = SUBJECTS[AlertType.ESCALATION].format(center=self.center, number=number)
        if reason is not None:
            body = (
                f"The {original.priority.value} alert \"{original.subject}\" could not reach "
                f"the crew ({reason}). It needs an owner now.\n\n{original.body}"
            )
            return subject, body
        body = (
            f"The {original.priority.value} alert \"{original.subject}\" was not acknowledged "
            f"by {', '.join(unacknowledged)} within the deadline.\n\n{original.body}"
        )
        return subject, body

    def daily_radar(self, local_day: str, buckets: Dict[str, List[Ticket]]) -> Message:
        subject = f"{self.center} Safety Radar for {local_day}"
        lines = [f"Good morning! Here's your {self.center} Safety Radar for {local_day}."]
        for label, tickets in buckets.items():
            lines.append("")
            lines.append(f"{label}: {len(tickets)}")
            for ticket in tickets:
                lines.append(f"  #{ticket.ticket_number} {ticket.dig_site.display} ({ticket.status.value})")
        return subject, "\n".join(lines)

    def renewal_reminder(self, tickets: List[Ticket]) -> Message:
        subject = f"{self.center} Reminder: {len(tickets)} ticket(s) need renewal"
        lines = ["These tickets expire soon. Request a renewal if work will continue:"]
        for ticket in tickets:
            lines.append(
                f"  #{ticket.ticket_number} {ticket.dig_site.display} "
                f"expires {self._format(ticket.expires_at)}"
            )
        return subject, "\n".join(lines)

    # =========================================================================
    # Private methods
    # =========================================================================

    def _fields(self, ticket: Ticket) -> Dict[str, str]:
        return {
            "center": self.center,
            "number": ticket.ticket_number,
            "location": ticket.dig_site.display,
            "dig_date": (
                self.calendar.to_local(ticket.legal_dig_date).strftime("%A, %B %d, %Y")
                if ticket.legal_dig_date else "-"
            ),
            "expires": self._format(ticket.expires_at),
            "update_by": self._format(ticket.update_by_date),
            "responded": str(ticket.responded_utilities),
            "total": str(ticket.total_utilities),
            "risk": str(ticket.risk_score),
        }

    def _format(self, moment) -> str:
        if moment is None:
            return "-"
        return self.calendar.to_local(moment).strftime("%b %d %I:%M %p %Z")

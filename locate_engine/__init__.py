"""
Locate Engine

Call-before-you-dig ticket lifecycle with:
- Business-day aware compliance deadlines
- Ticket / utility-response state machine
- Deterministic risk scoring
- Deduplicated, rule-table driven alerting
- Acknowledgement tracking and escalation
- Utility conflict detection
"""

__version__ = "0.1.0"

"""
Locate Engine Alert Dispatcher

Fans one emitted alert out to (recipient, channel) deliveries.

- IN_APP deliveries complete immediately (the row is the notification)
- Other channels go through a TransportSink with tenacity retries:
  exponential backoff, bounded attempts, per-attempt timeout
- Exhausted retries raise DispatchFailure internally; the delivery is
  marked FAILED, the alert row is kept, and the failure is audited
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol
from uuid import UUID

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..clock import utcnow
from ..models.alert import (
    AlertChannel,
    AlertDelivery,
    AlertPriority,
    AlertStatus,
    AlertType,
    DeliveryStatus,
    TicketAlert,
)
from ..models.ticket import AuditEventType


logger = logging.getLogger(__name__)


# =============================================================================
# TRANSPORT CONTRACT
# =============================================================================

class TransportError(Exception):
    """Retryable send failure reported by a transport."""
    pass


class DispatchFailure(Exception):
    """Delivery gave up after bounded retries."""

    def __init__(self, alert_id: UUID, channel: AlertChannel, user_id: UUID, attempts: int, reason: str):
        super().__init__(
            f"Alert {alert_id} to {user_id} via {channel.value} failed after "
            f"{attempts} attempt(s): {reason}"
        )
        self.alert_id = alert_id
        self.channel = channel
        self.user_id = user_id
        self.attempts = attempts
        self.reason = reason


class ReceiptStatus(str, Enum):
    QUEUED = "QUEUED"        # Accepted, delivery callback later
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class AlertContract(BaseModel):
    """What a transport receives."""
    alert_id: UUID
    delivery_id: UUID
    ticket_id: Optional[UUID] = None
    alert_type: AlertType
    priority: AlertPriority
    channel: AlertChannel
    user_id: UUID
    destination: str
    subject: str
    body: str
    requires_explicit_ack: bool = False


class DeliveryReceipt(BaseModel):
    status: ReceiptStatus
    provider_message_id: Optional[str] = None
    detail: Optional[str] = None


class TransportSink(Protocol):
    async def send(self, contract: AlertContract) -> DeliveryReceipt:
        """Hand the alert to a vendor (SMS, email, push)."""


class LoggingTransport:
    """Development sink: logs the alert and reports it delivered."""

    def __init__(self, name: str = "log"):
        self.name = name

    async def send(self, contract: AlertContract) -> DeliveryReceipt:
        logger.info(
            "[%s] %s -> %s: %s",
            self.name, contract.channel.value, contract.destination, contract.subject,
        )
        return DeliveryReceipt(
            status=ReceiptStatus.DELIVERED,
            provider_message_id=f"{self.name}-{contract.delivery_id}",
        )


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class DeliveryTarget:
    user_id: UUID
    channel: AlertChannel
    destination: str


def delivery_targets(subscription, channels: List[AlertChannel]) -> List[DeliveryTarget]:
    """Rule channels the subscriber has enabled and can be reached on."""
    targets = []
    for channel in channels:
        destination = subscription.destination(channel)
        if destination:
            targets.append(DeliveryTarget(subscription.user_id, channel, destination))
    return targets


@dataclass
class DispatchOutcome:
    alert: TicketAlert
    deliveries: List[AlertDelivery] = field(default_factory=list)
    failures: List[DispatchFailure] = field(default_factory=list)

    @property
    def delivered_any(self) -> bool:
        return any(
            d.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)
            for d in self.deliveries
        )


class AlertDispatcher:
    """
    Sends alerts through channel sinks.

    Example:
        dispatcher = AlertDispatcher(store, timeline, {AlertChannel.SMS: twilio_sink})
        outcome = await dispatcher.dispatch(alert, targets, now)
    """

    def __init__(
        self,
        store,
        timeline,
        sinks: Optional[Dict[AlertChannel, TransportSink]] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        timeout_seconds: float = 10.0
    ):
        self.alerts = store.alerts
        self.tickets = store.tickets
        self.timeline = timeline
        self.sinks = dict(sinks or {})
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings, store, timeline, sinks=None) -> "AlertDispatcher":
        return cls(
            store,
            timeline,
            sinks=sinks,
            max_attempts=settings.dispatch_max_attempts,
            backoff_seconds=settings.dispatch_backoff_seconds,
            backoff_max_seconds=settings.dispatch_backoff_max_seconds,
            timeout_seconds=settings.dispatch_timeout_seconds,
        )

    async def dispatch(
        self,
        alert: TicketAlert,
        targets: List[DeliveryTarget],
        now: Optional[datetime] = None
    ) -> DispatchOutcome:
        now = now or utcnow()
        outcome = DispatchOutcome(alert=alert)

        if not targets:
            logger.warning("Alert %s (%s) has no deliverable recipients", alert.id, alert.alert_type.value)
            alert.status = AlertStatus.FAILED
            alert.failed_at = now
            alert.failure_reason = "No deliverable recipients"
            outcome.alert = await self.alerts.save(alert)
            return outcome

        results = await asyncio.gather(*(self._deliver(alert, t, now) for t in targets))
        for delivery, failure in results:
            outcome.deliveries.append(delivery)
            if failure is not None:
                outcome.failures.append(failure)

        self._roll_up(alert, outcome.deliveries, now)
        outcome.alert = await self.alerts.save(alert)
        return outcome

    async def note_emitted(self, alert: TicketAlert, now: datetime) -> None:
        """Audit an emitted alert and bump the ticket's alert counters."""
        await self.timeline.add_system_event(
            alert.ticket_id,
            f"{alert.alert_type.value} alert emitted to {len(alert.recipient_ids)} recipient(s)",
            event_type=AuditEventType.ALERT_EMITTED,
            data={
                "alert_id": str(alert.id),
                "alert_type": alert.alert_type.value,
                "priority": alert.priority.value,
                "occurrence_key": alert.occurrence_key,
                "rule_version": alert.rule_version,
            },
            at=now,
        )
        if alert.ticket_id is None:
            return
        async with self.tickets.lock(alert.ticket_id):
            ticket = await self.tickets.get(alert.ticket_id)
            ticket.alert_count += 1
            ticket.last_alert_sent_at = now
            await self.tickets.save(ticket)

    async def record_delivery_status(
        self,
        delivery_id: UUID,
        status: DeliveryStatus,
        provider_message_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AlertDelivery:
        """Asynchronous delivery callback from a transport."""
        now = now or utcnow()
        delivery = await self.alerts.get_delivery(delivery_id)
        delivery.status = status
        if provider_message_id:
            delivery.provider_message_id = provider_message_id
        if status == DeliveryStatus.DELIVERED:
            delivery.delivered_at = now
        elif status == DeliveryStatus.FAILED:
            delivery.failed_at = now
            delivery.failure_reason = reason
        delivery = await self.alerts.save_delivery(delivery)

        alert = await self.alerts.get(delivery.alert_id)
        self._roll_up(alert, await self.alerts.list_deliveries(alert.id), now)
        alert = await self.alerts.save(alert)

        if status == DeliveryStatus.DELIVERED:
            await self._audit_delivered(alert, delivery, now)
        return delivery

    # =========================================================================
    # Private methods
    # =========================================================================

    async def _deliver(self, alert: TicketAlert, target: DeliveryTarget, now: datetime):
        delivery = AlertDelivery(
            alert_id=alert.id,
            user_id=target.user_id,
            channel=target.channel,
            destination=target.destination,
        )

        if target.channel == AlertChannel.IN_APP:
            delivery.status = DeliveryStatus.DELIVERED
            delivery.attempts = 1
            delivery.sent_at = now
            delivery.delivered_at = now
            delivery = await self.alerts.add_delivery(delivery)
            return delivery, None

        delivery = await self.alerts.add_delivery(delivery)
        try:
            receipt = await self._send_with_retry(alert, target, delivery)
        except DispatchFailure as failure:
            delivery.status = DeliveryStatus.FAILED
            delivery.failed_at = now
            delivery.failure_reason = failure.reason
            delivery = await self.alerts.save_delivery(delivery)
            logger.error(str(failure))
            await self.timeline.add_system_event(
                alert.ticket_id,
                f"{alert.alert_type.value} alert via {target.channel.value} failed: {failure.reason}",
                event_type=AuditEventType.DISPATCH_FAILED,
                data={
                    "alert_id": str(alert.id),
                    "delivery_id": str(delivery.id),
                    "user_id": str(target.user_id),
                    "channel": target.channel.value,
                    "attempts": failure.attempts,
                },
                at=now,
            )
            return delivery, failure

        delivery.sent_at = now
        delivery.provider_message_id = receipt.provider_message_id
        if receipt.status == ReceiptStatus.DELIVERED:
            delivery.status = DeliveryStatus.DELIVERED
            delivery.delivered_at = now
        else:
            delivery.status = DeliveryStatus.SENT
        delivery = await self.alerts.save_delivery(delivery)
        return delivery, None

    async def _send_with_retry(
        self,
        alert: TicketAlert,
        target: DeliveryTarget,
        delivery: AlertDelivery
    ) -> DeliveryReceipt:
        sink = self.sinks.get(target.channel)
        if sink is None:
            raise DispatchFailure(alert.id, target.channel, target.user_id, 0, "No transport configured")

        contract = AlertContract(
            alert_id=alert.id,
            delivery_id=delivery.id,
            ticket_id=alert.ticket_id,
            alert_type=alert.alert_type,
            priority=alert.priority,
            channel=target.channel,
            user_id=target.user_id,
            destination=target.destination,
            subject=alert.subject,
            body=alert.body,
            requires_explicit_ack=alert.requires_explicit_ack,
        )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
                retry=retry_if_exception_type((TransportError, asyncio.TimeoutError)),
                reraise=True,
            ):
                with attempt:
                    delivery.attempts += 1
                    receipt = await asyncio.wait_for(sink.send(contract), self.timeout_seconds)
                    if receipt.status == ReceiptStatus.FAILED:
                        raise TransportError(receipt.detail or "Transport reported failure")
        except asyncio.TimeoutError:
            raise DispatchFailure(
                alert.id, target.channel, target.user_id, delivery.attempts,
                f"Timed out after {self.timeout_seconds}s",
            )
        except Exception as exc:
            raise DispatchFailure(
                alert.id, target.channel, target.user_id, delivery.attempts, str(exc) or type(exc).__name__
            ) from exc
        return receipt

    @staticmethod
    def _roll_up(alert: TicketAlert, deliveries: List[AlertDelivery], now: datetime) -> None:
        statuses = {d.status for d in deliveries}
        if DeliveryStatus.DELIVERED in statuses:
            if alert.status != AlertStatus.DELIVERED:
                alert.delivered_at = now
            alert.status = AlertStatus.DELIVERED
            alert.sent_at = alert.sent_at or now
        elif DeliveryStatus.SENT in statuses or DeliveryStatus.PENDING in statuses:
            alert.status = AlertStatus.SENT
            alert.sent_at = alert.sent_at or now
        elif deliveries:
            reasons = sorted({d.failure_reason or "unknown" for d in deliveries})
            alert.status = AlertStatus.FAILED
            alert.failed_at = now
            alert.failure_reason = "; ".join(reasons)

    async def _audit_delivered(self, alert: TicketAlert, delivery: AlertDelivery, now: datetime) -> None:
        await self.timeline.add_system_event(
            alert.ticket_id,
            f"{alert.alert_type.value} alert delivered via {delivery.channel.value}",
            event_type=AuditEventType.ALERT_DELIVERED,
            data={"alert_id": str(alert.id), "delivery_id": str(delivery.id)},
            at=now,
        )
